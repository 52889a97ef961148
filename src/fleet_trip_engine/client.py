# fleet_trip_engine/client.py
"""
Rate-limited HTTP client for the GPS51 open API.

Every call is admitted by the shared RateLimiter before each HTTP attempt,
authenticated with a cached token lease, and classified by the GPS51 status
code in the JSON body (GPS51 answers HTTP 200 for most application errors).

Retry Behavior:
---------------
- Rate limited (status 8902): a shared backoff holds every caller, then the
  call is retried with exponential backoff.
- Transient transport failures (timeouts, connection errors, HTTP 5xx):
  retried with exponential backoff.
- Token expired (status 9903): the lease is invalidated (only if it is still
  the lease that failed), a new one is acquired, and the call is retried
  once. A second expiry surfaces to the caller.
- Bad parameters (status 9904): never retried.
- Anything else: ProviderGenericError, not retried.

The wait before retry n is
`min(retry_initial_delay_seconds * retry_multiplier ** (n - 1), retry_max_delay_seconds)`.

Deadlines:
----------
`call()` accepts an absolute deadline on the limiter clock. The limiter
refuses to wait past it, HTTP timeouts are clipped to the remaining budget,
and retries stop when their wait would overrun it. Exceeding it raises
ProviderDeadlineExceeded for that caller only.

SSL/TLS Handling:
-----------------
- Standard verification (verify_ssl=True)
- Disabled verification (verify_ssl=False) for development
- Custom CA bundle (verify_ssl='/path/to/cert.pem') for proxy environments
- Truststore integration (use_truststore=True) for the OS certificate store
"""

import hashlib
import logging
import ssl
import threading
from collections.abc import Callable
from ssl import SSLContext
from types import TracebackType
from typing import Any, Final, NoReturn, Self, TypeVar, cast

import httpx
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
)

from fleet_trip_engine.config import ProviderConfig
from fleet_trip_engine.models import (
    GPS51_STATUS_BAD_PARAMETERS,
    GPS51_STATUS_OK,
    GPS51_STATUS_RATE_LIMITED,
    GPS51_STATUS_TOKEN_EXPIRED,
    ProviderResponse,
    TokenLease,
)
from fleet_trip_engine.rate_limiter import AdmissionDeadlineExceeded, RateLimiter

__all__: list[str] = [
    'AuthFailure',
    'Gps51Client',
    'ProviderBadParameters',
    'ProviderDeadlineExceeded',
    'ProviderError',
    'ProviderGenericError',
    'ProviderRateLimited',
    'ProviderTokenExpired',
    'TransientProviderError',
]

logger: logging.Logger = logging.getLogger(__name__)

ResultT = TypeVar('ResultT')

# HTTP status codes
HTTP_STATUS_SERVER_ERROR_MIN: Final[int] = 500
HTTP_STATUS_SERVER_ERROR_MAX: Final[int] = 599

OPENAPI_PATH: Final[str] = '/openapi'
LOGIN_ACTION: Final[str] = 'login'
LOGIN_BROWSER: Final[str] = 'Chrome'

SECONDS_PER_HOUR: Final[float] = 3600.0


# =============================================================================
# Exception Hierarchy
# =============================================================================


class ProviderError(Exception):
    """
    Base exception for GPS51 provider failures.

    Catch this to handle every provider failure for a device; catch the
    subclasses for specific handling.

    Attributes:
        status_code: GPS51 status code or HTTP status code, None for
            transport failures.
        action: GPS51 action that failed, if known.
        response_body: Raw response body for debugging, None if unavailable.
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        action: str | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code: int | None = status_code
        self.action: str | None = action
        self.response_body: str | None = response_body


class AuthFailure(ProviderError):  # noqa: N818
    """Login was rejected or returned no token."""


class ProviderRateLimited(ProviderError):  # noqa: N818
    """GPS51 reported the IP call budget exceeded (status 8902)."""


class ProviderTokenExpired(ProviderError):  # noqa: N818
    """GPS51 rejected the token (status 9903)."""


class ProviderBadParameters(ProviderError):  # noqa: N818
    """GPS51 rejected the request parameters (status 9904). Never retried."""


class ProviderGenericError(ProviderError):
    """Any other non-zero GPS51 status, HTTP 4xx, or malformed response."""


class TransientProviderError(ProviderError):
    """Timeout, connection failure, or HTTP 5xx. Retried."""


class ProviderDeadlineExceeded(ProviderError):  # noqa: N818
    """The call could not complete before the caller's deadline."""


# =============================================================================
# SSL Context
# =============================================================================


def build_truststore_ssl_context() -> SSLContext:
    """
    Create an SSLContext that validates certificates against the OS store.

    Raises:
        RuntimeError: If truststore is not installed.
    """
    try:
        import truststore  # noqa: PLC0415
    except ImportError as import_error:
        raise RuntimeError(
            'truststore is required when use_truststore=True; '
            'install it with: pip install truststore'
        ) from import_error

    return truststore.SSLContext(ssl.PROTOCOL_TLS_CLIENT)


def hash_password(password: str) -> str:
    """GPS51 expects the MD5 hex digest of the password at login."""
    return hashlib.md5(password.encode('utf-8'), usedforsecurity=False).hexdigest()


# =============================================================================
# HTTP Client
# =============================================================================


class Gps51Client:
    """
    Thread-safe GPS51 client shared by all device workers.

    The underlying httpx.Client pools connections and is safe for concurrent
    requests. Admission is serialized by the RateLimiter; login is
    single-flight, so concurrent callers with an expired lease trigger one
    login and share its result.

    Example:
        >>> with Gps51Client(config.provider) as client:
        ...     response = client.call('querymonitorlist', {'username': 'fleet'})
    """

    def __init__(
        self,
        config: ProviderConfig,
        rate_limiter: RateLimiter | None = None,
        pool_connections: int = 5,
        pool_maxsize: int = 10,
    ) -> None:
        """
        Initialize the GPS51 client.

        Args:
            config: Provider section of the configuration.
            rate_limiter: Shared limiter. One is built from `config` when
                omitted; its clock and sleep are also used for retries.
            pool_connections: Keepalive connections kept in the pool.
            pool_maxsize: Maximum total connections in the pool.

        Raises:
            RuntimeError: If use_truststore is set but truststore is missing.
        """
        self._config: ProviderConfig = config
        self._limiter: RateLimiter = rate_limiter or RateLimiter.from_config(config)
        self._clock: Callable[[], float] = self._limiter.clock
        self._sleep: Callable[[float], None] = self._limiter.sleep
        self._token_lock = threading.Lock()
        self._openapi_url: str = f'{config.base_url}{OPENAPI_PATH}'

        connect_timeout, read_timeout = config.request_timeout
        self._connect_timeout: float = float(connect_timeout)
        self._read_timeout: float = float(read_timeout)

        self._http_client: httpx.Client = httpx.Client(
            timeout=self._build_timeout(None),
            verify=self._build_ssl_context(),
            limits=httpx.Limits(
                max_keepalive_connections=pool_connections,
                max_connections=pool_maxsize,
            ),
        )

        logger.info(
            'Initialized Gps51Client: base_url=%r, %d calls/%.1fs, spacing=%.2fs',
            config.base_url,
            config.max_calls_per_window,
            config.window_seconds,
            config.min_call_spacing_seconds,
        )

    def _build_ssl_context(self) -> SSLContext | bool | str:
        if self._config.use_truststore:
            logger.debug('Building SSLContext from truststore (OS CA store)')
            return build_truststore_ssl_context()

        logger.debug('Using SSL verification setting: %r', self._config.verify_ssl)
        return self._config.verify_ssl

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._limiter

    def deadline_in(self, seconds: float) -> float:
        """Absolute deadline `seconds` from now on the limiter clock."""
        return self._clock() + seconds

    # -------------------------------------------------------------------------
    # Context Manager Protocol
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the HTTP client. Safe to call multiple times."""
        self._http_client.close()
        logger.debug('Gps51Client closed')

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Token Lease
    # -------------------------------------------------------------------------

    def acquire_token(self, deadline: float | None = None) -> TokenLease:
        """
        Return a usable token lease, logging in if needed.

        A cached lease is reused until `token_refresh_buffer_hours` before it
        expires. Only one caller logs in at a time; others wait for and reuse
        its lease.

        Raises:
            AuthFailure: If the login is rejected or returns no token.
            ProviderRateLimited: If the login stays rate limited after retries.
            TransientProviderError: If the login fails on transport after retries.
            ProviderDeadlineExceeded: If the login cannot finish before `deadline`.
        """
        refresh_buffer: float = self._config.token_refresh_buffer_hours * SECONDS_PER_HOUR

        lease: TokenLease | None = self._limiter.token_lease()
        if lease is not None and lease.is_usable(self._clock(), refresh_buffer):
            return lease

        with self._token_lock:
            # Another caller may have refreshed while this one waited.
            lease = self._limiter.token_lease()
            if lease is not None and lease.is_usable(self._clock(), refresh_buffer):
                return lease

            lease = self._run_with_retry(self._login_attempt, deadline)
            self._limiter.store_token_lease(lease)
            logger.info('Acquired GPS51 token lease (server_id=%r)', lease.server_id)
            return lease

    def _login_attempt(self, deadline: float | None) -> TokenLease:
        body: dict[str, Any] = {
            'type': 'USER',
            'from': 'web',
            'username': self._config.username,
            'password': hash_password(self._config.password.get_secret_value()),
            'browser': LOGIN_BROWSER,
        }
        response: ProviderResponse = self._send(
            LOGIN_ACTION, {'action': LOGIN_ACTION}, body, deadline
        )

        if response.status == GPS51_STATUS_RATE_LIMITED:
            self._raise_rate_limited(LOGIN_ACTION, response)

        if not response.is_success or not response.token:
            logger.error(
                'GPS51 login rejected for user %r: status=%d cause=%r',
                self._config.username,
                response.status,
                response.cause,
            )
            raise AuthFailure(
                f'Login failed: status={response.status} cause={response.cause!r}',
                status_code=response.status,
                action=LOGIN_ACTION,
            )

        validity_seconds: float = self._config.token_validity_hours * SECONDS_PER_HOUR
        return TokenLease(
            token=response.token,
            server_id=response.serverid,
            expires_at=self._clock() + validity_seconds,
        )

    # -------------------------------------------------------------------------
    # Calls
    # -------------------------------------------------------------------------

    def call(
        self,
        action: str,
        params: dict[str, Any],
        deadline: float | None = None,
    ) -> ProviderResponse:
        """
        Execute one GPS51 action with admission control and retries.

        Args:
            action: GPS51 action name (e.g. 'querytrack').
            params: JSON request body.
            deadline: Absolute deadline on the limiter clock, or None.

        Returns:
            Successful ProviderResponse (status 0).

        Raises:
            ProviderBadParameters: Immediately on status 9904.
            ProviderTokenExpired: If the token expires again after one refresh.
            ProviderRateLimited: If still rate limited after retries.
            TransientProviderError: If transport keeps failing after retries.
            ProviderGenericError: For other statuses, HTTP 4xx, or bad JSON.
            ProviderDeadlineExceeded: If the deadline is reached.
            AuthFailure: If a required login fails.
        """
        lease: TokenLease = self.acquire_token(deadline)

        try:
            return self._run_with_retry(
                lambda attempt_deadline: self._call_attempt(
                    action, params, lease, attempt_deadline
                ),
                deadline,
            )
        except ProviderTokenExpired:
            logger.warning('Token expired during %r; refreshing and retrying once', action)
            self._limiter.invalidate_token(lease.token)

        refreshed_lease: TokenLease = self.acquire_token(deadline)
        return self._run_with_retry(
            lambda attempt_deadline: self._call_attempt(
                action, params, refreshed_lease, attempt_deadline
            ),
            deadline,
        )

    def _call_attempt(
        self,
        action: str,
        params: dict[str, Any],
        lease: TokenLease,
        deadline: float | None,
    ) -> ProviderResponse:
        query: dict[str, Any] = {'action': action, 'token': lease.token}
        if lease.server_id is not None:
            query['serverid'] = lease.server_id

        response: ProviderResponse = self._send(action, query, params, deadline)
        return self._check_status(action, response)

    def _check_status(self, action: str, response: ProviderResponse) -> ProviderResponse:
        """
        Classify a GPS51 response by its status code.

        Raises:
            ProviderRateLimited: On 8902, after starting the shared backoff.
            ProviderTokenExpired: On 9903.
            ProviderBadParameters: On 9904.
            ProviderGenericError: On any other non-zero status.
        """
        status: int = response.status

        if status == GPS51_STATUS_OK:
            return response

        if status == GPS51_STATUS_RATE_LIMITED:
            self._raise_rate_limited(action, response)

        if status == GPS51_STATUS_TOKEN_EXPIRED:
            raise ProviderTokenExpired(
                f'Token expired for {action!r}: {response.cause!r}',
                status_code=status,
                action=action,
            )

        if status == GPS51_STATUS_BAD_PARAMETERS:
            logger.error('GPS51 rejected parameters for %r: %r', action, response.cause)
            raise ProviderBadParameters(
                f'Bad parameters for {action!r}: {response.cause!r}',
                status_code=status,
                action=action,
            )

        logger.error('GPS51 error for %r: status=%d cause=%r', action, status, response.cause)
        raise ProviderGenericError(
            f'GPS51 error for {action!r}: status={status} cause={response.cause!r}',
            status_code=status,
            action=action,
        )

    def _raise_rate_limited(self, action: str, response: ProviderResponse) -> NoReturn:
        self._limiter.trigger_backoff(self._config.rate_limit_backoff_seconds)
        raise ProviderRateLimited(
            f'Rate limited on {action!r}: {response.cause!r}',
            status_code=response.status,
            action=action,
        )

    # -------------------------------------------------------------------------
    # Retry
    # -------------------------------------------------------------------------

    def _run_with_retry(
        self,
        attempt: Callable[[float | None], ResultT],
        deadline: float | None,
    ) -> ResultT:
        """Run `attempt` under the configured retry policy and deadline."""

        def guard_deadline(retry_state: RetryCallState) -> None:
            exception: BaseException | None = (
                retry_state.outcome.exception() if retry_state.outcome else None
            )
            upcoming_sleep: float = retry_state.upcoming_sleep
            if deadline is not None and self._clock() + upcoming_sleep > deadline:
                raise ProviderDeadlineExceeded(
                    f'Retry in {upcoming_sleep:.1f}s would pass the deadline'
                ) from exception
            logger.warning(
                'Attempt %d failed (%s); retrying in %.1fs',
                retry_state.attempt_number,
                exception,
                upcoming_sleep,
            )

        retrying = Retrying(
            retry=retry_if_exception_type((ProviderRateLimited, TransientProviderError)),
            wait=self._compute_retry_wait,
            stop=stop_after_attempt(self._config.max_retries + 1),
            sleep=self._sleep,
            before_sleep=guard_deadline,
            reraise=True,
        )
        return cast(ResultT, retrying(attempt, deadline))

    def _compute_retry_wait(self, retry_state: RetryCallState) -> float:
        """Exponential wait: initial * multiplier ** (n - 1), capped."""
        attempt_number: int = retry_state.attempt_number
        exponential_wait: float = self._config.retry_initial_delay_seconds * (
            self._config.retry_multiplier ** (attempt_number - 1)
        )
        return min(exponential_wait, self._config.retry_max_delay_seconds)

    # -------------------------------------------------------------------------
    # HTTP Execution Layer
    # -------------------------------------------------------------------------

    def _send(
        self,
        action: str,
        query: dict[str, Any],
        body: dict[str, Any],
        deadline: float | None,
    ) -> ProviderResponse:
        """Admit, send, and decode one HTTP attempt."""
        try:
            self._limiter.acquire(deadline)
        except AdmissionDeadlineExceeded as error:
            raise ProviderDeadlineExceeded(
                f'Deadline reached waiting for admission of {action!r}: {error}',
                action=action,
            ) from error

        timeout: httpx.Timeout = self._build_timeout(deadline)
        logger.debug('POST %s action=%r', self._openapi_url, action)

        try:
            http_response: httpx.Response = self._http_client.request(
                method='POST',
                url=self._openapi_url,
                params=query,
                json=body,
                timeout=timeout,
            )
        except httpx.TimeoutException as error:
            if deadline is not None and self._clock() >= deadline:
                raise ProviderDeadlineExceeded(
                    f'Request for {action!r} timed out at the deadline', action=action
                ) from error
            logger.warning('Request timeout (will retry): action=%r', action)
            raise TransientProviderError(
                f'Request timeout: {error}', action=action
            ) from error
        except httpx.RequestError as error:
            logger.warning('Connection error (will retry): action=%r - %s', action, error)
            raise TransientProviderError(
                f'Connection error: {error}', action=action
            ) from error

        return ProviderResponse.from_payload(self._decode_response(action, http_response))

    def _build_timeout(self, deadline: float | None) -> httpx.Timeout:
        """Configured timeouts, clipped to the budget left before `deadline`."""
        connect: float = self._connect_timeout
        read: float = self._read_timeout

        if deadline is not None:
            remaining: float = deadline - self._clock()
            if remaining <= 0:
                raise ProviderDeadlineExceeded('Deadline reached before sending request')
            connect = min(connect, remaining)
            read = min(read, remaining)

        return httpx.Timeout(connect=connect, read=read, write=connect, pool=connect)

    def _decode_response(self, action: str, response: httpx.Response) -> dict[str, Any]:
        """
        Validate the HTTP layer and decode the JSON object body.

        Raises:
            TransientProviderError: On 5xx server errors (retryable).
            ProviderGenericError: On 4xx errors or malformed bodies.
        """
        status_code: int = response.status_code

        if HTTP_STATUS_SERVER_ERROR_MIN <= status_code <= HTTP_STATUS_SERVER_ERROR_MAX:
            logger.warning(
                'Server error %d (will retry): %s', status_code, response.text[:200]
            )
            raise TransientProviderError(
                f'Server error: HTTP {status_code}',
                status_code=status_code,
                action=action,
                response_body=response.text,
            )

        if not response.is_success:
            logger.error(
                'Client error %d (not retryable): %s', status_code, response.text[:500]
            )
            raise ProviderGenericError(
                f'Client error: HTTP {status_code}',
                status_code=status_code,
                action=action,
                response_body=response.text,
            )

        try:
            json_body: Any = response.json()
        except ValueError as parse_error:
            raise ProviderGenericError(
                f'Invalid JSON in response: {parse_error}',
                status_code=status_code,
                action=action,
                response_body=response.text[:500],
            ) from parse_error

        if not isinstance(json_body, dict):
            raise ProviderGenericError(
                f'Expected JSON object in response, got {type(json_body).__name__}',
                status_code=status_code,
                action=action,
                response_body=response.text[:500],
            )

        return cast(dict[str, Any], json_body)
