"""
Tests for fleet_trip_engine.client module.

Tests Gps51Client login, status classification, retries, token refresh, and
deadline handling. HTTP is mocked at the httpx.Client.request level and time
runs on a fake clock.
"""
# pyright: reportPrivateUsage=false

import hashlib
import threading
import time
from typing import Any
from unittest.mock import Mock, patch

import httpx
import pytest
from conftest import FakeClock, json_response, login_response

from fleet_trip_engine.client import (
    AuthFailure,
    Gps51Client,
    ProviderBadParameters,
    ProviderDeadlineExceeded,
    ProviderGenericError,
    ProviderRateLimited,
    ProviderTokenExpired,
    TransientProviderError,
    hash_password,
)
from fleet_trip_engine.config import ProviderConfig
from fleet_trip_engine.models import ProviderResponse, TokenLease
from fleet_trip_engine.rate_limiter import RateLimiter


@pytest.fixture
def client(provider_config: ProviderConfig, rate_limiter: RateLimiter) -> Gps51Client:
    """Provide a Gps51Client on the fake clock."""
    return Gps51Client(provider_config, rate_limiter=rate_limiter)


def _actions(request_mock: Mock) -> list[str]:
    return [call.kwargs['params']['action'] for call in request_mock.call_args_list]


class TestGps51ClientInitialization:
    """Test Gps51Client initialization."""

    def test_initialization_succeeds(
        self,
        provider_config: ProviderConfig,
        rate_limiter: RateLimiter,
    ) -> None:
        """Should initialize with the shared limiter."""
        client = Gps51Client(provider_config, rate_limiter=rate_limiter)

        assert client.rate_limiter is rate_limiter
        assert client._openapi_url == 'https://api.gps51.test/openapi'

    def test_context_manager_closes_client(
        self,
        provider_config: ProviderConfig,
        rate_limiter: RateLimiter,
    ) -> None:
        """Should close the HTTP client on exit."""
        client = Gps51Client(provider_config, rate_limiter=rate_limiter)

        with patch.object(client._http_client, 'close') as mock_close:
            with client:
                pass

            mock_close.assert_called_once()

    def test_deadline_in_uses_limiter_clock(
        self,
        client: Gps51Client,
        fake_clock: FakeClock,
    ) -> None:
        assert client.deadline_in(30.0) == fake_clock() + 30.0


class TestGps51ClientLogin:
    """Test token acquisition."""

    def test_hash_password_is_md5_hex(self) -> None:
        """GPS51 expects the MD5 hex digest of the password."""
        assert hash_password('secret') == hashlib.md5(b'secret').hexdigest()  # noqa: S324

    def test_login_sends_hashed_password(self, client: Gps51Client) -> None:
        """Should POST the login action with an MD5 password."""
        with patch.object(
            client._http_client, 'request', return_value=login_response()
        ) as mock_request:
            lease: TokenLease = client.acquire_token()

        assert lease.token == 'token-1'
        assert lease.server_id == 'srv-1'

        body: dict[str, Any] = mock_request.call_args.kwargs['json']
        assert body['username'] == 'fleet_user'
        assert body['password'] == hash_password('secret')
        assert body['type'] == 'USER'
        assert mock_request.call_args.kwargs['params'] == {'action': 'login'}

    def test_cached_lease_is_reused(self, client: Gps51Client) -> None:
        """A second acquire_token() should not log in again."""
        with patch.object(
            client._http_client, 'request', return_value=login_response()
        ) as mock_request:
            client.acquire_token()
            client.acquire_token()

        assert mock_request.call_count == 1

    def test_lease_refreshed_inside_buffer(
        self,
        client: Gps51Client,
        fake_clock: FakeClock,
    ) -> None:
        """A lease within the refresh buffer of expiry triggers a new login."""
        with patch.object(
            client._http_client,
            'request',
            side_effect=[login_response('first'), login_response('second')],
        ):
            client.acquire_token()
            # 24h validity, 1h buffer: 23.5h later the lease is due for refresh.
            fake_clock.advance(23.5 * 3600)
            lease: TokenLease = client.acquire_token()

        assert lease.token == 'second'

    def test_concurrent_callers_share_one_login(self, client: Gps51Client) -> None:
        """Two workers with no usable lease trigger exactly one login."""
        worker_count: int = 2
        barrier = threading.Barrier(worker_count)
        login_calls: list[str] = []
        leases: list[TokenLease] = []
        errors: list[Exception] = []

        def slow_login(*_args: Any, **_kwargs: Any) -> Mock:
            login_calls.append(threading.current_thread().name)
            # Hold the login open so the other worker reaches the token lock.
            time.sleep(0.2)
            return login_response(f'token-{len(login_calls)}')

        def worker() -> None:
            try:
                barrier.wait(timeout=5)
                leases.append(client.acquire_token())
            except Exception as error:  # noqa: BLE001
                errors.append(error)

        with patch.object(client._http_client, 'request', side_effect=slow_login):
            threads: list[threading.Thread] = [
                threading.Thread(target=worker, name=f'worker-{index}')
                for index in range(worker_count)
            ]
            for thread in threads:
                thread.start()
            for thread in threads:
                thread.join(timeout=10)

        assert errors == []
        assert len(login_calls) == 1
        assert [lease.token for lease in leases] == ['token-1', 'token-1']

    def test_rejected_login_raises_auth_failure(self, client: Gps51Client) -> None:
        """A non-zero login status without a token is an AuthFailure."""
        with (
            patch.object(
                client._http_client,
                'request',
                return_value=json_response({'status': 1, 'cause': 'bad password'}),
            ),
            pytest.raises(AuthFailure) as exc_info,
        ):
            client.acquire_token()

        assert exc_info.value.action == 'login'


class TestGps51ClientCall:
    """Test successful calls and status classification."""

    def test_call_sends_token_and_serverid(self, client: Gps51Client) -> None:
        """Should pass action, token, and serverid as query parameters."""
        with patch.object(
            client._http_client,
            'request',
            side_effect=[login_response(), json_response({'status': 0, 'records': []})],
        ) as mock_request:
            response: ProviderResponse = client.call('querytrack', {'deviceid': 'd1'})

        assert response.is_success

        params: dict[str, Any] = mock_request.call_args.kwargs['params']
        assert params == {'action': 'querytrack', 'token': 'token-1', 'serverid': 'srv-1'}
        assert mock_request.call_args.kwargs['json'] == {'deviceid': 'd1'}
        assert mock_request.call_args.kwargs['method'] == 'POST'

    def test_bad_parameters_are_not_retried(self, client: Gps51Client) -> None:
        """Status 9904 should surface immediately."""
        with (
            patch.object(
                client._http_client,
                'request',
                side_effect=[login_response(), json_response({'status': 9904})],
            ) as mock_request,
            pytest.raises(ProviderBadParameters),
        ):
            client.call('querytrack', {})

        assert _actions(mock_request) == ['login', 'querytrack']

    def test_unknown_status_raises_generic_error(self, client: Gps51Client) -> None:
        """Any other non-zero status is a ProviderGenericError."""
        with (
            patch.object(
                client._http_client,
                'request',
                side_effect=[login_response(), json_response({'status': 7, 'cause': 'x'})],
            ),
            pytest.raises(ProviderGenericError) as exc_info,
        ):
            client.call('querytrack', {})

        assert exc_info.value.status_code == 7  # noqa: PLR2004

    def test_http_client_error_raises_generic_error(self, client: Gps51Client) -> None:
        with (
            patch.object(
                client._http_client,
                'request',
                side_effect=[login_response(), json_response({}, status_code=404)],
            ),
            pytest.raises(ProviderGenericError) as exc_info,
        ):
            client.call('querytrack', {})

        assert exc_info.value.status_code == 404  # noqa: PLR2004

    def test_invalid_json_raises_generic_error(self, client: Gps51Client) -> None:
        """A body that is not a JSON object is not retried."""
        with (
            patch.object(
                client._http_client,
                'request',
                side_effect=[login_response(), json_response(['not', 'an', 'object'])],
            ),
            pytest.raises(ProviderGenericError, match='Expected JSON object'),
        ):
            client.call('querytrack', {})


class TestGps51ClientRetries:
    """Test retry behavior for retryable failures."""

    def test_rate_limit_triggers_backoff_then_retries(
        self,
        client: Gps51Client,
        fake_clock: FakeClock,
    ) -> None:
        """Status 8902 holds callers for the backoff, then the retry succeeds."""
        start: float = fake_clock()

        with patch.object(
            client._http_client,
            'request',
            side_effect=[
                login_response(),
                json_response({'status': 8902, 'cause': 'too many requests'}),
                json_response({'status': 0, 'records': []}),
            ],
        ) as mock_request:
            response: ProviderResponse = client.call('querytrack', {})

        assert response.is_success
        assert _actions(mock_request) == ['login', 'querytrack', 'querytrack']
        # The retry could not be admitted before the 60s shared backoff ended.
        assert fake_clock() - start >= 60.0  # noqa: PLR2004

    def test_rate_limit_exhausts_retries(self, client: Gps51Client) -> None:
        """Persistent 8902 surfaces after max_retries retries."""
        with (
            patch.object(
                client._http_client,
                'request',
                side_effect=[login_response()] + [json_response({'status': 8902})] * 3,
            ) as mock_request,
            pytest.raises(ProviderRateLimited),
        ):
            client.call('querytrack', {})

        assert _actions(mock_request).count('querytrack') == 3  # noqa: PLR2004

    def test_server_error_is_retried_with_exponential_wait(
        self,
        client: Gps51Client,
        fake_clock: FakeClock,
    ) -> None:
        """HTTP 5xx is transient; waits follow initial * multiplier ** (n - 1)."""
        with patch.object(
            client._http_client,
            'request',
            side_effect=[
                login_response(),
                json_response({}, status_code=503),
                json_response({}, status_code=502),
                json_response({'status': 0}),
            ],
        ):
            response: ProviderResponse = client.call('querytrack', {})

        assert response.is_success
        assert 1.0 in fake_clock.sleeps
        assert 2.0 in fake_clock.sleeps

    def test_connection_error_is_transient(self, client: Gps51Client) -> None:
        """Persistent connection errors surface as TransientProviderError."""
        with (
            patch.object(
                client._http_client,
                'request',
                side_effect=[login_response()] + [httpx.ConnectError('refused')] * 3,
            ),
            pytest.raises(TransientProviderError),
        ):
            client.call('querytrack', {})


class TestGps51ClientTokenExpiry:
    """Test the refresh-once policy for expired tokens."""

    def test_token_expired_refreshes_once(self, client: Gps51Client) -> None:
        """Status 9903 triggers one login and one retry of the call."""
        with patch.object(
            client._http_client,
            'request',
            side_effect=[
                login_response('stale'),
                json_response({'status': 9903}),
                login_response('fresh'),
                json_response({'status': 0, 'records': []}),
            ],
        ) as mock_request:
            response: ProviderResponse = client.call('lastposition', {})

        assert response.is_success
        assert _actions(mock_request) == ['login', 'lastposition', 'login', 'lastposition']
        assert mock_request.call_args.kwargs['params']['token'] == 'fresh'

    def test_second_expiry_surfaces(self, client: Gps51Client) -> None:
        """A token that expires again after refresh is not retried again."""
        with (
            patch.object(
                client._http_client,
                'request',
                side_effect=[
                    login_response('stale'),
                    json_response({'status': 9903}),
                    login_response('fresh'),
                    json_response({'status': 9903}),
                ],
            ),
            pytest.raises(ProviderTokenExpired),
        ):
            client.call('lastposition', {})


class TestGps51ClientDeadline:
    """Test deadline enforcement."""

    def test_backoff_past_deadline_fails_fast(
        self,
        client: Gps51Client,
        fake_clock: FakeClock,
    ) -> None:
        """A retry that would wait out a 60s backoff fails a 10s deadline."""
        deadline: float = client.deadline_in(10.0)

        with (
            patch.object(
                client._http_client,
                'request',
                side_effect=[login_response(), json_response({'status': 8902})],
            ),
            pytest.raises(ProviderDeadlineExceeded),
        ):
            client.call('querytrack', {}, deadline=deadline)

        assert fake_clock() <= deadline

    def test_expired_deadline_raises_before_sending(
        self,
        client: Gps51Client,
        fake_clock: FakeClock,
    ) -> None:
        """No request is sent once the deadline has passed."""
        client.rate_limiter.store_token_lease(
            TokenLease(token='cached', server_id=None, expires_at=fake_clock() + 7200)
        )
        deadline: float = fake_clock() - 1.0

        with (
            patch.object(client._http_client, 'request') as mock_request,
            pytest.raises(ProviderDeadlineExceeded),
        ):
            client.call('querytrack', {}, deadline=deadline)

        mock_request.assert_not_called()

    def test_timeout_is_clipped_to_deadline(
        self,
        client: Gps51Client,
        fake_clock: FakeClock,
    ) -> None:
        """HTTP timeouts never exceed the remaining budget."""
        client.rate_limiter.store_token_lease(
            TokenLease(token='cached', server_id=None, expires_at=fake_clock() + 7200)
        )

        with patch.object(
            client._http_client,
            'request',
            return_value=json_response({'status': 0}),
        ) as mock_request:
            client.call('querytrack', {}, deadline=client.deadline_in(5.0))

        timeout: httpx.Timeout = mock_request.call_args.kwargs['timeout']
        assert timeout.read == pytest.approx(5.0)
        assert timeout.connect == pytest.approx(5.0)
        assert 'serverid' not in mock_request.call_args.kwargs['params']
