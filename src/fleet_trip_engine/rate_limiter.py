# fleet_trip_engine/rate_limiter.py
"""
Process-wide admission control for GPS51 API calls.

GPS51 enforces a per-IP call budget and answers status 8902 when it is
exceeded; repeated violations get the IP blocked. Every outbound call, from
every device worker, therefore passes through one RateLimiter instance.

Admission Rules:
----------------
A call is admitted at time `now` only if all of these hold:
- `now >= backoff_until` (a provider rate limit holds every caller)
- fewer than `max_calls_per_window` admissions in the trailing window
- at least `min_call_spacing_seconds` since the previous admission

The limiter also owns the cached token lease, so the whole provider state
can be persisted as one JSON document and picked up by the next process.

Clock:
------
All timestamps are seconds on the injected `clock` (default `time.time`).
Wall-clock seconds are used so that `backoff_until` and the token expiry
remain meaningful after a restart. Tests inject a fake clock and sleep.
"""

import logging
import threading
import time
from collections.abc import Callable
from typing import Self

from pydantic import ValidationError

from fleet_trip_engine.common.file_io import StateFileHandler
from fleet_trip_engine.config import ProviderConfig
from fleet_trip_engine.models import RateLimiterState, TokenLease

__all__: list[str] = ['AdmissionDeadlineExceeded', 'RateLimiter']

logger: logging.Logger = logging.getLogger(__name__)


class AdmissionDeadlineExceeded(Exception):  # noqa: N818
    """
    Raised when admission would require waiting past the caller's deadline.

    Attributes:
        required_wait: Seconds the caller would have had to wait.
        remaining: Seconds left before the deadline.
    """

    def __init__(self, required_wait: float, remaining: float) -> None:
        super().__init__(
            f'Admission requires {required_wait:.2f}s but only '
            f'{max(remaining, 0.0):.2f}s remain before the deadline'
        )
        self.required_wait: float = required_wait
        self.remaining: float = remaining


class RateLimiter:
    """
    Thread-safe rolling-window limiter with call spacing and shared backoff.

    Example:
        >>> limiter = RateLimiter(max_calls_per_window=3, window_seconds=1.0)
        >>> limiter.acquire()
        0.0
    """

    def __init__(
        self,
        max_calls_per_window: int = 3,
        window_seconds: float = 1.0,
        min_call_spacing_seconds: float = 0.35,
        state_handler: StateFileHandler | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_calls_per_window < 1:
            raise ValueError(f'max_calls_per_window must be >= 1, got {max_calls_per_window}')
        if window_seconds <= 0:
            raise ValueError(f'window_seconds must be positive, got {window_seconds}')

        self._max_calls: int = max_calls_per_window
        self._window_seconds: float = window_seconds
        self._min_spacing: float = min_call_spacing_seconds
        self._state_handler: StateFileHandler | None = state_handler
        self._clock: Callable[[], float] = clock
        self._sleep: Callable[[float], None] = sleep
        self._lock = threading.Lock()
        self._state: RateLimiterState = self._load_state()

    @classmethod
    def from_config(
        cls,
        config: ProviderConfig,
        state_handler: StateFileHandler | None = None,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], None] = time.sleep,
    ) -> Self:
        """Build a limiter from the provider configuration section."""
        return cls(
            max_calls_per_window=config.max_calls_per_window,
            window_seconds=config.window_seconds,
            min_call_spacing_seconds=config.min_call_spacing_seconds,
            state_handler=state_handler,
            clock=clock,
            sleep=sleep,
        )

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    @property
    def sleep(self) -> Callable[[float], None]:
        return self._sleep

    # -------------------------------------------------------------------------
    # Admission
    # -------------------------------------------------------------------------

    def acquire(self, deadline: float | None = None) -> float:
        """
        Block until a call is admitted, then record the admission.

        Args:
            deadline: Absolute time on the limiter clock. If admission would
                need waiting past it, nothing is recorded and the call fails.

        Returns:
            Total seconds spent waiting.

        Raises:
            AdmissionDeadlineExceeded: If the wait would overrun the deadline.
        """
        waited: float = 0.0

        while True:
            with self._lock:
                now: float = self._clock()
                wait_seconds: float = self._required_wait(now)
                if wait_seconds <= 0:
                    self._state.call_times.append(now)
                    self._state.last_call_at = now
                    return waited

            if deadline is not None and now + wait_seconds > deadline:
                raise AdmissionDeadlineExceeded(wait_seconds, deadline - now)

            if wait_seconds >= self._window_seconds:
                logger.info('Rate limiter holding caller for %.1fs', wait_seconds)
            self._sleep(wait_seconds)
            waited += wait_seconds

    def _required_wait(self, now: float) -> float:
        """Seconds until a call may be admitted at `now`. Caller holds the lock."""
        window_floor: float = now - self._window_seconds
        self._state.call_times = [
            call_time for call_time in self._state.call_times if call_time > window_floor
        ]

        waits: list[float] = [self._state.backoff_until - now]

        if len(self._state.call_times) >= self._max_calls:
            oldest: float = self._state.call_times[-self._max_calls]
            waits.append(oldest + self._window_seconds - now)

        if self._state.last_call_at is not None:
            waits.append(self._state.last_call_at + self._min_spacing - now)

        return max(waits)

    # -------------------------------------------------------------------------
    # Backoff
    # -------------------------------------------------------------------------

    def trigger_backoff(self, seconds: float) -> float:
        """
        Hold every caller for `seconds` from now.

        An already-later backoff is never shortened.

        Returns:
            The effective backoff_until.
        """
        with self._lock:
            candidate: float = self._clock() + seconds
            if candidate > self._state.backoff_until:
                self._state.backoff_until = candidate
            backoff_until: float = self._state.backoff_until
            self._persist_locked()

        logger.warning('Provider rate limit: all calls held for %.1fs', seconds)
        return backoff_until

    def backoff_remaining(self) -> float:
        """Seconds left in the current backoff, 0.0 if none."""
        with self._lock:
            return max(self._state.backoff_until - self._clock(), 0.0)

    # -------------------------------------------------------------------------
    # Token Lease
    # -------------------------------------------------------------------------

    def token_lease(self) -> TokenLease | None:
        with self._lock:
            return self._state.token_lease

    def store_token_lease(self, lease: TokenLease) -> None:
        with self._lock:
            self._state.token = lease.token
            self._state.token_expires_at = lease.expires_at
            self._state.server_id = lease.server_id
            self._persist_locked()

    def invalidate_token(self, expected_token: str) -> bool:
        """
        Drop the cached token, but only if it is still `expected_token`.

        A worker that saw an expired token must not discard a fresh lease
        another worker obtained in the meantime.

        Returns:
            True if the lease was dropped.
        """
        with self._lock:
            if self._state.token != expected_token:
                return False
            self._state.token = None
            self._state.token_expires_at = None
            self._state.server_id = None
            self._persist_locked()
            return True

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    def snapshot(self) -> RateLimiterState:
        """A copy of the current state."""
        with self._lock:
            return self._state.model_copy(deep=True)

    def _load_state(self) -> RateLimiterState:
        if self._state_handler is None:
            return RateLimiterState()

        raw_state = self._state_handler.load()
        if raw_state is None:
            return RateLimiterState()

        try:
            stored: RateLimiterState = RateLimiterState.model_validate(raw_state)
        except ValidationError as error:
            logger.warning(
                'Discarding invalid provider state in %r: %s',
                self._state_handler.path,
                error,
            )
            return RateLimiterState()

        logger.debug('Restored provider state from %r', self._state_handler.path)
        # Admission history is process-local; only backoff and lease carry over.
        return RateLimiterState(
            backoff_until=stored.backoff_until,
            token=stored.token,
            token_expires_at=stored.token_expires_at,
            server_id=stored.server_id,
        )

    def _persist_locked(self) -> None:
        if self._state_handler is None:
            return
        try:
            self._state_handler.save(self._state.model_dump(mode='json'))
        except OSError:
            logger.exception('Failed to persist provider state to %r', self._state_handler.path)
