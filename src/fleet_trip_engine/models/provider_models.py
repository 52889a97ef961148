# fleet_trip_engine/models/provider_models.py
"""
Models for GPS51 responses, the token lease, the shared limiter state, and
per-device sync status.
"""

from datetime import UTC, datetime
from typing import Any, Final, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator

__all__: list[str] = [
    'GPS51_STATUS_BAD_PARAMETERS',
    'GPS51_STATUS_OK',
    'GPS51_STATUS_RATE_LIMITED',
    'GPS51_STATUS_TOKEN_EXPIRED',
    'ProviderResponse',
    'RateLimiterState',
    'SyncStatus',
    'TokenLease',
]

# GPS51 application-level status codes, carried in the JSON body's `status`.
GPS51_STATUS_OK: Final[int] = 0
GPS51_STATUS_RATE_LIMITED: Final[int] = 8902
GPS51_STATUS_TOKEN_EXPIRED: Final[int] = 9903
GPS51_STATUS_BAD_PARAMETERS: Final[int] = 9904

# Status reported when the body carries no usable `status` field.
_STATUS_MISSING: Final[int] = -1


class ProviderResponse(BaseModel):
    """
    Parsed GPS51 response envelope.

    Only the envelope fields are typed. Action-specific content stays in
    `payload` and is interpreted by the provider facade.

    Attributes:
        status: GPS51 status code, 0 on success.
        cause: Provider error description, if any.
        records: Telemetry record dicts, from `records` or `data.records`.
        token: Login token (login responses only).
        serverid: Server affinity id (login responses only).
        payload: The complete decoded JSON body.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    status: int
    cause: str | None = None
    records: list[dict[str, Any]] = Field(default_factory=list)
    token: str | None = Field(default=None, repr=False)
    serverid: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> Self:
        """Build a response from a decoded GPS51 JSON body."""
        raw_status: Any = payload.get('status', _STATUS_MISSING)
        try:
            status: int = int(raw_status)
        except (TypeError, ValueError):
            status = _STATUS_MISSING

        records: Any = payload.get('records')
        if records is None and isinstance(payload.get('data'), dict):
            records = payload['data'].get('records')
        if not isinstance(records, list):
            records = []

        token: Any = payload.get('token')
        serverid: Any = payload.get('serverid')
        cause: Any = payload.get('cause')

        return cls(
            status=status,
            cause=str(cause) if cause is not None else None,
            records=[record for record in records if isinstance(record, dict)],
            token=str(token) if token else None,
            serverid=str(serverid) if serverid is not None else None,
            payload=payload,
        )

    @property
    def is_success(self) -> bool:
        return self.status == GPS51_STATUS_OK


class TokenLease(BaseModel):
    """
    A provider login token with its expiry.

    `expires_at` is on the same clock as the rate limiter (epoch seconds by
    default) so the lease survives a process restart through the state file.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    token: str = Field(min_length=1, repr=False)
    server_id: str | None = None
    expires_at: float

    def is_usable(self, now: float, refresh_buffer_seconds: float) -> bool:
        """Whether the lease can be reused without a refresh at `now`."""
        return now < self.expires_at - refresh_buffer_seconds


class RateLimiterState(BaseModel):
    """
    Shared state behind the provider rate limiter.

    Timestamps are seconds on the limiter clock. `call_times` holds the
    admission times inside the trailing window; `calls_in_window` and
    `window_start` are derived from it.
    """

    model_config = ConfigDict(extra='forbid', validate_assignment=True)

    call_times: list[float] = Field(default_factory=list)
    last_call_at: float | None = None
    backoff_until: float = 0.0
    token: str | None = Field(default=None, repr=False)
    token_expires_at: float | None = None
    server_id: str | None = None

    @property
    def calls_in_window(self) -> int:
        return len(self.call_times)

    @property
    def window_start(self) -> float | None:
        return self.call_times[0] if self.call_times else None

    @property
    def token_lease(self) -> TokenLease | None:
        """The cached lease, or None if no token is held."""
        if not self.token or self.token_expires_at is None:
            return None
        return TokenLease(
            token=self.token,
            server_id=self.server_id,
            expires_at=self.token_expires_at,
        )


class SyncStatus(BaseModel):
    """
    Per-device ingestion bookkeeping.

    Attributes:
        device_id: Provider device identifier.
        last_success_at: Wall-clock UTC time of the last successful cycle.
        last_position_time: Timestamp of the newest ingested position; the
            next cycle resumes from here.
        error_count: Consecutive failed cycles; reset on success.
        last_error: Message of the most recent failure.
        positions_ingested: Positions accepted by the last successful cycle.
        trips_closed: Trips closed by the last successful cycle.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str = Field(min_length=1)
    last_success_at: datetime | None = None
    last_position_time: datetime | None = None
    error_count: int = Field(default=0, ge=0)
    last_error: str | None = None
    positions_ingested: int = Field(default=0, ge=0)
    trips_closed: int = Field(default=0, ge=0)

    @field_validator('last_success_at', 'last_position_time')
    @classmethod
    def ensure_utc(cls, timestamp: datetime | None) -> datetime | None:
        if timestamp is None:
            return None
        if timestamp.tzinfo is None:
            return timestamp.replace(tzinfo=UTC)
        return timestamp.astimezone(UTC)

    def record_success(
        self,
        at: datetime,
        last_position_time: datetime | None,
        positions_ingested: int,
        trips_closed: int,
    ) -> Self:
        """Return a copy reflecting a successful cycle."""
        return self.model_copy(
            update={
                'last_success_at': at,
                'last_position_time': last_position_time or self.last_position_time,
                'error_count': 0,
                'last_error': None,
                'positions_ingested': positions_ingested,
                'trips_closed': trips_closed,
            }
        )

    def record_failure(self, message: str) -> Self:
        """Return a copy reflecting a failed cycle."""
        return self.model_copy(
            update={
                'error_count': self.error_count + 1,
                'last_error': message,
            }
        )
