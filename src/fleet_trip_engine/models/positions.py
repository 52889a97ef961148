# fleet_trip_engine/models/positions.py
"""
Normalized position model produced by the ignition resolver and normalizer.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

__all__: list[str] = [
    'LOW_CONFIDENCE_THRESHOLD',
    'IgnitionMethod',
    'NormalizedPosition',
]

# Consumers making ignition-dependent decisions (alerts, chat answers) should
# treat positions below this confidence as unreliable.
LOW_CONFIDENCE_THRESHOLD: float = 0.5


class IgnitionMethod(str, Enum):
    """Signal that produced an ignition determination."""

    STATUS_BIT = 'status_bit'
    STRING_PARSE = 'string_parse'
    MULTI_SIGNAL = 'multi_signal'
    SPEED_INFERENCE = 'speed_inference'
    UNKNOWN = 'unknown'


class NormalizedPosition(BaseModel):
    """
    Canonical, confidence-annotated position for one device at one instant.

    Created from exactly one RawTelemetryRecord and never mutated. The pair
    (device_id, timestamp_utc) is the idempotency key for persistence.

    Attributes:
        device_id: Provider device identifier.
        timestamp_utc: Timezone-aware UTC sample time.
        latitude: WGS84 latitude.
        longitude: WGS84 longitude.
        speed_kmh: Speed in km/h after unit detection and drift filtering.
        ignition_on: Resolved ignition state.
        ignition_confidence: Trust in ignition_on, 0.0 to 1.0.
        ignition_method: Signal that produced ignition_on.
        odometer_total: Cumulative distance counter in metres, if reported.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str = Field(min_length=1)
    timestamp_utc: datetime
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    speed_kmh: float = Field(ge=0.0)
    ignition_on: bool
    ignition_confidence: float = Field(ge=0.0, le=1.0)
    ignition_method: IgnitionMethod
    odometer_total: float | None = Field(default=None, ge=0.0)

    @field_validator('timestamp_utc')
    @classmethod
    def require_aware_utc(cls, timestamp: datetime) -> datetime:
        """Reject naive datetimes and convert aware ones to UTC."""
        if timestamp.tzinfo is None:
            raise ValueError('timestamp_utc must be timezone-aware')
        return timestamp.astimezone(UTC)

    @model_validator(mode='after')
    def unknown_method_has_zero_confidence(self) -> Self:
        """An undetermined ignition state never carries confidence."""
        if self.ignition_method is IgnitionMethod.UNKNOWN and self.ignition_confidence != 0.0:
            raise ValueError(
                f'ignition_method=unknown requires confidence 0.0, '
                f'got {self.ignition_confidence}'
            )
        return self

    @property
    def key(self) -> tuple[str, datetime]:
        """Idempotency key: (device_id, timestamp_utc)."""
        return (self.device_id, self.timestamp_utc)

    @property
    def ignition_known(self) -> bool:
        """Whether any signal determined the ignition state."""
        return self.ignition_method is not IgnitionMethod.UNKNOWN

    @property
    def is_low_confidence(self) -> bool:
        """Whether ignition_on should not drive ignition-dependent decisions."""
        return self.ignition_confidence < LOW_CONFIDENCE_THRESHOLD

    @property
    def is_stationary(self) -> bool:
        return self.speed_kmh <= 0.0
