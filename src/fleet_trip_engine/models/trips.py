# fleet_trip_engine/models/trips.py
"""
Trip, trip event, and segmentation anomaly models.

A Trip is opened by the segmenter on an ignition-on transition and closed on
ignition off or after an idle timeout. At most one trip per device is open at
any time; an open trip has no end_time and no finalized distance. Models are
frozen, so the segmenter rebuilds a fresh Trip from the trip's samples for
every snapshot, and closing one builds it again with the end fields filled.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Self

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from fleet_trip_engine.models.positions import NormalizedPosition

__all__: list[str] = [
    'AnomalyKind',
    'DistanceMethod',
    'SegmentationAnomaly',
    'Trip',
    'TripEndpoint',
    'TripEvent',
    'TripEventKind',
]


class DistanceMethod(str, Enum):
    """How a trip's distance was computed."""

    ODOMETER = 'odometer'
    GEODESIC = 'geodesic'


class TripEventKind(str, Enum):
    OPENED = 'opened'
    CLOSED = 'closed'


class AnomalyKind(str, Enum):
    """Non-fatal data problems noticed during segmentation."""

    DUPLICATE_TIMESTAMP = 'duplicate_timestamp'
    OUT_OF_ORDER = 'out_of_order'
    NEGATIVE_ODOMETER_DELTA = 'negative_odometer_delta'


class TripEndpoint(BaseModel):
    """Where and when a trip started or ended."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    timestamp_utc: datetime
    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    odometer_total: float | None = None

    @classmethod
    def from_position(cls, position: NormalizedPosition) -> Self:
        """Build an endpoint from the sample that bounds a trip."""
        return cls(
            timestamp_utc=position.timestamp_utc,
            latitude=position.latitude,
            longitude=position.longitude,
            odometer_total=position.odometer_total,
        )


class Trip(BaseModel):
    """
    A bounded interval of vehicle activity for one device.

    Attributes:
        device_id: Provider device identifier.
        trip_sequence_number: Monotonic per-device counter starting at 1.
        start_time: Timestamp of the opening sample.
        end_time: Timestamp of the closing sample; None while open.
        start_position: Opening sample location.
        end_position: Closing sample location; None while open.
        distance_value: Distance in metres; None while open.
        distance_method: Odometer or geodesic; None while open.
        avg_speed: Mean of the trip's positive speeds (km/h).
        max_speed: Highest speed observed in the trip (km/h).
        sample_count: Positions that belong to the trip.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str = Field(min_length=1)
    trip_sequence_number: int = Field(ge=1)
    start_time: datetime
    end_time: datetime | None = None
    start_position: TripEndpoint
    end_position: TripEndpoint | None = None
    distance_value: float | None = Field(default=None, ge=0.0)
    distance_method: DistanceMethod | None = None
    avg_speed: float = Field(default=0.0, ge=0.0)
    max_speed: float = Field(default=0.0, ge=0.0)
    sample_count: int = Field(default=1, ge=1)

    @field_validator('start_time', 'end_time')
    @classmethod
    def require_aware_utc(cls, timestamp: datetime | None) -> datetime | None:
        if timestamp is None:
            return None
        if timestamp.tzinfo is None:
            raise ValueError('trip timestamps must be timezone-aware')
        return timestamp.astimezone(UTC)

    @model_validator(mode='after')
    def validate_closed_trip(self) -> Self:
        """
        A closed trip carries its end point and a finalized distance, and
        cannot end before it starts.

        Raises:
            ValueError: If the end fields are partially set or inconsistent.
        """
        if self.end_time is None:
            if self.end_position is not None or self.distance_method is not None:
                raise ValueError('open trip cannot carry end_position or distance_method')
            return self

        if self.end_time < self.start_time:
            raise ValueError(
                f'end_time {self.end_time.isoformat()} precedes '
                f'start_time {self.start_time.isoformat()}'
            )
        if self.end_position is None or self.distance_method is None:
            raise ValueError('closed trip requires end_position and distance_method')
        if self.distance_value is None:
            raise ValueError('closed trip requires distance_value')
        return self

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    @property
    def duration_seconds(self) -> float | None:
        """Elapsed seconds between start and end, None while open."""
        if self.end_time is None:
            return None
        return (self.end_time - self.start_time).total_seconds()

    @property
    def is_approximate(self) -> bool:
        """Whether the distance came from the geodesic fallback."""
        return self.distance_method is DistanceMethod.GEODESIC


class TripEvent(BaseModel):
    """A trip lifecycle change emitted by the segmenter."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    kind: TripEventKind
    trip: Trip


class SegmentationAnomaly(BaseModel):
    """
    A recorded, non-fatal data problem.

    Anomalies never stop ingestion; they are logged at WARNING and returned to
    the caller for inspection.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    kind: AnomalyKind
    device_id: str
    timestamp_utc: datetime
    detail: str = ''
