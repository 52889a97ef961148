# fleet_trip_engine/normalization.py
"""
Raw GPS51 record -> NormalizedPosition.

Normalization Rules:
--------------------
Speed:
    GPS51 reports m/h on most endpoints and km/h on some. Values above 200
    are taken as m/h and divided by 1000. Negatives clamp to 0, anything
    below 3 km/h is GPS drift and becomes 0, and the result is clamped to
    300 km/h and rounded to 0.1.

Timestamp:
    Numbers are epoch milliseconds, or epoch seconds when below the
    millisecond value of 2000-01-01. Strings are 'YYYY-MM-DD HH:MM:SS' in the
    provider's timezone (GMT+8 for GPS51) unless they carry an offset.
    Times before 2000 or more than 5 minutes in the future are rejected.

Coordinates:
    Out-of-range, NaN, or null-island (0, 0) coordinates reject the record.

Odometer:
    `totaldistance` in metres; values <= 0 are treated as absent.

Rejected records are logged at WARNING and dropped; they never raise.
"""

import logging
import math
from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime, timedelta, timezone, tzinfo
from typing import Final, Self

from fleet_trip_engine.config import TripEngineConfig
from fleet_trip_engine.ignition import (
    DEFAULT_ACC_BIT_MASKS,
    IgnitionResolution,
    resolve_ignition,
)
from fleet_trip_engine.models import NormalizedPosition, RawTelemetryRecord

__all__: list[str] = [
    'PositionNormalizer',
    'normalize_record',
    'normalize_speed',
    'parse_provider_timestamp',
    'validate_coordinates',
]

logger: logging.Logger = logging.getLogger(__name__)

METRES_PER_HOUR_THRESHOLD: Final[float] = 200.0
STATIONARY_THRESHOLD_KMH: Final[float] = 3.0
MAX_SPEED_KMH: Final[float] = 300.0

MIN_VALID_TIMESTAMP: Final[datetime] = datetime(2000, 1, 1, tzinfo=UTC)
# Numeric timestamps below this are epoch seconds, not milliseconds.
EPOCH_MILLIS_THRESHOLD: Final[float] = MIN_VALID_TIMESTAMP.timestamp() * 1000
MAX_FUTURE_SKEW: Final[timedelta] = timedelta(minutes=5)

PROVIDER_TIME_FORMAT: Final[str] = '%Y-%m-%d %H:%M:%S'
DEFAULT_PROVIDER_OFFSET_HOURS: Final[float] = 8.0


def normalize_speed(raw_speed: float | None) -> float:
    """Convert a provider speed to km/h with drift filtering."""
    if raw_speed is None or math.isnan(raw_speed):
        return 0.0

    speed: float = max(0.0, raw_speed)
    speed_kmh: float = speed / 1000 if speed > METRES_PER_HOUR_THRESHOLD else speed

    if speed_kmh < STATIONARY_THRESHOLD_KMH:
        return 0.0

    return round(min(speed_kmh, MAX_SPEED_KMH), 1)


def parse_provider_timestamp(
    raw_value: float | str | None,
    provider_timezone: tzinfo,
    now: datetime | None = None,
) -> datetime | None:
    """
    Parse a provider timestamp to aware UTC.

    Args:
        raw_value: Epoch number, numeric string, or formatted string.
        provider_timezone: Timezone of naive formatted strings.
        now: Reference time for the future-skew check (default: now).

    Returns:
        UTC datetime, or None if absent, unparseable, or out of range.
    """
    if raw_value is None or raw_value == '':
        return None

    parsed: datetime | None = None
    numeric: float | None = None

    if isinstance(raw_value, int | float):
        numeric = float(raw_value)
    else:
        text: str = raw_value.strip()
        try:
            numeric = float(text)
        except ValueError:
            parsed = _parse_formatted_time(text, provider_timezone)

    if numeric is not None:
        if math.isnan(numeric) or numeric <= 0:
            return None
        millis: float = numeric if numeric >= EPOCH_MILLIS_THRESHOLD else numeric * 1000
        try:
            parsed = datetime.fromtimestamp(millis / 1000, tz=UTC)
        except (OverflowError, OSError, ValueError):
            return None

    if parsed is None:
        return None

    reference: datetime = now or datetime.now(UTC)
    if parsed < MIN_VALID_TIMESTAMP or parsed > reference + MAX_FUTURE_SKEW:
        return None
    return parsed


def _parse_formatted_time(text: str, provider_timezone: tzinfo) -> datetime | None:
    try:
        local_time: datetime = datetime.strptime(text, PROVIDER_TIME_FORMAT)
    except ValueError:
        try:
            local_time = datetime.fromisoformat(text)
        except ValueError:
            return None

    if local_time.tzinfo is None:
        local_time = local_time.replace(tzinfo=provider_timezone)
    return local_time.astimezone(UTC)


def validate_coordinates(latitude: float | None, longitude: float | None) -> bool:
    """Reject missing, NaN, out-of-range, and null-island coordinates."""
    if latitude is None or longitude is None:
        return False
    if math.isnan(latitude) or math.isnan(longitude):
        return False
    if not (-90.0 <= latitude <= 90.0 and -180.0 <= longitude <= 180.0):
        return False
    return not (latitude == 0.0 and longitude == 0.0)


def normalize_record(
    raw: RawTelemetryRecord,
    acc_bit_masks: Sequence[int] = DEFAULT_ACC_BIT_MASKS,
    provider_timezone: tzinfo | None = None,
    now: datetime | None = None,
) -> NormalizedPosition | None:
    """
    Normalize one raw record.

    Args:
        raw: The provider record.
        acc_bit_masks: Status bits that signal ACC on.
        provider_timezone: Timezone of naive provider time strings
            (default GMT+8).
        now: Reference time for the future-skew check.

    Returns:
        The NormalizedPosition, or None if the record is unusable.
    """
    tz: tzinfo = provider_timezone or timezone(
        timedelta(hours=DEFAULT_PROVIDER_OFFSET_HOURS)
    )

    timestamp_utc: datetime | None = parse_provider_timestamp(raw.timestamp, tz, now)
    if timestamp_utc is None:
        logger.warning(
            'Dropping record for %s: invalid timestamp %r', raw.device_id, raw.timestamp
        )
        return None

    if not validate_coordinates(raw.latitude, raw.longitude):
        logger.warning(
            'Dropping record for %s at %s: invalid coordinates (%r, %r)',
            raw.device_id,
            timestamp_utc.isoformat(),
            raw.latitude,
            raw.longitude,
        )
        return None

    speed_kmh: float = normalize_speed(raw.speed)
    ignition: IgnitionResolution = resolve_ignition(raw, speed_kmh, acc_bit_masks)
    odometer: float | None = (
        raw.odometer_total
        if raw.odometer_total is not None and raw.odometer_total > 0
        else None
    )

    return NormalizedPosition(
        device_id=raw.device_id,
        timestamp_utc=timestamp_utc,
        latitude=raw.latitude,
        longitude=raw.longitude,
        speed_kmh=speed_kmh,
        ignition_on=ignition.ignition_on,
        ignition_confidence=ignition.confidence,
        ignition_method=ignition.method,
        odometer_total=odometer,
    )


class PositionNormalizer:
    """
    Configured normalizer for batches of raw records.

    Example:
        >>> normalizer = PositionNormalizer.from_config(config)
        >>> positions = normalizer.normalize_batch(records)
    """

    def __init__(
        self,
        acc_bit_masks: Sequence[int] = DEFAULT_ACC_BIT_MASKS,
        provider_timezone_offset_hours: float = DEFAULT_PROVIDER_OFFSET_HOURS,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self._acc_bit_masks: tuple[int, ...] = tuple(acc_bit_masks)
        self._provider_timezone: tzinfo = timezone(
            timedelta(hours=provider_timezone_offset_hours)
        )
        self._now: Callable[[], datetime] = now or (lambda: datetime.now(UTC))

    @classmethod
    def from_config(cls, config: TripEngineConfig) -> Self:
        return cls(
            acc_bit_masks=config.segmentation.acc_bit_masks,
            provider_timezone_offset_hours=config.provider.provider_timezone_offset_hours,
        )

    def normalize(self, raw: RawTelemetryRecord) -> NormalizedPosition | None:
        return normalize_record(
            raw,
            acc_bit_masks=self._acc_bit_masks,
            provider_timezone=self._provider_timezone,
            now=self._now(),
        )

    def normalize_batch(self, records: Iterable[RawTelemetryRecord]) -> list[NormalizedPosition]:
        """
        Normalize records and return them in timestamp order.

        Unusable records are dropped (and logged by normalize_record).
        """
        now: datetime = self._now()
        positions: list[NormalizedPosition] = []
        dropped: int = 0

        for raw in records:
            position: NormalizedPosition | None = normalize_record(
                raw,
                acc_bit_masks=self._acc_bit_masks,
                provider_timezone=self._provider_timezone,
                now=now,
            )
            if position is None:
                dropped += 1
            else:
                positions.append(position)

        if dropped:
            logger.warning('Dropped %d unusable records', dropped)

        positions.sort(key=lambda position: (position.device_id, position.timestamp_utc))
        return positions
