"""
Tests for fleet_trip_engine.normalization module.

Tests speed unit detection, timestamp parsing, coordinate validation, and
record normalization.
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from conftest import BASE_TIME

from fleet_trip_engine.models import IgnitionMethod, NormalizedPosition, RawTelemetryRecord
from fleet_trip_engine.normalization import (
    PositionNormalizer,
    normalize_record,
    normalize_speed,
    parse_provider_timestamp,
    validate_coordinates,
)

GMT8 = timezone(timedelta(hours=8))
NOW: datetime = BASE_TIME + timedelta(hours=1)


def _raw(**overrides: object) -> RawTelemetryRecord:
    payload: dict[str, object] = {
        'deviceid': '868120000000001',
        'updatetime': int(BASE_TIME.timestamp() * 1000),
        'callat': 22.5431,
        'callon': 114.0579,
        'speed': 42000,
        'status': 1,
        'totaldistance': 125000,
    }
    payload.update(overrides)
    return RawTelemetryRecord.model_validate(payload)


class TestNormalizeSpeed:
    """Test speed unit detection and filtering."""

    @pytest.mark.parametrize(
        ('raw_speed', 'expected'),
        [
            (42000, 42.0),  # m/h
            (60, 60.0),  # already km/h
            (2.5, 0.0),  # drift
            (-5, 0.0),
            (250, 0.0),  # 250 m/h is 0.25 km/h
            (500_000, 300.0),  # clamped
            (45.67, 45.7),
            (None, 0.0),
        ],
    )
    def test_normalize_speed(self, raw_speed: float | None, expected: float) -> None:
        assert normalize_speed(raw_speed) == expected

    def test_nan_speed_is_zero(self) -> None:
        assert normalize_speed(float('nan')) == 0.0


class TestParseProviderTimestamp:
    """Test timestamp parsing to UTC."""

    def test_epoch_milliseconds(self) -> None:
        millis: int = int(BASE_TIME.timestamp() * 1000)

        assert parse_provider_timestamp(millis, GMT8, NOW) == BASE_TIME

    def test_epoch_seconds(self) -> None:
        seconds: int = int(BASE_TIME.timestamp())

        assert parse_provider_timestamp(seconds, GMT8, NOW) == BASE_TIME

    def test_numeric_string(self) -> None:
        millis: str = str(int(BASE_TIME.timestamp() * 1000))

        assert parse_provider_timestamp(millis, GMT8, NOW) == BASE_TIME

    def test_provider_local_string(self) -> None:
        """Naive provider strings are GMT+8."""
        assert parse_provider_timestamp('2024-05-01 16:00:00', GMT8, NOW) == BASE_TIME

    def test_iso_string_with_offset(self) -> None:
        assert (
            parse_provider_timestamp('2024-05-01T08:00:00+00:00', GMT8, NOW) == BASE_TIME
        )

    def test_result_is_utc(self) -> None:
        parsed: datetime | None = parse_provider_timestamp(
            '2024-05-01 16:00:00', GMT8, NOW
        )

        assert parsed is not None
        assert parsed.tzinfo == UTC

    @pytest.mark.parametrize(
        'raw_value',
        [None, '', 0, -1, 'garbage', '1999-12-31 23:00:00'],
    )
    def test_invalid_values(self, raw_value: float | str | None) -> None:
        assert parse_provider_timestamp(raw_value, GMT8, NOW) is None

    def test_future_skew_limit(self) -> None:
        """Up to 5 minutes ahead is tolerated, more is rejected."""
        near: int = int((NOW + timedelta(minutes=4)).timestamp() * 1000)
        far: int = int((NOW + timedelta(minutes=10)).timestamp() * 1000)

        assert parse_provider_timestamp(near, GMT8, NOW) is not None
        assert parse_provider_timestamp(far, GMT8, NOW) is None


class TestValidateCoordinates:
    @pytest.mark.parametrize(
        ('latitude', 'longitude', 'expected'),
        [
            (22.5431, 114.0579, True),
            (-33.8688, 151.2093, True),
            (0.0, 0.0, False),
            (91.0, 10.0, False),
            (10.0, -181.0, False),
            (None, 10.0, False),
            (float('nan'), 10.0, False),
        ],
    )
    def test_validate_coordinates(
        self,
        latitude: float | None,
        longitude: float | None,
        expected: bool,
    ) -> None:
        assert validate_coordinates(latitude, longitude) is expected


class TestNormalizeRecord:
    """Test single record normalization."""

    def test_valid_record(self) -> None:
        position: NormalizedPosition | None = normalize_record(_raw(), now=NOW)

        assert position is not None
        assert position.device_id == '868120000000001'
        assert position.timestamp_utc == BASE_TIME
        assert position.speed_kmh == 42.0  # noqa: PLR2004
        assert position.ignition_on is True
        assert position.ignition_method is IgnitionMethod.STATUS_BIT
        assert position.odometer_total == 125000.0  # noqa: PLR2004

    def test_invalid_timestamp_is_dropped(self) -> None:
        assert normalize_record(_raw(updatetime='not a time'), now=NOW) is None

    def test_null_island_is_dropped(self) -> None:
        assert normalize_record(_raw(callat=0, callon=0), now=NOW) is None

    def test_zero_odometer_is_absent(self) -> None:
        position: NormalizedPosition | None = normalize_record(
            _raw(totaldistance=0), now=NOW
        )

        assert position is not None
        assert position.odometer_total is None

    def test_unknown_ignition_has_zero_confidence(self) -> None:
        position: NormalizedPosition | None = normalize_record(
            _raw(status=-1, speed=0), now=NOW
        )

        assert position is not None
        assert position.ignition_method is IgnitionMethod.UNKNOWN
        assert position.ignition_confidence == 0.0
        assert position.ignition_known is False


class TestPositionNormalizer:
    """Test batch normalization."""

    def test_batch_drops_invalid_and_sorts(self) -> None:
        later: int = int((BASE_TIME + timedelta(seconds=30)).timestamp() * 1000)
        records: list[RawTelemetryRecord] = [
            _raw(updatetime=later),
            _raw(callat=95.0),
            _raw(),
        ]
        normalizer = PositionNormalizer(now=lambda: NOW)

        positions: list[NormalizedPosition] = normalizer.normalize_batch(records)

        assert [position.timestamp_utc for position in positions] == [
            BASE_TIME,
            BASE_TIME + timedelta(seconds=30),
        ]

    def test_configured_masks_are_used(self) -> None:
        normalizer = PositionNormalizer(acc_bit_masks=(0x4,), now=lambda: NOW)

        unmatched: NormalizedPosition | None = normalizer.normalize(_raw(status=1, speed=0))
        matched: NormalizedPosition | None = normalizer.normalize(_raw(status=4, speed=0))

        assert unmatched is not None
        assert unmatched.ignition_method is IgnitionMethod.UNKNOWN
        assert matched is not None
        assert matched.ignition_on is True
        assert matched.ignition_method is IgnitionMethod.STATUS_BIT
