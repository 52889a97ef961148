"""
Tests for fleet_trip_engine.ignition module.

Tests the ordered evaluator chain: status bits, ACC text, movement signals,
and the unknown fallback.
"""

import pytest

from fleet_trip_engine.ignition import (
    IgnitionResolution,
    is_low_confidence,
    parse_acc_text,
    resolve_ignition,
)
from fleet_trip_engine.models import IgnitionMethod, RawTelemetryRecord


def _record(**fields: object) -> RawTelemetryRecord:
    return RawTelemetryRecord.model_validate({'deviceid': 'dev-1', **fields})


class TestStatusBit:
    """Test status bitmask evaluation."""

    def test_acc_bit_set_means_on(self) -> None:
        resolution: IgnitionResolution = resolve_ignition(_record(status=0x1), 0.0)

        assert resolution.ignition_on is True
        assert resolution.confidence == 1.0
        assert resolution.method is IgnitionMethod.STATUS_BIT

    def test_clear_acc_bits_fall_through_to_text(self) -> None:
        resolution: IgnitionResolution = resolve_ignition(
            _record(status=0, strstatus='ACC ON'), 0.0
        )

        assert resolution.ignition_on is True
        assert resolution.confidence == 0.9  # noqa: PLR2004
        assert resolution.method is IgnitionMethod.STRING_PARSE

    def test_clear_acc_bits_fall_through_to_movement(self) -> None:
        """Non-ACC bits alone never force ignition off while driving."""
        resolution: IgnitionResolution = resolve_ignition(
            _record(status=0x400, moving=1), 50.0
        )

        assert resolution.ignition_on is True
        assert resolution.method is IgnitionMethod.MULTI_SIGNAL

    def test_clear_acc_bits_without_other_signals_is_unknown(self) -> None:
        resolution: IgnitionResolution = resolve_ignition(_record(status=0), 0.0)

        assert resolution.ignition_on is False
        assert resolution.confidence == 0.0
        assert resolution.method is IgnitionMethod.UNKNOWN

    def test_acc_bit_wins_over_text(self) -> None:
        """Status bits are evaluated before status text."""
        resolution: IgnitionResolution = resolve_ignition(
            _record(status=0x1, strstatus='ACC OFF'), 0.0
        )

        assert resolution.ignition_on is True
        assert resolution.method is IgnitionMethod.STATUS_BIT

    def test_custom_masks(self) -> None:
        """Only the configured bits signal ACC."""
        record: RawTelemetryRecord = _record(status=0x2)

        unmatched: IgnitionResolution = resolve_ignition(record, 0.0, acc_bit_masks=(0x4,))
        assert unmatched.method is IgnitionMethod.UNKNOWN
        assert resolve_ignition(record, 0.0, acc_bit_masks=(0x2,)).ignition_on is True

    def test_status_is_masked_to_32_bits(self) -> None:
        resolution: IgnitionResolution = resolve_ignition(
            _record(status=0x1_0000_0001), 0.0
        )

        assert resolution.ignition_on is True

    def test_negative_status_falls_through(self) -> None:
        """-1 is the 'signal unavailable' sentinel, not a reading."""
        resolution: IgnitionResolution = resolve_ignition(_record(status=-1), 0.0)

        assert resolution.method is IgnitionMethod.UNKNOWN

    def test_numeric_string_status(self) -> None:
        resolution: IgnitionResolution = resolve_ignition(_record(status='3'), 0.0)

        assert resolution.ignition_on is True
        assert resolution.method is IgnitionMethod.STATUS_BIT


class TestStringParse:
    """Test ACC status text parsing."""

    @pytest.mark.parametrize(
        ('text', 'expected'),
        [
            ('ACC开', True),
            ('ACC关', False),
            ('ACC ON', True),
            ('acc off', False),
            ('ACC:ON,GPS定位', True),
            ('ACC_OFF', False),
            ('ACC=ON', True),
            ('ACC ON; ACC OFF', False),
            ('ACCESSORY', None),
            ('Parking', None),
        ],
    )
    def test_parse_acc_text(self, text: str, expected: bool | None) -> None:
        assert parse_acc_text(text) is expected

    def test_localized_text_resolves(self) -> None:
        resolution: IgnitionResolution = resolve_ignition(
            _record(status=-1, strstatus='ACC开,GPS定位'), 0.0
        )

        assert resolution.ignition_on is True
        assert resolution.confidence == 0.9  # noqa: PLR2004
        assert resolution.method is IgnitionMethod.STRING_PARSE

    def test_english_text_is_used_when_localized_is_silent(self) -> None:
        resolution: IgnitionResolution = resolve_ignition(
            _record(strstatus='静止', strstatusen='ACC OFF, static'), 0.0
        )

        assert resolution.ignition_on is False
        assert resolution.method is IgnitionMethod.STRING_PARSE


class TestMovementSignals:
    """Test speed and moving-flag inference."""

    def test_speed_and_moving_flag_is_multi_signal(self) -> None:
        resolution: IgnitionResolution = resolve_ignition(_record(moving=1), 40.0)

        assert resolution.ignition_on is True
        assert resolution.confidence == 0.7  # noqa: PLR2004
        assert resolution.method is IgnitionMethod.MULTI_SIGNAL

    def test_speed_alone_is_speed_inference(self) -> None:
        resolution: IgnitionResolution = resolve_ignition(_record(), 40.0)

        assert resolution.ignition_on is True
        assert resolution.confidence == 0.3  # noqa: PLR2004
        assert resolution.method is IgnitionMethod.SPEED_INFERENCE

    def test_moving_flag_alone_is_speed_inference(self) -> None:
        """Moving flag at 4 km/h counts; the speed signal needs more than 5."""
        resolution: IgnitionResolution = resolve_ignition(_record(moving=1), 4.0)

        assert resolution.method is IgnitionMethod.SPEED_INFERENCE

    def test_slow_speed_without_flag_is_unknown(self) -> None:
        resolution: IgnitionResolution = resolve_ignition(_record(moving=0), 4.0)

        assert resolution.method is IgnitionMethod.UNKNOWN


class TestUnknown:
    """Test the fallback resolution."""

    def test_no_signal_is_unknown_with_zero_confidence(self) -> None:
        resolution: IgnitionResolution = resolve_ignition(_record(), 0.0)

        assert resolution.ignition_on is False
        assert resolution.confidence == 0.0
        assert resolution.method is IgnitionMethod.UNKNOWN

    def test_resolution_is_deterministic(self) -> None:
        record: RawTelemetryRecord = _record(status=-1, strstatus='ACC ON', moving=1)

        assert resolve_ignition(record, 30.0) == resolve_ignition(record, 30.0)


class TestConfidence:
    def test_low_confidence_threshold(self) -> None:
        assert is_low_confidence(0.3) is True
        assert is_low_confidence(0.0) is True
        assert is_low_confidence(0.7) is False
        assert is_low_confidence(1.0) is False
