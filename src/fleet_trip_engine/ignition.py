# fleet_trip_engine/ignition.py
"""
Ignition resolution from heterogeneous GPS51 signals.

GPS51 devices report ignition (ACC) in different ways depending on firmware:
a JT808-style status bitmask, a free-text status string (often localized),
or not at all. The resolver evaluates an ordered chain of signals and takes
the first one that can decide. Every result carries a confidence so
consumers can tell a status-bit reading from a guess based on speed.

Evaluation Order:
-----------------
1. status_bit      (1.0) - non-negative bitmask with an ACC bit set
2. string_parse    (0.9) - 'ACC开'/'ACC关' or 'ACC ON'/'ACC OFF' variants
3. multi_signal    (0.7) - speed > 5 km/h AND moving flag with speed > 3
4. speed_inference (0.3) - exactly one of those two movement signals
5. unknown         (0.0) - nothing decided; ignition reported off

The resolver is pure: same record and speed in, same resolution out.
"""

import logging
import re
from collections.abc import Callable, Sequence
from typing import Final

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_engine.models import (
    LOW_CONFIDENCE_THRESHOLD,
    IgnitionMethod,
    RawTelemetryRecord,
)

__all__: list[str] = [
    'DEFAULT_ACC_BIT_MASKS',
    'IgnitionResolution',
    'is_low_confidence',
    'parse_acc_text',
    'resolve_ignition',
]

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_ACC_BIT_MASKS: Final[tuple[int, ...]] = (0x1, 0x2, 0x4, 0x8)

STATUS_BIT_CONFIDENCE: Final[float] = 1.0
STRING_PARSE_CONFIDENCE: Final[float] = 0.9
MULTI_SIGNAL_CONFIDENCE: Final[float] = 0.7
SPEED_INFERENCE_CONFIDENCE: Final[float] = 0.3

# Below this the speed is likely GPS drift rather than driving.
SPEED_SIGNAL_MIN_KMH: Final[float] = 5.0
# The provider's movement flag only counts above this speed.
MOVING_FLAG_MIN_KMH: Final[float] = 3.0

STATUS_32_BIT_MASK: Final[int] = 0xFFFFFFFF

# Separator between 'ACC' and the state: space, ':', '_', '=' or nothing.
_ACC_OFF_PATTERN: Final[re.Pattern[str]] = re.compile(
    r'ACC[\s:_=]*(?:关|OFF\b)', re.IGNORECASE
)
_ACC_ON_PATTERN: Final[re.Pattern[str]] = re.compile(
    r'ACC[\s:_=]*(?:开|ON\b)', re.IGNORECASE
)


class IgnitionResolution(BaseModel):
    """Outcome of one ignition evaluator."""

    model_config = ConfigDict(extra='forbid', frozen=True)

    ignition_on: bool
    confidence: float = Field(ge=0.0, le=1.0)
    method: IgnitionMethod


UNKNOWN_RESOLUTION: Final[IgnitionResolution] = IgnitionResolution(
    ignition_on=False,
    confidence=0.0,
    method=IgnitionMethod.UNKNOWN,
)

# An evaluator returns None when its signal is absent or indeterminate.
IgnitionEvaluator = Callable[[RawTelemetryRecord, float], IgnitionResolution | None]


# =============================================================================
# Evaluators
# =============================================================================


def _status_bit_evaluator(acc_bit_masks: Sequence[int]) -> IgnitionEvaluator:
    def evaluate(raw: RawTelemetryRecord, speed_kmh: float) -> IgnitionResolution | None:
        status: int | None = raw.status_bitmask
        if status is None or status < 0:
            return None

        # Firmware that does not wire ACC to the bitmask leaves every ACC bit
        # clear, so a clear mask cannot be read as a confident off.
        status_32: int = status & STATUS_32_BIT_MASK
        if not any(status_32 & mask for mask in acc_bit_masks):
            return None

        return IgnitionResolution(
            ignition_on=True,
            confidence=STATUS_BIT_CONFIDENCE,
            method=IgnitionMethod.STATUS_BIT,
        )

    return evaluate


def parse_acc_text(status_text: str) -> bool | None:
    """
    Parse an ACC state from free text.

    Returns:
        False if an OFF marker is present (OFF wins over ON), True if only an
        ON marker is present, None if neither is.
    """
    if _ACC_OFF_PATTERN.search(status_text):
        return False
    if _ACC_ON_PATTERN.search(status_text):
        return True
    return None


def _string_parse_evaluator(
    raw: RawTelemetryRecord, speed_kmh: float
) -> IgnitionResolution | None:
    for status_text in raw.status_texts:
        parsed: bool | None = parse_acc_text(status_text)
        if parsed is not None:
            return IgnitionResolution(
                ignition_on=parsed,
                confidence=STRING_PARSE_CONFIDENCE,
                method=IgnitionMethod.STRING_PARSE,
            )
    return None


def _movement_evaluator(
    raw: RawTelemetryRecord, speed_kmh: float
) -> IgnitionResolution | None:
    speed_signal: bool = speed_kmh > SPEED_SIGNAL_MIN_KMH
    moving_signal: bool = raw.moving == 1 and speed_kmh > MOVING_FLAG_MIN_KMH

    if speed_signal and moving_signal:
        return IgnitionResolution(
            ignition_on=True,
            confidence=MULTI_SIGNAL_CONFIDENCE,
            method=IgnitionMethod.MULTI_SIGNAL,
        )
    if speed_signal or moving_signal:
        return IgnitionResolution(
            ignition_on=True,
            confidence=SPEED_INFERENCE_CONFIDENCE,
            method=IgnitionMethod.SPEED_INFERENCE,
        )
    return None


# =============================================================================
# Public API
# =============================================================================


def resolve_ignition(
    raw: RawTelemetryRecord,
    speed_kmh: float,
    acc_bit_masks: Sequence[int] = DEFAULT_ACC_BIT_MASKS,
) -> IgnitionResolution:
    """
    Resolve the ignition state of one record.

    Args:
        raw: The provider record.
        speed_kmh: The record's normalized speed.
        acc_bit_masks: Status bits that signal ACC on.

    Returns:
        The first decisive resolution, or an `unknown` resolution with
        confidence 0.0.
    """
    evaluators: tuple[IgnitionEvaluator, ...] = (
        _status_bit_evaluator(acc_bit_masks),
        _string_parse_evaluator,
        _movement_evaluator,
    )

    for evaluator in evaluators:
        resolution: IgnitionResolution | None = evaluator(raw, speed_kmh)
        if resolution is not None:
            if is_low_confidence(resolution.confidence):
                logger.debug(
                    'Low-confidence ignition for %s: %s (%.1f)',
                    raw.device_id,
                    resolution.method.value,
                    resolution.confidence,
                )
            return resolution

    return UNKNOWN_RESOLUTION


def is_low_confidence(confidence: float) -> bool:
    """Whether an ignition confidence is too low for ignition-dependent decisions."""
    return confidence < LOW_CONFIDENCE_THRESHOLD
