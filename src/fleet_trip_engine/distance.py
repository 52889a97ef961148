# fleet_trip_engine/distance.py
"""
Trip distance from odometer deltas, with a geodesic fallback.

The device odometer is the preferred source: it integrates the real path,
including the parts between samples. It is used when at least two
samples carry a positive reading (or the trip is a single sample with one)
and the delta from the first reading to the last is not negative. Otherwise
the distance is the sum of great-circle (haversine) hops between
consecutive samples, which undercounts curves and is flagged as approximate.

Negative odometer deltas (device reset, counter rollover, bad sample) are
recorded as a SegmentationAnomaly and logged at WARNING; the trip falls back
to the geodesic distance. Single hops longer than `max_hop_meters` are GPS
jumps and are left out of the geodesic sum.
"""

import logging
from collections.abc import Sequence
from typing import Final, cast

import numpy as np
from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_engine.models import (
    AnomalyKind,
    DistanceMethod,
    NormalizedPosition,
    SegmentationAnomaly,
)

__all__: list[str] = [
    'DEFAULT_MAX_HOP_METERS',
    'DistanceResult',
    'compute_trip_distance',
    'haversine_meters',
]

logger: logging.Logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS: Final[float] = 6_371_000.0
DEFAULT_MAX_HOP_METERS: Final[float] = 10_000.0


class DistanceResult(BaseModel):
    """
    Finalized trip distance.

    Attributes:
        value: Distance in metres.
        method: Odometer or geodesic.
        skipped_hops: Geodesic hops dropped as GPS jumps.
        anomalies: Data problems found while computing the distance.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    value: float = Field(ge=0.0)
    method: DistanceMethod
    skipped_hops: int = Field(default=0, ge=0)
    anomalies: list[SegmentationAnomaly] = Field(default_factory=list)


def haversine_meters(
    latitude_1: float,
    longitude_1: float,
    latitude_2: float,
    longitude_2: float,
) -> float:
    """Great-circle distance between two WGS84 points in metres."""
    return float(
        _haversine_array(
            np.array([latitude_1]),
            np.array([longitude_1]),
            np.array([latitude_2]),
            np.array([longitude_2]),
        )[0]
    )


def _haversine_array(
    latitudes_1: np.ndarray,
    longitudes_1: np.ndarray,
    latitudes_2: np.ndarray,
    longitudes_2: np.ndarray,
) -> np.ndarray:
    lat_1 = np.radians(latitudes_1)
    lat_2 = np.radians(latitudes_2)
    delta_lat = lat_2 - lat_1
    delta_lon = np.radians(longitudes_2 - longitudes_1)

    a = np.sin(delta_lat / 2) ** 2 + np.cos(lat_1) * np.cos(lat_2) * np.sin(delta_lon / 2) ** 2
    # Clip guards arcsin against rounding just above 1.0.
    return 2 * EARTH_RADIUS_METERS * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))


def _geodesic_distance(
    samples: Sequence[NormalizedPosition],
    max_hop_meters: float,
) -> tuple[float, int]:
    """Sum of plausible haversine hops, and the number of hops skipped."""
    if len(samples) < 2:  # noqa: PLR2004
        return 0.0, 0

    latitudes = np.array([sample.latitude for sample in samples], dtype=np.float64)
    longitudes = np.array([sample.longitude for sample in samples], dtype=np.float64)

    hops: np.ndarray = _haversine_array(
        latitudes[:-1], longitudes[:-1], latitudes[1:], longitudes[1:]
    )
    jump_mask: np.ndarray = hops > max_hop_meters

    return float(hops[~jump_mask].sum()), int(jump_mask.sum())


def compute_trip_distance(
    samples: Sequence[NormalizedPosition],
    max_hop_meters: float = DEFAULT_MAX_HOP_METERS,
) -> DistanceResult:
    """
    Compute a trip's distance from its samples.

    Args:
        samples: The trip's positions in timestamp order.
        max_hop_meters: Geodesic hops longer than this are skipped.

    Returns:
        DistanceResult in metres with the method used.

    Raises:
        ValueError: If `samples` is empty.
    """
    if not samples:
        raise ValueError('compute_trip_distance requires at least one sample')

    first: NormalizedPosition = samples[0]
    anomalies: list[SegmentationAnomaly] = []

    readings: list[NormalizedPosition] = [
        sample
        for sample in samples
        if sample.odometer_total is not None and sample.odometer_total > 0
    ]
    has_odometer_span: bool = len(readings) >= 2 or (  # noqa: PLR2004
        len(readings) == len(samples) == 1
    )

    if has_odometer_span:
        last: NormalizedPosition = readings[-1]
        start_odometer: float = cast(float, readings[0].odometer_total)
        end_odometer: float = cast(float, last.odometer_total)
        delta: float = end_odometer - start_odometer
        if delta >= 0:
            return DistanceResult(value=delta, method=DistanceMethod.ODOMETER)

        anomaly = SegmentationAnomaly(
            kind=AnomalyKind.NEGATIVE_ODOMETER_DELTA,
            device_id=last.device_id,
            timestamp_utc=last.timestamp_utc,
            detail=f'odometer went from {start_odometer} to {end_odometer}',
        )
        logger.warning(
            'Negative odometer delta for %s (%.0f -> %.0f); using geodesic distance',
            last.device_id,
            start_odometer,
            end_odometer,
        )
        anomalies.append(anomaly)

    distance, skipped_hops = _geodesic_distance(samples, max_hop_meters)
    if skipped_hops:
        logger.warning(
            'Skipped %d GPS jump(s) over %.0fm for %s',
            skipped_hops,
            max_hop_meters,
            first.device_id,
        )

    return DistanceResult(
        value=distance,
        method=DistanceMethod.GEODESIC,
        skipped_hops=skipped_hops,
        anomalies=anomalies,
    )
