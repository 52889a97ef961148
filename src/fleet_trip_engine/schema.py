# fleet_trip_engine/schema.py
"""
Table schema definitions for positions, trips, and sync status.

This module provides the canonical column definitions, key columns, and
DataFrame schema enforcement for the three Parquet tables, plus the
conversions between the pydantic models and DataFrame rows. All code that
reads or writes the tables goes through these definitions so column names
and dtypes never drift between writer and reader.

Design Rationale:
-----------------
The tables are flat (no nested structures): a Trip's start/end endpoints are
spread into prefixed columns. This keeps Parquet columnar storage efficient
and lets BI tools query the tables without JSON parsing.
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any, Final

import numpy as np
import pandas as pd

from fleet_trip_engine.models import (
    DistanceMethod,
    IgnitionMethod,
    NormalizedPosition,
    SyncStatus,
    Trip,
    TripEndpoint,
)

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = [
    'POSITION_COLUMNS',
    'POSITION_KEY_COLUMNS',
    'SYNC_STATUS_COLUMNS',
    'SYNC_STATUS_KEY_COLUMNS',
    'TRIP_COLUMNS',
    'TRIP_KEY_COLUMNS',
    'dataframe_to_positions',
    'dataframe_to_sync_statuses',
    'dataframe_to_trips',
    'enforce_position_schema',
    'enforce_sync_status_schema',
    'enforce_trip_schema',
    'positions_to_dataframe',
    'sync_statuses_to_dataframe',
    'trips_to_dataframe',
]

# =============================================================================
# Schema Constants
# =============================================================================

POSITION_COLUMNS: Final[list[str]] = [
    'device_id',  # Provider device identifier
    'timestamp_utc',  # Sample time (UTC, timezone-aware)
    'latitude',  # WGS84 decimal degrees
    'longitude',  # WGS84 decimal degrees
    'speed_kmh',  # Normalized speed
    'ignition_on',  # Resolved ignition state
    'ignition_confidence',  # 0.0 - 1.0
    'ignition_method',  # IgnitionMethod value
    'odometer_total',  # Cumulative distance in metres, NaN if absent
]

# Idempotency key: re-ingesting a sample never creates a second row.
POSITION_KEY_COLUMNS: Final[list[str]] = ['device_id', 'timestamp_utc']

TRIP_COLUMNS: Final[list[str]] = [
    'device_id',
    'trip_sequence_number',  # Per-device counter, starts at 1
    'start_time',
    'end_time',  # NaT while the trip is open
    'start_latitude',
    'start_longitude',
    'start_odometer',
    'end_latitude',
    'end_longitude',
    'end_odometer',
    'distance_value',  # Metres, NaN while open
    'distance_method',  # 'odometer' | 'geodesic', None while open
    'avg_speed',
    'max_speed',
    'sample_count',
    'duration_seconds',  # Derived, NaN while open
]

# Closing a trip rewrites the open row with the same key.
TRIP_KEY_COLUMNS: Final[list[str]] = ['device_id', 'trip_sequence_number']

SYNC_STATUS_COLUMNS: Final[list[str]] = [
    'device_id',
    'last_success_at',
    'last_position_time',
    'error_count',
    'last_error',
    'positions_ingested',
    'trips_closed',
]

SYNC_STATUS_KEY_COLUMNS: Final[list[str]] = ['device_id']

_POSITION_FLOAT_COLUMNS: Final[list[str]] = [
    'latitude',
    'longitude',
    'speed_kmh',
    'ignition_confidence',
    'odometer_total',
]
_TRIP_FLOAT_COLUMNS: Final[list[str]] = [
    'start_latitude',
    'start_longitude',
    'start_odometer',
    'end_latitude',
    'end_longitude',
    'end_odometer',
    'distance_value',
    'avg_speed',
    'max_speed',
    'duration_seconds',
]
_SYNC_STATUS_INT_COLUMNS: Final[list[str]] = [
    'error_count',
    'positions_ingested',
    'trips_closed',
]


# =============================================================================
# Helpers
# =============================================================================


def _require_columns(dataframe: pd.DataFrame, columns: list[str], table: str) -> None:
    missing_columns: set[str] = set(columns) - set(dataframe.columns)
    if missing_columns:
        raise ValueError(
            f'{table} DataFrame missing required columns: {sorted(missing_columns)}'
        )


def _coerce_floats(dataframe: pd.DataFrame, columns: list[str]) -> None:
    for column_name in columns:
        dataframe[column_name] = pd.to_numeric(
            dataframe[column_name], errors='coerce'
        ).astype(np.float64)


def _coerce_strings(dataframe: pd.DataFrame, columns: list[str]) -> None:
    """Force identifiers to str while keeping nulls as nulls."""
    for column_name in columns:
        dataframe[column_name] = dataframe[column_name].astype(object)
        valid_mask: pd.Series = dataframe[column_name].notna()
        dataframe.loc[valid_mask, column_name] = dataframe.loc[
            valid_mask, column_name
        ].astype(str)


def _optional(value: Any) -> Any:
    """Map pandas missing markers (NaN, NaT, None) to None."""
    if value is None:
        return None
    if isinstance(value, float | np.floating) and np.isnan(value):
        return None
    if value is pd.NaT:
        return None
    return value


def _optional_datetime(value: Any) -> datetime | None:
    value = _optional(value)
    if value is None:
        return None
    if isinstance(value, pd.Timestamp):
        return value.to_pydatetime()
    return value


def _optional_float(value: Any) -> float | None:
    value = _optional(value)
    return None if value is None else float(value)


# =============================================================================
# Schema Enforcement
# =============================================================================


def enforce_position_schema(dataframe: pd.DataFrame) -> pd.DataFrame:
    """
    Enforce column order and dtypes on a positions DataFrame.

    Idempotent: calling it on an already-conforming frame changes nothing.

    Returns:
        DataFrame with timestamp_utc as datetime64[ns, UTC], numeric columns
        as float64 (NaN for missing), ignition_on as bool, and identifiers
        as str.

    Raises:
        ValueError: If required columns are missing.
    """
    _require_columns(dataframe, POSITION_COLUMNS, 'positions')
    result: pd.DataFrame = dataframe.copy()

    result['timestamp_utc'] = pd.to_datetime(result['timestamp_utc'], utc=True)
    _coerce_floats(result, _POSITION_FLOAT_COLUMNS)
    result['ignition_on'] = result['ignition_on'].astype(bool)
    _coerce_strings(result, ['device_id', 'ignition_method'])

    return result[POSITION_COLUMNS]


def enforce_trip_schema(dataframe: pd.DataFrame) -> pd.DataFrame:
    """Enforce column order and dtypes on a trips DataFrame."""
    _require_columns(dataframe, TRIP_COLUMNS, 'trips')
    result: pd.DataFrame = dataframe.copy()

    for column_name in ('start_time', 'end_time'):
        result[column_name] = pd.to_datetime(result[column_name], utc=True)
    _coerce_floats(result, _TRIP_FLOAT_COLUMNS)
    result['trip_sequence_number'] = result['trip_sequence_number'].astype(np.int64)
    result['sample_count'] = result['sample_count'].astype(np.int64)
    _coerce_strings(result, ['device_id', 'distance_method'])

    return result[TRIP_COLUMNS]


def enforce_sync_status_schema(dataframe: pd.DataFrame) -> pd.DataFrame:
    """Enforce column order and dtypes on a sync status DataFrame."""
    _require_columns(dataframe, SYNC_STATUS_COLUMNS, 'sync_status')
    result: pd.DataFrame = dataframe.copy()

    for column_name in ('last_success_at', 'last_position_time'):
        result[column_name] = pd.to_datetime(result[column_name], utc=True)
    for column_name in _SYNC_STATUS_INT_COLUMNS:
        result[column_name] = result[column_name].astype(np.int64)
    _coerce_strings(result, ['device_id', 'last_error'])

    return result[SYNC_STATUS_COLUMNS]


# =============================================================================
# Model <-> DataFrame Conversion
# =============================================================================


def positions_to_dataframe(positions: Iterable[NormalizedPosition]) -> pd.DataFrame:
    """Convert positions to a schema-conforming DataFrame."""
    records: list[dict[str, Any]] = [
        {
            'device_id': position.device_id,
            'timestamp_utc': position.timestamp_utc,
            'latitude': position.latitude,
            'longitude': position.longitude,
            'speed_kmh': position.speed_kmh,
            'ignition_on': position.ignition_on,
            'ignition_confidence': position.ignition_confidence,
            'ignition_method': position.ignition_method.value,
            'odometer_total': position.odometer_total,
        }
        for position in positions
    ]
    return enforce_position_schema(pd.DataFrame(records, columns=POSITION_COLUMNS))


def dataframe_to_positions(dataframe: pd.DataFrame) -> list[NormalizedPosition]:
    """Convert positions table rows back into models."""
    return [
        NormalizedPosition(
            device_id=str(row['device_id']),
            timestamp_utc=_optional_datetime(row['timestamp_utc']),
            latitude=float(row['latitude']),
            longitude=float(row['longitude']),
            speed_kmh=float(row['speed_kmh']),
            ignition_on=bool(row['ignition_on']),
            ignition_confidence=float(row['ignition_confidence']),
            ignition_method=IgnitionMethod(row['ignition_method']),
            odometer_total=_optional_float(row['odometer_total']),
        )
        for row in dataframe.to_dict(orient='records')
    ]


def trips_to_dataframe(trips: Iterable[Trip]) -> pd.DataFrame:
    """Convert trips to a schema-conforming DataFrame, flattening endpoints."""
    records: list[dict[str, Any]] = []
    for trip in trips:
        end: TripEndpoint | None = trip.end_position
        records.append(
            {
                'device_id': trip.device_id,
                'trip_sequence_number': trip.trip_sequence_number,
                'start_time': trip.start_time,
                'end_time': trip.end_time,
                'start_latitude': trip.start_position.latitude,
                'start_longitude': trip.start_position.longitude,
                'start_odometer': trip.start_position.odometer_total,
                'end_latitude': end.latitude if end else None,
                'end_longitude': end.longitude if end else None,
                'end_odometer': end.odometer_total if end else None,
                'distance_value': trip.distance_value,
                'distance_method': (
                    trip.distance_method.value if trip.distance_method else None
                ),
                'avg_speed': trip.avg_speed,
                'max_speed': trip.max_speed,
                'sample_count': trip.sample_count,
                'duration_seconds': trip.duration_seconds,
            }
        )
    return enforce_trip_schema(pd.DataFrame(records, columns=TRIP_COLUMNS))


def dataframe_to_trips(dataframe: pd.DataFrame) -> list[Trip]:
    """Convert trips table rows back into models."""
    trips: list[Trip] = []
    for row in dataframe.to_dict(orient='records'):
        end_time: datetime | None = _optional_datetime(row['end_time'])
        start_time: datetime | None = _optional_datetime(row['start_time'])
        method: Any = _optional(row['distance_method'])

        end_position: TripEndpoint | None = None
        if end_time is not None:
            end_position = TripEndpoint(
                timestamp_utc=end_time,
                latitude=float(row['end_latitude']),
                longitude=float(row['end_longitude']),
                odometer_total=_optional_float(row['end_odometer']),
            )

        trips.append(
            Trip(
                device_id=str(row['device_id']),
                trip_sequence_number=int(row['trip_sequence_number']),
                start_time=start_time,
                end_time=end_time,
                start_position=TripEndpoint(
                    timestamp_utc=start_time,
                    latitude=float(row['start_latitude']),
                    longitude=float(row['start_longitude']),
                    odometer_total=_optional_float(row['start_odometer']),
                ),
                end_position=end_position,
                distance_value=_optional_float(row['distance_value']),
                distance_method=DistanceMethod(method) if method else None,
                avg_speed=float(row['avg_speed']),
                max_speed=float(row['max_speed']),
                sample_count=int(row['sample_count']),
            )
        )
    return trips


def sync_statuses_to_dataframe(statuses: Iterable[SyncStatus]) -> pd.DataFrame:
    """Convert sync statuses to a schema-conforming DataFrame."""
    records: list[dict[str, Any]] = [status.model_dump() for status in statuses]
    return enforce_sync_status_schema(pd.DataFrame(records, columns=SYNC_STATUS_COLUMNS))


def dataframe_to_sync_statuses(dataframe: pd.DataFrame) -> list[SyncStatus]:
    """Convert sync status table rows back into models."""
    return [
        SyncStatus(
            device_id=str(row['device_id']),
            last_success_at=_optional_datetime(row['last_success_at']),
            last_position_time=_optional_datetime(row['last_position_time']),
            error_count=int(row['error_count']),
            last_error=_optional(row['last_error']),
            positions_ingested=int(row['positions_ingested']),
            trips_closed=int(row['trips_closed']),
        )
        for row in dataframe.to_dict(orient='records')
    ]
