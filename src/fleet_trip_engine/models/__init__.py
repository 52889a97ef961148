# fleet_trip_engine/models/__init__.py
"""
Pydantic models for raw provider records, normalized positions, trips, and
provider bookkeeping.
"""

from fleet_trip_engine.models.positions import (
    LOW_CONFIDENCE_THRESHOLD,
    IgnitionMethod,
    NormalizedPosition,
)
from fleet_trip_engine.models.provider_models import (
    GPS51_STATUS_BAD_PARAMETERS,
    GPS51_STATUS_OK,
    GPS51_STATUS_RATE_LIMITED,
    GPS51_STATUS_TOKEN_EXPIRED,
    ProviderResponse,
    RateLimiterState,
    SyncStatus,
    TokenLease,
)
from fleet_trip_engine.models.raw_records import RawTelemetryRecord
from fleet_trip_engine.models.trips import (
    AnomalyKind,
    DistanceMethod,
    SegmentationAnomaly,
    Trip,
    TripEndpoint,
    TripEvent,
    TripEventKind,
)

__all__: list[str] = [
    'GPS51_STATUS_BAD_PARAMETERS',
    'GPS51_STATUS_OK',
    'GPS51_STATUS_RATE_LIMITED',
    'GPS51_STATUS_TOKEN_EXPIRED',
    'LOW_CONFIDENCE_THRESHOLD',
    'AnomalyKind',
    'DistanceMethod',
    'IgnitionMethod',
    'NormalizedPosition',
    'ProviderResponse',
    'RateLimiterState',
    'RawTelemetryRecord',
    'SegmentationAnomaly',
    'SyncStatus',
    'TokenLease',
    'Trip',
    'TripEndpoint',
    'TripEvent',
    'TripEventKind',
]
