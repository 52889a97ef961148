# fleet_trip_engine/__init__.py
"""
Fleet Trip Engine - GPS51 telemetry ingestion and trip segmentation.

The package turns raw GPS51 device samples into clean positions and
ignition-driven trips:

1. **Provider Client**: rate-limited, token-managed GPS51 open API access
   - One process-wide RateLimiter shared by every device worker
   - Token lease cached, refreshed before expiry, single-flight login
   - Typed actions: querytrack, lastposition, querymonitorlist

2. **Normalization & Ignition**: raw record -> NormalizedPosition
   - Speed unit detection and drift filtering
   - Ignition resolved from status bits, ACC text, or movement, with a
     confidence score and the method used

3. **Segmentation & Storage**: positions -> trips
   - Per-device IDLE_OFF / ACTIVE / IDLE_ON state machine
   - Idle split after a configurable zero-speed period (default 180s)
   - Odometer distance with a geodesic fallback
   - Idempotent Parquet tables for positions, trips, and sync status

Quick Start:
    >>> from fleet_trip_engine import IngestionPipeline
    >>>
    >>> # One-liner for cron jobs
    >>> IngestionPipeline('config/trip_engine_config.yaml').run()
    >>>
    >>> # Query the results
    >>> from fleet_trip_engine import TripStore, load_config
    >>> store = TripStore(load_config('config/trip_engine_config.yaml').storage)
    >>> trips = store.trips_for_device('868120000000001')
"""

__version__ = '0.1.0'

from fleet_trip_engine.client import (
    AuthFailure,
    Gps51Client,
    ProviderBadParameters,
    ProviderDeadlineExceeded,
    ProviderError,
    ProviderGenericError,
    ProviderRateLimited,
    ProviderTokenExpired,
    TransientProviderError,
)
from fleet_trip_engine.common import setup_logger
from fleet_trip_engine.config import load_config
from fleet_trip_engine.distance import compute_trip_distance
from fleet_trip_engine.ignition import resolve_ignition
from fleet_trip_engine.normalization import PositionNormalizer, normalize_record
from fleet_trip_engine.pipeline import DeviceCycleResult, IngestionPipeline, PipelineError
from fleet_trip_engine.provider import Gps51Provider
from fleet_trip_engine.rate_limiter import RateLimiter
from fleet_trip_engine.segmenter import TripSegmenter
from fleet_trip_engine.store import TripStore

__all__: list[str] = [
    'AuthFailure',
    'DeviceCycleResult',
    'Gps51Client',
    'Gps51Provider',
    'IngestionPipeline',
    'PipelineError',
    'PositionNormalizer',
    'ProviderBadParameters',
    'ProviderDeadlineExceeded',
    'ProviderError',
    'ProviderGenericError',
    'ProviderRateLimited',
    'ProviderTokenExpired',
    'RateLimiter',
    'TransientProviderError',
    'TripSegmenter',
    'TripStore',
    '__version__',
    'compute_trip_distance',
    'load_config',
    'normalize_record',
    'resolve_ignition',
    'setup_logger',
]
