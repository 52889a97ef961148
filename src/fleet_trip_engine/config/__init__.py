"""
Configuration Package for Fleet Trip Engine.

Exposes the main configuration models and the loader function.
"""

from fleet_trip_engine.config.config_models import (
    CompressionType,
    LoggingConfig,
    PipelineConfig,
    ProviderConfig,
    SegmentationConfig,
    StorageConfig,
    TripEngineConfig,
)
from fleet_trip_engine.config.loader import load_config

__all__: list[str] = [
    'CompressionType',
    'LoggingConfig',
    'PipelineConfig',
    'ProviderConfig',
    'SegmentationConfig',
    'StorageConfig',
    'TripEngineConfig',
    'load_config',
]
