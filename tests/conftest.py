"""
Shared pytest fixtures for fleet_trip_engine tests.

This module provides reusable fixtures for common test scenarios across
all test modules. Fixtures are automatically discovered by pytest.
"""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import httpx
import pytest

from fleet_trip_engine.config import (
    LoggingConfig,
    PipelineConfig,
    ProviderConfig,
    SegmentationConfig,
    StorageConfig,
    TripEngineConfig,
)
from fleet_trip_engine.models import IgnitionMethod, NormalizedPosition
from fleet_trip_engine.rate_limiter import RateLimiter

DEVICE_ID: str = '868120000000001'
BASE_TIME: datetime = datetime(2024, 5, 1, 8, 0, 0, tzinfo=UTC)
FAKE_EPOCH: float = 1_714_550_400.0

PositionFactory = Callable[..., NormalizedPosition]


# =============================================================================
# Time Fixtures
# =============================================================================


class FakeClock:
    """
    Manually advanced clock with a matching sleep.

    `sleep()` advances the clock instead of blocking, so rate limiter and
    retry waits are observable without wall-clock delays.
    """

    def __init__(self, start: float = FAKE_EPOCH) -> None:
        self.now: float = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    """Provide a fake clock starting at a fixed epoch."""
    return FakeClock()


# =============================================================================
# Configuration Fixtures
# =============================================================================


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    """
    Provide a temporary directory for test files.

    Args:
        tmp_path: pytest built-in fixture providing unique temp directory.

    Returns:
        Path to temporary directory that is automatically cleaned up.
    """
    return tmp_path


@pytest.fixture
def provider_config() -> ProviderConfig:
    """
    Provide ProviderConfig for testing.

    Returns:
        ProviderConfig with short, predictable retry delays.
    """
    return ProviderConfig(
        base_url='https://api.gps51.test',
        username='fleet_user',
        password='secret',  # pyright: ignore[reportArgumentType]
        request_timeout=(10, 30),
        max_retries=2,
        retry_initial_delay_seconds=1.0,
        retry_multiplier=2.0,
        retry_max_delay_seconds=10.0,
        rate_limit_backoff_seconds=60.0,
    )


@pytest.fixture
def storage_config(temp_dir: Path) -> StorageConfig:
    """
    Provide StorageConfig for testing.

    Returns:
        StorageConfig rooted in the temp directory.
    """
    return StorageConfig(data_dir=temp_dir / 'data', parquet_compression='snappy')


@pytest.fixture
def trip_engine_config(
    provider_config: ProviderConfig,
    storage_config: StorageConfig,
) -> TripEngineConfig:
    """
    Provide a complete TripEngineConfig for testing.

    Returns:
        TripEngineConfig with one configured device.
    """
    return TripEngineConfig(
        provider=provider_config,
        segmentation=SegmentationConfig(),
        pipeline=PipelineConfig(device_ids=[DEVICE_ID], max_workers=2),
        storage=storage_config,
        logging=LoggingConfig(console_level='WARNING'),
    )


@pytest.fixture
def rate_limiter(provider_config: ProviderConfig, fake_clock: FakeClock) -> RateLimiter:
    """Provide a RateLimiter driven by the fake clock."""
    return RateLimiter.from_config(
        provider_config, clock=fake_clock, sleep=fake_clock.sleep
    )


# =============================================================================
# Sample Data Fixtures
# =============================================================================


@pytest.fixture
def make_position() -> PositionFactory:
    """
    Provide a factory for NormalizedPosition samples.

    The factory takes the offset in seconds from BASE_TIME. Passing
    `ignition=None` produces an unknown-ignition sample.
    """

    def factory(
        offset_seconds: float,
        speed: float = 0.0,
        ignition: bool | None = True,
        odometer: float | None = None,
        latitude: float = 22.5431,
        longitude: float = 114.0579,
        device_id: str = DEVICE_ID,
        method: IgnitionMethod | None = None,
        confidence: float | None = None,
    ) -> NormalizedPosition:
        if ignition is None:
            resolved_method: IgnitionMethod = IgnitionMethod.UNKNOWN
            resolved_confidence: float = 0.0
        else:
            resolved_method = method or IgnitionMethod.STATUS_BIT
            resolved_confidence = 1.0 if confidence is None else confidence

        return NormalizedPosition(
            device_id=device_id,
            timestamp_utc=BASE_TIME + timedelta(seconds=offset_seconds),
            latitude=latitude,
            longitude=longitude,
            speed_kmh=speed,
            ignition_on=bool(ignition),
            ignition_confidence=resolved_confidence,
            ignition_method=resolved_method,
            odometer_total=odometer,
        )

    return factory


def json_response(payload: Any, status_code: int = 200) -> Mock:
    """Build a mock httpx.Response carrying a JSON body."""
    mock_response = Mock(spec=httpx.Response)
    mock_response.status_code = status_code
    mock_response.is_success = 200 <= status_code < 300  # noqa: PLR2004
    mock_response.json.return_value = payload
    mock_response.text = str(payload)
    return mock_response


def login_response(token: str = 'token-1', serverid: str = 'srv-1') -> Mock:
    """Successful GPS51 login response."""
    return json_response({'status': 0, 'token': token, 'serverid': serverid})
