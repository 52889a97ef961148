"""
Tests for fleet_trip_engine.pipeline module.

Tests IngestionPipeline orchestration against a mocked GPS51 provider and a
real TripStore in a temp directory: end-to-end cycles, incremental cursors,
per-device failure isolation, and device discovery.
"""

from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import pytest
import yaml
from conftest import BASE_TIME, DEVICE_ID

from fleet_trip_engine.client import ProviderGenericError
from fleet_trip_engine.config import PipelineConfig, StorageConfig, TripEngineConfig
from fleet_trip_engine.models import RawTelemetryRecord, SyncStatus, Trip
from fleet_trip_engine.pipeline import (
    DeviceCycleResult,
    IngestionPipeline,
    PipelineError,
)
from fleet_trip_engine.provider import Gps51Provider, LastPositionBatch
from fleet_trip_engine.store import TripStore

OTHER_DEVICE_ID: str = '868120000000002'
NOW: datetime = BASE_TIME + timedelta(hours=1)


def _at(offset_seconds: float) -> datetime:
    return BASE_TIME + timedelta(seconds=offset_seconds)


def _raw(
    offset_seconds: float,
    speed: float,
    ignition_on: bool | None,
    odometer: float,
    device_id: str = DEVICE_ID,
) -> RawTelemetryRecord:
    """Build a record; ignition_on=None reports no ACC signal at all."""
    payload: dict[str, Any] = {
        'deviceid': device_id,
        'updatetime': int(_at(offset_seconds).timestamp() * 1000),
        'callat': 22.5431,
        'callon': 114.0579,
        'speed': speed,
        'status': 1 if ignition_on else 0,
        'totaldistance': odometer,
    }
    if ignition_on is False:
        payload['strstatusen'] = 'ACC OFF'
    return RawTelemetryRecord.model_validate(payload)


def _trip_records(device_id: str = DEVICE_ID) -> list[RawTelemetryRecord]:
    """One 1000m trip: ignition on at 0s, off at 120s."""
    return [
        _raw(0, speed=30, ignition_on=True, odometer=1000, device_id=device_id),
        _raw(60, speed=50, ignition_on=True, odometer=1600, device_id=device_id),
        _raw(120, speed=0, ignition_on=False, odometer=2000, device_id=device_id),
    ]


@pytest.fixture
def mock_provider() -> Mock:
    """Gps51Provider double with a client that hands out deadlines."""
    provider = Mock(spec=Gps51Provider)
    provider.client = Mock()
    provider.client.deadline_in.return_value = 1_000.0
    provider.fetch_track.return_value = []
    return provider


@pytest.fixture
def pipeline(trip_engine_config: TripEngineConfig, mock_provider: Mock) -> IngestionPipeline:
    return IngestionPipeline(trip_engine_config, provider=mock_provider, now=lambda: NOW)


def _with_devices(config: TripEngineConfig, device_ids: list[str]) -> TripEngineConfig:
    return config.model_copy(
        update={'pipeline': PipelineConfig(device_ids=device_ids, max_workers=2)}
    )


class TestIngestionPipelineInitialization:
    """Test IngestionPipeline initialization."""

    def test_initialization_from_config_file(
        self,
        temp_dir: Path,
        mock_provider: Mock,
    ) -> None:
        """Should load and validate a YAML config file."""
        config_file: Path = temp_dir / 'config.yaml'
        config_file.write_text(
            yaml.safe_dump(
                {
                    'provider': {'username': 'fleet_user', 'password': 'secret'},
                    'pipeline': {'device_ids': [DEVICE_ID]},
                    'storage': {'data_dir': str(temp_dir / 'data')},
                    'logging': {'console_level': 'WARNING'},
                }
            ),
            encoding='utf-8',
        )

        pipeline = IngestionPipeline(config_file, provider=mock_provider)

        assert pipeline.config.pipeline.device_ids == [DEVICE_ID]
        assert pipeline.store.data_dir == temp_dir / 'data'

    def test_missing_config_file_raises(self, temp_dir: Path) -> None:
        with pytest.raises(FileNotFoundError):
            IngestionPipeline(temp_dir / 'missing.yaml')

    def test_context_manager_closes_provider(
        self,
        pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        with pipeline:
            pass

        mock_provider.close.assert_called_once()


class TestIngestionCycle:
    """Test a full ingestion cycle."""

    def test_end_to_end_cycle(
        self,
        pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        mock_provider.fetch_track.return_value = _trip_records()

        results: dict[str, DeviceCycleResult] = pipeline.run()

        result: DeviceCycleResult = results[DEVICE_ID]
        assert result.succeeded
        assert result.records_fetched == 3  # noqa: PLR2004
        assert result.positions_inserted == 3  # noqa: PLR2004
        assert result.trips_opened == 1
        assert result.trips_closed == 1

        trips: list[Trip] = pipeline.store.trips_for_device(DEVICE_ID)
        assert len(trips) == 1
        assert trips[0].end_time == _at(120)
        assert trips[0].distance_value == 1000.0  # noqa: PLR2004

        status: SyncStatus | None = pipeline.store.sync_status(DEVICE_ID)
        assert status is not None
        assert status.last_position_time == _at(120)
        assert status.last_success_at == NOW
        assert status.error_count == 0

    def test_first_cycle_uses_lookback(
        self,
        pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        pipeline.run()

        device_id, start, end, deadline = mock_provider.fetch_track.call_args.args
        assert device_id == DEVICE_ID
        assert start == NOW - timedelta(hours=24)
        assert end == NOW
        assert deadline == 1_000.0  # noqa: PLR2004

    def test_open_trip_is_stored(
        self,
        pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        mock_provider.fetch_track.return_value = _trip_records()[:2]

        pipeline.run()

        open_trip: Trip | None = pipeline.store.open_trip(DEVICE_ID)
        assert open_trip is not None
        assert open_trip.sample_count == 2  # noqa: PLR2004
        assert open_trip.max_speed == 50.0  # noqa: PLR2004

    def test_incremental_cycle_closes_open_trip(
        self,
        pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        """A trip split across cycles matches a single-cycle trip."""
        records: list[RawTelemetryRecord] = _trip_records()
        mock_provider.fetch_track.return_value = records[:2]
        pipeline.run()

        # The provider returns the overlap again; it is not re-segmented.
        mock_provider.fetch_track.return_value = records[1:]
        results: dict[str, DeviceCycleResult] = pipeline.run()

        assert mock_provider.fetch_track.call_args.args[1] == _at(60)
        assert results[DEVICE_ID].positions_inserted == 1
        assert results[DEVICE_ID].trips_opened == 0
        assert results[DEVICE_ID].trips_closed == 1

        trips: list[Trip] = pipeline.store.trips_for_device(DEVICE_ID)
        assert len(trips) == 1
        assert trips[0].trip_sequence_number == 1
        assert trips[0].sample_count == 3  # noqa: PLR2004
        assert trips[0].distance_value == 1000.0  # noqa: PLR2004

    def test_cycle_split_after_unknown_ignition_matches_single_cycle(
        self,
        trip_engine_config: TripEngineConfig,
        temp_dir: Path,
        mock_provider: Mock,
    ) -> None:
        """Restoring between cycles keeps the last determined ignition."""
        records: list[RawTelemetryRecord] = [
            _raw(0, speed=30, ignition_on=True, odometer=1000),
            _raw(60, speed=0, ignition_on=None, odometer=1500),
            _raw(300, speed=0, ignition_on=None, odometer=1500),
            _raw(400, speed=0, ignition_on=True, odometer=1500),
        ]

        single_config: TripEngineConfig = trip_engine_config.model_copy(
            update={'storage': StorageConfig(data_dir=temp_dir / 'single')}
        )
        single = IngestionPipeline(single_config, provider=mock_provider, now=lambda: NOW)
        mock_provider.fetch_track.return_value = records
        single.run()

        split = IngestionPipeline(trip_engine_config, provider=mock_provider, now=lambda: NOW)
        mock_provider.fetch_track.return_value = records[:3]
        split.run()
        mock_provider.fetch_track.return_value = records
        results: dict[str, DeviceCycleResult] = split.run()

        assert results[DEVICE_ID].trips_opened == 0
        assert split.store.open_trip(DEVICE_ID) is None
        assert single.store.open_trip(DEVICE_ID) is None
        assert split.store.trips_for_device(DEVICE_ID) == single.store.trips_for_device(
            DEVICE_ID
        )

    def test_rerun_is_idempotent(
        self,
        pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        mock_provider.fetch_track.return_value = _trip_records()
        pipeline.run()

        results: dict[str, DeviceCycleResult] = pipeline.run()

        assert results[DEVICE_ID].positions_inserted == 0
        assert results[DEVICE_ID].trips_opened == 0
        assert len(pipeline.store.trips_for_device(DEVICE_ID)) == 1
        assert len(pipeline.store.positions_for_device(DEVICE_ID)) == 3  # noqa: PLR2004

    def test_records_for_other_devices_are_ignored(
        self,
        pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        mock_provider.fetch_track.return_value = [
            *_trip_records(),
            _raw(30, speed=10, ignition_on=True, odometer=5, device_id=OTHER_DEVICE_ID),
        ]

        results: dict[str, DeviceCycleResult] = pipeline.run()

        assert results[DEVICE_ID].positions_inserted == 3  # noqa: PLR2004
        assert pipeline.store.positions_for_device(OTHER_DEVICE_ID) == []


class TestFailureIsolation:
    """Test that one device's failure does not affect the others."""

    @pytest.fixture
    def two_device_pipeline(
        self,
        trip_engine_config: TripEngineConfig,
        mock_provider: Mock,
    ) -> IngestionPipeline:
        config: TripEngineConfig = _with_devices(
            trip_engine_config, [DEVICE_ID, OTHER_DEVICE_ID]
        )
        return IngestionPipeline(config, provider=mock_provider, now=lambda: NOW)

    def test_provider_error_is_recorded(
        self,
        two_device_pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        def fetch_track(device_id: str, *_: Any) -> list[RawTelemetryRecord]:
            if device_id == OTHER_DEVICE_ID:
                raise ProviderGenericError('querytrack failed', status_code=1)
            return _trip_records()

        mock_provider.fetch_track.side_effect = fetch_track

        results: dict[str, DeviceCycleResult] = two_device_pipeline.run()

        assert results[DEVICE_ID].succeeded
        assert not results[OTHER_DEVICE_ID].succeeded
        assert results[OTHER_DEVICE_ID].error == 'querytrack failed'

        store: TripStore = two_device_pipeline.store
        failed_status: SyncStatus | None = store.sync_status(OTHER_DEVICE_ID)
        assert failed_status is not None
        assert failed_status.error_count == 1
        assert failed_status.last_error == 'querytrack failed'
        assert len(store.trips_for_device(DEVICE_ID)) == 1

    def test_unexpected_error_is_isolated(
        self,
        two_device_pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        def fetch_track(device_id: str, *_: Any) -> list[RawTelemetryRecord]:
            if device_id == OTHER_DEVICE_ID:
                raise RuntimeError('boom')
            return _trip_records()

        mock_provider.fetch_track.side_effect = fetch_track

        results: dict[str, DeviceCycleResult] = two_device_pipeline.run()

        assert results[DEVICE_ID].succeeded
        assert results[OTHER_DEVICE_ID].error == 'RuntimeError: boom'
        status: SyncStatus | None = two_device_pipeline.store.sync_status(OTHER_DEVICE_ID)
        assert status is not None
        assert status.error_count == 1

    def test_success_resets_error_count(
        self,
        pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        mock_provider.fetch_track.side_effect = ProviderGenericError('down')
        pipeline.run()
        pipeline.run()

        mock_provider.fetch_track.side_effect = None
        mock_provider.fetch_track.return_value = _trip_records()
        pipeline.run()

        status: SyncStatus | None = pipeline.store.sync_status(DEVICE_ID)
        assert status is not None
        assert status.error_count == 0
        assert status.last_error is None


class TestDeviceDiscovery:
    """Test device discovery when no devices are configured."""

    @pytest.fixture
    def discovering_pipeline(
        self,
        trip_engine_config: TripEngineConfig,
        mock_provider: Mock,
    ) -> IngestionPipeline:
        config: TripEngineConfig = _with_devices(trip_engine_config, [])
        return IngestionPipeline(config, provider=mock_provider, now=lambda: NOW)

    def test_discovered_devices_are_ingested(
        self,
        discovering_pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        mock_provider.list_devices.return_value = [DEVICE_ID]

        results: dict[str, DeviceCycleResult] = discovering_pipeline.run()

        assert list(results) == [DEVICE_ID]

    def test_no_devices_returns_empty(
        self,
        discovering_pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        mock_provider.list_devices.return_value = []

        assert discovering_pipeline.run() == {}
        mock_provider.fetch_track.assert_not_called()

    def test_discovery_failure_raises(
        self,
        discovering_pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        mock_provider.list_devices.side_effect = ProviderGenericError('no groups')

        with pytest.raises(PipelineError, match='Device discovery failed'):
            discovering_pipeline.run()


class TestPollLatestPositions:
    """Test the lastposition poll."""

    def test_poll_stores_positions_and_advances_cursor(
        self,
        pipeline: IngestionPipeline,
        mock_provider: Mock,
    ) -> None:
        mock_provider.fetch_last_positions.return_value = LastPositionBatch(
            records=[_raw(0, speed=30, ignition_on=True, odometer=1000)],
            last_query_time=1714550460000,
        )

        assert pipeline.poll_latest_positions() == 1
        assert pipeline.poll_latest_positions() == 0

        calls = mock_provider.fetch_last_positions.call_args_list
        assert calls[0].kwargs['last_query_time'] == 0
        assert calls[1].kwargs['last_query_time'] == 1714550460000  # noqa: PLR2004
        assert calls[0].args[0] == [DEVICE_ID]
        assert pipeline.store.trips_for_device(DEVICE_ID) == []
