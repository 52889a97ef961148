# fleet_trip_engine/pipeline.py
"""
Ingestion orchestration: fetch, normalize, persist, and segment per device.

This module ties the provider, normalizer, segmenter, and store together
into one ingestion cycle. Each configured (or discovered) device is handled
by its own worker thread; all workers share one rate-limited GPS51 client
and one TripStore.

Usage:
------
    from fleet_trip_engine.pipeline import IngestionPipeline

    # One-liner for cron jobs
    IngestionPipeline('config/trip_engine_config.yaml').run()

    # Or inspect the per-device outcome
    with IngestionPipeline('config/trip_engine_config.yaml') as pipeline:
        results = pipeline.run()
        failed = [r.device_id for r in results.values() if not r.succeeded]

Design Decisions:
-----------------
- Incremental: a device resumes from `last_position_time` in its sync
  status. A device with no status starts `initial_lookback_hours` back.

- Restore before segmenting: the segmenter is rebuilt from the stored open
  trip and the positions up to the previous cycle's cursor, so trip
  boundaries do not depend on how ingestion was split into cycles.

- Device independence: a ProviderError fails that device's cycle only. It
  is logged, counted in the sync status, and the other devices carry on.
  Unexpected exceptions are logged with a traceback and isolated the same
  way.

- Idempotence: re-fetched overlap is harmless. Positions insert on
  (device_id, timestamp_utc), trips upsert on their sequence number, and
  samples at or before the cursor are not segmented again.
"""

import logging
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from datetime import UTC, datetime, timedelta
from pathlib import Path
from types import TracebackType
from typing import Self

from pydantic import BaseModel, ConfigDict, Field

from fleet_trip_engine.client import ProviderError
from fleet_trip_engine.common import setup_logger
from fleet_trip_engine.config import TripEngineConfig, load_config
from fleet_trip_engine.models import (
    NormalizedPosition,
    RawTelemetryRecord,
    SegmentationAnomaly,
    SyncStatus,
    Trip,
    TripEvent,
    TripEventKind,
)
from fleet_trip_engine.normalization import PositionNormalizer
from fleet_trip_engine.provider import Gps51Provider, LastPositionBatch
from fleet_trip_engine.segmenter import TripSegmenter
from fleet_trip_engine.store import TripStore

__all__: list[str] = ['DeviceCycleResult', 'IngestionPipeline', 'PipelineError']

logger: logging.Logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """
    Raised when the pipeline cannot run at all.

    Per-device failures never raise; they are reported in DeviceCycleResult.
    """


class DeviceCycleResult(BaseModel):
    """
    Outcome of one device's ingestion cycle.

    Attributes:
        device_id: Provider device identifier.
        records_fetched: Raw records returned by the provider.
        positions_inserted: Normalized positions that were new to the store.
        trips_opened: Trips opened during this cycle.
        trips_closed: Trips closed during this cycle.
        anomalies: Segmentation anomalies recorded during this cycle.
        error: Failure message, None on success.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    device_id: str
    records_fetched: int = Field(default=0, ge=0)
    positions_inserted: int = Field(default=0, ge=0)
    trips_opened: int = Field(default=0, ge=0)
    trips_closed: int = Field(default=0, ge=0)
    anomalies: list[SegmentationAnomaly] = Field(default_factory=list)
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class IngestionPipeline:
    """
    Runs ingestion cycles for a fleet of GPS51 devices.

    Attributes:
        config: The loaded TripEngineConfig (read-only).
        store: The TripStore the pipeline writes to (read-only).
    """

    def __init__(
        self,
        config: TripEngineConfig | Path | str,
        provider: Gps51Provider | None = None,
        store: TripStore | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the pipeline.

        Args:
            config: A validated config, or the path of a YAML config file.
            provider: Provider to use instead of building one from config.
            store: Store to use instead of building one from config.
            now: Source of the current UTC time (default: datetime.now(UTC)).

        Raises:
            FileNotFoundError: If the config file does not exist.
            ValidationError: If the config file fails validation.
        """
        if isinstance(config, TripEngineConfig):
            self._config: TripEngineConfig = config
        else:
            self._config = load_config(Path(config))

        # Configure logging first so all subsequent operations are logged
        setup_logger(config=self._config.logging)

        self._provider: Gps51Provider = provider or Gps51Provider.from_config(self._config)
        self._store: TripStore = store or TripStore(self._config.storage)
        self._normalizer: PositionNormalizer = PositionNormalizer.from_config(self._config)
        self._now: Callable[[], datetime] = now or (lambda: datetime.now(UTC))
        self._last_query_time: int = 0

        logger.info(
            'Pipeline initialized: devices=%s, workers=%d, data_dir=%s',
            self._config.pipeline.device_ids or 'discover',
            self._config.pipeline.max_workers,
            self._config.storage.data_dir,
        )

    @property
    def config(self) -> TripEngineConfig:
        return self._config

    @property
    def store(self) -> TripStore:
        return self._store

    def close(self) -> None:
        self._provider.close()

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    # -------------------------------------------------------------------------
    # Cycle
    # -------------------------------------------------------------------------

    def run(self) -> dict[str, DeviceCycleResult]:
        """
        Run one ingestion cycle for every device.

        Returns:
            Per-device results keyed by device id.

        Raises:
            PipelineError: If device discovery fails.
        """
        run_start_time: datetime = self._now()
        device_ids: list[str] = self._resolve_device_ids()
        if not device_ids:
            logger.warning('No devices to ingest. Pipeline complete.')
            return {}

        logger.info(
            'Starting ingestion cycle for %d device(s) at %s',
            len(device_ids),
            run_start_time.isoformat(),
        )

        results: dict[str, DeviceCycleResult] = {}
        with ThreadPoolExecutor(
            max_workers=min(self._config.pipeline.max_workers, len(device_ids)),
            thread_name_prefix='device',
        ) as executor:
            futures: dict[Future[DeviceCycleResult], str] = {
                executor.submit(self.ingest_device, device_id): device_id
                for device_id in device_ids
            }
            for future in as_completed(futures):
                device_id: str = futures[future]
                try:
                    results[device_id] = future.result()
                except Exception as error:
                    logger.exception('Unexpected failure ingesting %s', device_id)
                    self._record_failure(device_id, f'{type(error).__name__}: {error}')
                    results[device_id] = DeviceCycleResult(
                        device_id=device_id, error=f'{type(error).__name__}: {error}'
                    )

        self._log_run_summary(run_start_time, results)
        return results

    def _resolve_device_ids(self) -> list[str]:
        if self._config.pipeline.device_ids:
            return list(self._config.pipeline.device_ids)

        deadline: float = self._provider.client.deadline_in(
            self._config.pipeline.fetch_deadline_seconds
        )
        try:
            return self._provider.list_devices(deadline=deadline)
        except ProviderError as error:
            raise PipelineError(f'Device discovery failed: {error}') from error

    def ingest_device(self, device_id: str) -> DeviceCycleResult:
        """
        Run one ingestion cycle for a single device.

        Provider failures are recorded in the device's sync status and
        returned as a failed result rather than raised.
        """
        status: SyncStatus = self._store.sync_status(device_id) or SyncStatus(
            device_id=device_id
        )
        cursor: datetime | None = status.last_position_time
        now: datetime = self._now()
        window_start: datetime = cursor or now - timedelta(
            hours=self._config.pipeline.initial_lookback_hours
        )

        if window_start >= now:
            logger.debug('%s is up to date (cursor %s)', device_id, window_start.isoformat())
            return DeviceCycleResult(device_id=device_id)

        try:
            deadline: float = self._provider.client.deadline_in(
                self._config.pipeline.fetch_deadline_seconds
            )
            records: list[RawTelemetryRecord] = self._provider.fetch_track(
                device_id, window_start, now, deadline
            )
        except ProviderError as error:
            logger.error('Fetch failed for %s: %s', device_id, error)
            self._store.save_sync_status(status.record_failure(str(error)))
            return DeviceCycleResult(device_id=device_id, error=str(error))

        positions: list[NormalizedPosition] = [
            position
            for position in self._normalizer.normalize_batch(records)
            if position.device_id == device_id
        ]
        self._warn_low_confidence(device_id, positions)

        segmenter: TripSegmenter = self._restore_segmenter(device_id, cursor)
        inserted: int = self._store.insert_positions(positions)

        fresh: list[NormalizedPosition] = [
            position
            for position in positions
            if cursor is None or position.timestamp_utc > cursor
        ]
        events: list[TripEvent] = segmenter.process_many(fresh)
        self._persist_trips(events, segmenter.open_trip)
        anomalies: list[SegmentationAnomaly] = segmenter.drain_anomalies()

        opened: int = sum(event.kind is TripEventKind.OPENED for event in events)
        closed: int = sum(event.kind is TripEventKind.CLOSED for event in events)
        last_position_time: datetime | None = (
            fresh[-1].timestamp_utc if fresh else cursor
        )
        self._store.save_sync_status(
            status.record_success(
                at=now,
                last_position_time=last_position_time,
                positions_ingested=inserted,
                trips_closed=closed,
            )
        )

        logger.info(
            '%s: %d records, %d new positions, %d trip(s) opened, %d closed, %d anomalies',
            device_id,
            len(records),
            inserted,
            opened,
            closed,
            len(anomalies),
        )
        return DeviceCycleResult(
            device_id=device_id,
            records_fetched=len(records),
            positions_inserted=inserted,
            trips_opened=opened,
            trips_closed=closed,
            anomalies=anomalies,
        )

    def _restore_segmenter(self, device_id: str, cursor: datetime | None) -> TripSegmenter:
        segmenter: TripSegmenter = TripSegmenter.from_config(
            device_id, self._config.segmentation
        )
        if cursor is None:
            segmenter.restore(
                last_sequence_number=self._store.last_trip_sequence_number(device_id)
            )
            return segmenter

        open_trip: Trip | None = self._store.open_trip(device_id)
        open_trip_positions: list[NormalizedPosition] = (
            self._store.positions_for_device(device_id, start=open_trip.start_time, end=cursor)
            if open_trip is not None
            else []
        )
        last_known: NormalizedPosition | None = self._store.latest_position(
            device_id, at_or_before=cursor, ignition_known=True
        )
        segmenter.restore(
            last_sequence_number=self._store.last_trip_sequence_number(device_id),
            open_trip=open_trip,
            open_trip_positions=open_trip_positions,
            last_position=self._store.latest_position(device_id, at_or_before=cursor),
            last_known_ignition=last_known.ignition_on if last_known is not None else None,
        )
        return segmenter

    def _persist_trips(self, events: Iterable[TripEvent], open_trip: Trip | None) -> None:
        # Later versions of a trip replace earlier ones; the open snapshot
        # carries the aggregates as of the last processed sample.
        latest: dict[int, Trip] = {}
        for event in events:
            latest[event.trip.trip_sequence_number] = event.trip
        if open_trip is not None:
            latest[open_trip.trip_sequence_number] = open_trip

        if latest:
            self._store.upsert_trips(latest.values())

    def _record_failure(self, device_id: str, message: str) -> None:
        status: SyncStatus = self._store.sync_status(device_id) or SyncStatus(
            device_id=device_id
        )
        self._store.save_sync_status(status.record_failure(message))

    @staticmethod
    def _warn_low_confidence(device_id: str, positions: list[NormalizedPosition]) -> None:
        low_confidence: int = sum(position.is_low_confidence for position in positions)
        if low_confidence:
            logger.warning(
                '%s: %d of %d positions have low-confidence ignition',
                device_id,
                low_confidence,
                len(positions),
            )

    def _log_run_summary(
        self,
        run_start_time: datetime,
        results: dict[str, DeviceCycleResult],
    ) -> None:
        run_duration: timedelta = self._now() - run_start_time
        failed: list[str] = sorted(
            device_id for device_id, result in results.items() if not result.succeeded
        )

        logger.info(
            'Ingestion cycle complete: %d device(s), %d failed, '
            '%d new positions, %d trips closed. Duration: %s',
            len(results),
            len(failed),
            sum(result.positions_inserted for result in results.values()),
            sum(result.trips_closed for result in results.values()),
            run_duration,
        )
        if failed:
            logger.warning('Failed devices: %s', failed)

    # -------------------------------------------------------------------------
    # Live polling
    # -------------------------------------------------------------------------

    def poll_latest_positions(self, device_ids: Iterable[str] | None = None) -> int:
        """
        Store the newest position of each device via `lastposition`.

        Polled positions are persisted but not segmented; the next ingestion
        cycle re-reads them through the track and segments them in order.

        Returns:
            Number of positions that were new to the store.

        Raises:
            ProviderError: If the poll fails.
        """
        ids: list[str] = (
            list(device_ids) if device_ids is not None else self._resolve_device_ids()
        )
        deadline: float = self._provider.client.deadline_in(
            self._config.pipeline.fetch_deadline_seconds
        )
        batch: LastPositionBatch = self._provider.fetch_last_positions(
            ids, last_query_time=self._last_query_time, deadline=deadline
        )
        self._last_query_time = batch.last_query_time

        positions: list[NormalizedPosition] = self._normalizer.normalize_batch(batch.records)
        inserted: int = self._store.insert_positions(positions)
        logger.info('Polled %d latest positions, %d new', len(positions), inserted)
        return inserted
