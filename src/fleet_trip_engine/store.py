# fleet_trip_engine/store.py
"""
Parquet-backed persistence and query surface for positions, trips, and
per-device sync status.

Tables:
-------
    positions.parquet    keyed (device_id, timestamp_utc), insert keeps the
                         stored row, so re-ingesting an overlap is a no-op
    trips.parquet        keyed (device_id, trip_sequence_number), upsert keeps
                         the incoming row, so a close overwrites the open row
    sync_status.parquet  keyed device_id, upsert

Every write is a locked read-modify-write of one table followed by an atomic
rename (see KeyedParquetTable). Reads load the whole table and filter in
pandas; the tables hold one fleet's recent history, not an archive.

Example:
    >>> store = TripStore(config.storage)
    >>> store.insert_positions(positions)
    >>> trips = store.trips_for_device('868120000000001', start, end)
"""

import logging
from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

import pandas as pd

from fleet_trip_engine.common.file_io import KeyedParquetTable
from fleet_trip_engine.config import StorageConfig
from fleet_trip_engine.models import IgnitionMethod, NormalizedPosition, SyncStatus, Trip
from fleet_trip_engine.schema import (
    POSITION_KEY_COLUMNS,
    SYNC_STATUS_KEY_COLUMNS,
    TRIP_KEY_COLUMNS,
    dataframe_to_positions,
    dataframe_to_sync_statuses,
    dataframe_to_trips,
    enforce_position_schema,
    enforce_sync_status_schema,
    enforce_trip_schema,
    positions_to_dataframe,
    sync_statuses_to_dataframe,
    trips_to_dataframe,
)

__all__: list[str] = ['TripStore']

logger: logging.Logger = logging.getLogger(__name__)


class TripStore:
    """
    Positions, trips, and sync status tables under one data directory.

    Safe to share between device workers: each table serializes its own
    writes.
    """

    def __init__(self, config: StorageConfig) -> None:
        self._config: StorageConfig = config

        self._positions = KeyedParquetTable(
            path=config.positions_path,
            key_columns=POSITION_KEY_COLUMNS,
            keep='first',
            compression=config.parquet_compression,
            schema_enforcer=enforce_position_schema,
        )
        self._trips = KeyedParquetTable(
            path=config.trips_path,
            key_columns=TRIP_KEY_COLUMNS,
            keep='last',
            compression=config.parquet_compression,
            schema_enforcer=enforce_trip_schema,
        )
        self._sync_status = KeyedParquetTable(
            path=config.sync_status_path,
            key_columns=SYNC_STATUS_KEY_COLUMNS,
            keep='last',
            compression=config.parquet_compression,
            schema_enforcer=enforce_sync_status_schema,
        )

    @property
    def data_dir(self) -> Path:
        return self._config.data_dir

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    def insert_positions(self, positions: Iterable[NormalizedPosition]) -> int:
        """
        Insert positions, ignoring keys that are already stored.

        Returns:
            Number of positions that were not stored before.
        """
        dataframe: pd.DataFrame = positions_to_dataframe(positions)
        if dataframe.empty:
            return 0

        inserted: int = self._positions.merge(dataframe)
        if inserted < len(dataframe):
            logger.debug(
                'Skipped %d already-stored positions', len(dataframe) - inserted
            )
        return inserted

    def upsert_trips(self, trips: Iterable[Trip]) -> int:
        """
        Insert or replace trips by (device_id, trip_sequence_number).

        Returns:
            Number of trips that were new keys.
        """
        dataframe: pd.DataFrame = trips_to_dataframe(trips)
        if dataframe.empty:
            return 0
        return self._trips.merge(dataframe)

    def save_sync_status(self, status: SyncStatus) -> None:
        self._sync_status.merge(sync_statuses_to_dataframe([status]))

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def trips_for_device(
        self,
        device_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[Trip]:
        """
        Trips of one device that overlap [start, end], in sequence order.

        An open trip overlaps any range that ends after it started.
        """
        trips: pd.DataFrame | None = self._device_rows(self._trips, device_id)
        if trips is None:
            return []

        mask = pd.Series(True, index=trips.index)
        if end is not None:
            mask &= trips['start_time'] <= pd.Timestamp(end)
        if start is not None:
            mask &= trips['end_time'].isna() | (trips['end_time'] >= pd.Timestamp(start))

        selected: pd.DataFrame = trips[mask].sort_values('trip_sequence_number')
        return dataframe_to_trips(selected)

    def open_trip(self, device_id: str) -> Trip | None:
        """The device's open trip, or None."""
        trips: pd.DataFrame | None = self._device_rows(self._trips, device_id)
        if trips is None:
            return None

        open_rows: pd.DataFrame = trips[trips['end_time'].isna()]
        if open_rows.empty:
            return None
        if len(open_rows) > 1:
            logger.error(
                '%d open trips stored for %s; using the latest', len(open_rows), device_id
            )

        latest: pd.DataFrame = open_rows.sort_values('trip_sequence_number').tail(1)
        return dataframe_to_trips(latest)[0]

    def last_trip_sequence_number(self, device_id: str) -> int:
        """Highest stored trip sequence number for the device, 0 if none."""
        trips: pd.DataFrame | None = self._device_rows(self._trips, device_id)
        if trips is None:
            return 0
        return int(trips['trip_sequence_number'].max())

    def latest_position(
        self,
        device_id: str,
        at_or_before: datetime | None = None,
        ignition_known: bool = False,
    ) -> NormalizedPosition | None:
        """
        The device's newest stored position, optionally bounded above.

        With ignition_known=True, positions whose ignition method is
        `unknown` are skipped.
        """
        positions: pd.DataFrame | None = self._device_rows(self._positions, device_id)
        if positions is None:
            return None
        if at_or_before is not None:
            positions = positions[positions['timestamp_utc'] <= pd.Timestamp(at_or_before)]
        if ignition_known:
            positions = positions[positions['ignition_method'] != IgnitionMethod.UNKNOWN.value]
        if positions.empty:
            return None

        latest: pd.DataFrame = positions.sort_values('timestamp_utc').tail(1)
        return dataframe_to_positions(latest)[0]

    def positions_for_device(
        self,
        device_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[NormalizedPosition]:
        """Positions of one device within [start, end], in timestamp order."""
        positions: pd.DataFrame | None = self._device_rows(self._positions, device_id)
        if positions is None:
            return []

        mask = pd.Series(True, index=positions.index)
        if start is not None:
            mask &= positions['timestamp_utc'] >= pd.Timestamp(start)
        if end is not None:
            mask &= positions['timestamp_utc'] <= pd.Timestamp(end)

        return dataframe_to_positions(positions[mask].sort_values('timestamp_utc'))

    def sync_status(self, device_id: str) -> SyncStatus | None:
        rows: pd.DataFrame | None = self._device_rows(self._sync_status, device_id)
        if rows is None:
            return None
        return dataframe_to_sync_statuses(rows)[0]

    def sync_statuses(self) -> list[SyncStatus]:
        """Sync status of every device seen so far."""
        rows: pd.DataFrame | None = self._sync_status.load()
        if rows is None or rows.empty:
            return []
        return dataframe_to_sync_statuses(rows)

    @staticmethod
    def _device_rows(table: KeyedParquetTable, device_id: str) -> pd.DataFrame | None:
        dataframe: pd.DataFrame | None = table.load()
        if dataframe is None or dataframe.empty:
            return None

        rows: pd.DataFrame = dataframe[dataframe['device_id'] == device_id]
        return None if rows.empty else rows
