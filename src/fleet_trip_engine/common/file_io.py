# fleet_trip_engine/common/file_io.py
"""
File input/output utilities for the fleet_trip_engine package.

This module handles the low-level details of reading and writing the keyed
Parquet tables and the JSON provider state file, abstracting storage format
details away from the segmentation and ingestion logic.

Design Philosophy:
------------------
- load() returns None on errors (missing/corrupt data is recoverable)
- merge() raises on errors, including an unreadable existing file, which
  it never overwrites
- Writes are atomic (temp file + rename) to prevent corruption on crash
- Each table owns one lock; merge() is a read-modify-write under that lock

Thread Safety:
--------------
KeyedParquetTable serializes merge() and delete() calls with a per-table lock,
so concurrent device workers can write to the same table. Reads are lock-free
and always see either the previous or the next complete file, never a
partial write.

Usage:
------
    from fleet_trip_engine.common.file_io import KeyedParquetTable

    table = KeyedParquetTable(
        path=Path('data/positions.parquet'),
        key_columns=['device_id', 'timestamp_utc'],
        keep='first',
    )
    inserted = table.merge(new_rows)
"""

import json
import logging
import tempfile
import threading
from collections.abc import Callable
from contextlib import suppress
from pathlib import Path
from typing import Any, Literal, cast

import pandas as pd
from pyarrow import (
    ArrowInvalid as _ArrowInvalid,  # pyright: ignore[reportUnknownVariableType]
    ArrowIOError as _ArrowIOError,  # pyright: ignore[reportUnknownVariableType]
)

from fleet_trip_engine.config import CompressionType

# PyArrow exception types, cast because the type stubs are incomplete.
ArrowInvalid: type[Exception] = cast(type[Exception], _ArrowInvalid)
ArrowIOError: type[Exception] = cast(type[Exception], _ArrowIOError)

__all__: list[str] = ['KeyedParquetTable', 'StateFileHandler']

logger: logging.Logger = logging.getLogger(__name__)

# 'first' keeps the stored row on key collision (idempotent insert);
# 'last' keeps the incoming row (upsert).
KeepPolicy = Literal['first', 'last']


def _atomic_write(
    target_path: Path,
    suffix: str,
    writer: Callable[[Path], None],
) -> None:
    """
    Write via a temp file in the target's directory, then rename over it.

    Same directory keeps the temp file on the same filesystem, which the
    atomic rename requires. The temp file is removed if the write fails.
    """
    with tempfile.NamedTemporaryFile(
        mode='wb',
        suffix=suffix,
        dir=target_path.parent,
        delete=False,
    ) as temp_file:
        temp_path = Path(temp_file.name)

    try:
        writer(temp_path)
        temp_path.replace(target_path)
    except BaseException:
        with suppress(OSError):
            temp_path.unlink()
        raise


class KeyedParquetTable:
    """
    A single Parquet file treated as a table with a primary key.

    Atomic Write Guarantee:
        merge() writes to a temporary file in the same directory, then
        performs an atomic rename. The original file remains intact until the
        new file is completely written.

    Key Semantics:
        merge() concatenates stored and incoming rows and drops key
        duplicates according to `keep`. With keep='first', re-inserting an
        existing key is a no-op. With keep='last', the incoming row replaces
        the stored one.

    Attributes:
        path: The Parquet file path (read-only property).
        key_columns: Primary key columns (read-only property).
        exists: Whether the file currently exists (read-only property).
    """

    def __init__(
        self,
        path: Path,
        key_columns: list[str],
        keep: KeepPolicy,
        compression: CompressionType = 'snappy',
        schema_enforcer: Callable[[pd.DataFrame], pd.DataFrame] | None = None,
    ) -> None:
        """
        Initialize the table handler.

        Creates the parent directory if it doesn't exist. The file itself is
        created on the first merge().

        Args:
            path: Parquet file path.
            key_columns: Columns forming the primary key.
            keep: Which copy survives a key collision in merge().
            compression: Parquet compression codec.
            schema_enforcer: Optional function applied to every frame before
                it is written and after it is loaded.

        Raises:
            OSError: If the parent directory cannot be created.
        """
        if not key_columns:
            raise ValueError('key_columns cannot be empty')

        self._path: Path = path
        self._key_columns: list[str] = list(key_columns)
        self._keep: KeepPolicy = keep
        self._compression: CompressionType = compression
        self._schema_enforcer: Callable[[pd.DataFrame], pd.DataFrame] | None = (
            schema_enforcer
        )
        self._write_lock = threading.Lock()

        self._path.parent.mkdir(parents=True, exist_ok=True)

        logger.info(
            'Initialized KeyedParquetTable: path=%r, key=%r, keep=%r',
            self._path,
            self._key_columns,
            self._keep,
        )

    @property
    def path(self) -> Path:
        return self._path

    @property
    def key_columns(self) -> list[str]:
        return list(self._key_columns)

    @property
    def exists(self) -> bool:
        return self._path.exists()

    def load(self) -> pd.DataFrame | None:
        """
        Load the table into a DataFrame.

        Returns:
            DataFrame with the file contents, or None if the file is missing,
            unreadable, or corrupt.
        """
        if not self._path.exists():
            # File absence is expected on first run.
            return None

        try:
            return self._read()
        except (OSError, ArrowInvalid, ArrowIOError) as read_error:
            logger.exception('Failed to read Parquet file %r: %s', self._path, read_error)
            return None

    def merge(self, incoming: pd.DataFrame) -> int:
        """
        Merge rows into the table under the table lock.

        Args:
            incoming: Rows to merge. Duplicates within `incoming` are resolved
                with the same keep policy as collisions with stored rows.

        Returns:
            Number of rows whose key was not stored before.

        Raises:
            OSError, ArrowInvalid, ArrowIOError: If the existing file cannot
                be read, or the write fails. An unreadable file is never
                overwritten.
        """
        if incoming.empty:
            return 0

        if self._schema_enforcer is not None:
            incoming = self._schema_enforcer(incoming)

        with self._write_lock:
            existing: pd.DataFrame | None = None
            if self._path.exists():
                try:
                    existing = self._read()
                except (OSError, ArrowInvalid, ArrowIOError):
                    logger.exception(
                        'Refusing to merge into unreadable Parquet file %r', self._path
                    )
                    raise
            existing_count: int = 0 if existing is None else len(existing)

            if existing is None or existing.empty:
                combined: pd.DataFrame = incoming
            else:
                combined = pd.concat([existing, incoming], ignore_index=True)

            merged: pd.DataFrame = combined.drop_duplicates(
                subset=self._key_columns,
                keep=self._keep,
            )
            merged = merged.sort_values(by=self._key_columns).reset_index(drop=True)

            self._write(merged)

        new_rows: int = len(merged) - existing_count
        logger.debug(
            'Merged %d incoming rows into %r: %d new, %d total',
            len(incoming),
            self._path,
            new_rows,
            len(merged),
        )
        return new_rows

    def _read(self) -> pd.DataFrame:
        dataframe: pd.DataFrame = pd.read_parquet(self._path)
        logger.debug('Loaded %d rows from %r', len(dataframe), self._path)

        if self._schema_enforcer is not None:
            dataframe = self._schema_enforcer(dataframe)
        return dataframe

    def _write(self, dataframe: pd.DataFrame) -> None:
        if self._schema_enforcer is not None:
            dataframe = self._schema_enforcer(dataframe)

        record_count: int = len(dataframe)

        def write_parquet(temp_path: Path) -> None:
            dataframe.to_parquet(temp_path, index=False, compression=self._compression)

        try:
            _atomic_write(self._path, '.parquet.tmp', write_parquet)
        except (OSError, ArrowInvalid, ArrowIOError) as write_error:
            logger.exception(
                'Failed to save %d rows to %r: %s',
                record_count,
                self._path,
                write_error,
            )
            raise

        logger.debug('Saved %d rows to %r', record_count, self._path)

    def delete(self) -> bool:
        """
        Delete the table file if it exists.

        Returns:
            True if the file was deleted, False if it did not exist.
        """
        with self._write_lock:
            if not self._path.exists():
                return False
            self._path.unlink()

        logger.info('Deleted Parquet file: %r', self._path)
        return True


class StateFileHandler:
    """
    Reads and atomically writes a small JSON state document.

    Used for the provider rate limiter state so a new process reuses the
    token lease and honours a backoff started by a previous one.
    """

    def __init__(self, path: Path) -> None:
        self._path: Path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, Any] | None:
        """
        Load the state document.

        Returns:
            The decoded mapping, or None if the file is missing or invalid.
        """
        if not self._path.exists():
            return None

        try:
            with self._path.open(encoding='utf-8') as state_file:
                state: Any = json.load(state_file)
        except (OSError, json.JSONDecodeError) as read_error:
            logger.warning('Ignoring unreadable state file %r: %s', self._path, read_error)
            return None

        if not isinstance(state, dict):
            logger.warning('Ignoring state file %r: root is not an object', self._path)
            return None
        return cast(dict[str, Any], state)

    def save(self, state: dict[str, Any]) -> None:
        """
        Write the state document atomically.

        Raises:
            OSError: If the file cannot be written.
        """

        def write_json(temp_path: Path) -> None:
            temp_path.write_text(json.dumps(state, indent=2, sort_keys=True), encoding='utf-8')

        _atomic_write(self._path, '.json.tmp', write_json)
        logger.debug('Saved provider state to %r', self._path)
