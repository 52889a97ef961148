# fleet_trip_engine/common/__init__.py

from fleet_trip_engine.common.file_io import KeyedParquetTable, StateFileHandler
from fleet_trip_engine.common.logger import setup_logger

__all__: list[str] = [
    'KeyedParquetTable',
    'StateFileHandler',
    'setup_logger',
]
