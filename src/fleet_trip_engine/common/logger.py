# fleet_trip_engine/common/logger.py
"""
Logging configuration for the fleet_trip_engine package.

All modules log through `logging.getLogger(__name__)`, so configuring the
package-level logger once gives every device worker, the provider client,
and the segmenter the same format and destinations.
"""

import logging
import sys
from pathlib import Path

from fleet_trip_engine.config import LoggingConfig

__all__: list[str] = ['PACKAGE_LOGGER_NAME', 'setup_logger']

PACKAGE_LOGGER_NAME: str = 'fleet_trip_engine'

# Thread name is included because device workers run in a thread pool and
# interleave their output.
LOG_FORMAT: str = '%(asctime)s - %(levelname)-8s - [%(name)s] [%(threadName)s] - %(message)s'
LOG_DATE_FORMAT: str = '%Y-%m-%d %H:%M:%S'


def _build_file_handler(
    log_file_path: Path,
    file_level: int,
    formatter: logging.Formatter,
) -> logging.FileHandler:
    """Create an append-mode UTF-8 file handler, creating parent directories."""
    log_file_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = logging.FileHandler(
        filename=str(log_file_path),
        mode='a',
        encoding='utf-8',
    )
    file_handler.setFormatter(formatter)
    file_handler.setLevel(file_level)
    return file_handler


def setup_logger(
    logging_level: int | None = None,
    config: LoggingConfig | None = None,
) -> logging.Logger:
    """
    Set up logging for the fleet_trip_engine package.

    The function is idempotent - calling it multiple times resets and
    reconfigures the handlers based on the provided arguments.

    Args:
        logging_level: Console level to use when NO config object is provided.
            Defaults to logging.INFO.
        config: Optional validated logging configuration. If provided, the
            console uses config.console_level, file logging is enabled when
            config.file_path is set, and 'logging_level' is ignored.

    Returns:
        The package-level logger ('fleet_trip_engine').

    Example:
        >>> setup_logger(logging_level=logging.DEBUG)
        >>> config = load_config()
        >>> setup_logger(config=config.logging)
    """
    package_logger: logging.Logger = logging.getLogger(PACKAGE_LOGGER_NAME)
    package_logger.handlers.clear()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    if config is not None:
        console_level: int = config.get_console_level_int()
    else:
        console_level = logging_level if logging_level is not None else logging.INFO

    console_handler: logging.Handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(console_level)
    package_logger.addHandler(console_handler)

    file_level: int | None = config.get_file_level_int() if config else None

    if config is not None and config.file_path is not None and file_level is not None:
        package_logger.addHandler(
            _build_file_handler(config.file_path, file_level, formatter)
        )
        if console_level <= logging.INFO:
            print(f'Logging to file: {config.file_path}', file=sys.stderr)

    # The logger level must admit the most verbose handler's records.
    effective_level: int = console_level
    if file_level is not None:
        effective_level = min(console_level, file_level)

    package_logger.setLevel(effective_level)

    return package_logger
