# fleet_trip_engine/config/config_models.py
"""
Configuration management for the Fleet Trip Engine.

This module provides Pydantic models for the master configuration file that
controls GPS51 telemetry ingestion, ignition resolution, trip segmentation,
and Parquet persistence.

Design Decisions:
-----------------
- All models use `extra='forbid'` to catch typos and invalid fields in YAML
  configuration files early, preventing silent misconfiguration.

- No logging occurs within this module because the logging configuration itself
  is defined here. Logging must be configured by the caller after loading config.

- SSL verification supports three modes to handle corporate proxy environments:
  1. `True` - Standard verification using system CA bundle
  2. `False` - Disabled verification (use with caution, required for some proxies)
  3. String path - Custom CA bundle (e.g., exported Zscaler root certificate)

- SecretStr is used for the provider password to prevent accidental exposure in
  logs, repr(), or error messages. The actual value must be accessed via
  `.get_secret_value()`.

Usage:
------
    import yaml
    from fleet_trip_engine.config.config_models import TripEngineConfig

    with open('config.yaml', 'r') as config_file:
        raw_config = yaml.safe_load(config_file)

    config = TripEngineConfig.model_validate(raw_config)
"""

from pathlib import Path
from typing import Literal, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SecretStr,
    field_validator,
    model_validator,
)

# =============================================================================
# Public API
# =============================================================================

__all__: list[str] = [
    'CompressionType',
    'LogLevelName',
    'LoggingConfig',
    'PipelineConfig',
    'ProviderConfig',
    'SegmentationConfig',
    'StorageConfig',
    'TripEngineConfig',
]

# =============================================================================
# Type Aliases
# =============================================================================

# Valid logging level names recognized by Python's logging module.
LogLevelName = Literal['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

# Numeric equivalents of log level names for validation purposes.
LOG_LEVEL_VALUES: frozenset[int] = frozenset({10, 20, 30, 40, 50})

# Mapping from level name to numeric value, avoiding import of logging module
# in the model layer.
LOG_LEVEL_NAME_TO_INT: dict[LogLevelName, int] = {
    'DEBUG': 10,
    'INFO': 20,
    'WARNING': 30,
    'ERROR': 40,
    'CRITICAL': 50,
}

# Valid compression algorithms supported by pandas.to_parquet() and pyarrow.
CompressionType = Literal['snappy', 'gzip', 'brotli', 'lz4', 'zstd'] | None

# Highest single-bit ACC mask accepted; GPS51 devices report ACC in bits 0-3.
MAX_ACC_BIT_MASK: int = 0x8


# =============================================================================
# Provider Configuration
# =============================================================================


class ProviderConfig(BaseModel):
    """Connection, rate-limit, retry, and token settings for the GPS51 API.

    GPS51 enforces a strict per-IP call budget. Exceeding it returns status
    8902 and, if ignored, gets the IP blocked. All outbound traffic therefore
    flows through one limiter configured here.

    Rate Limiting:
        A call is admitted only when fewer than `max_calls_per_window` calls
        happened in the trailing `window_seconds`, and at least
        `min_call_spacing_seconds` elapsed since the previous call. When the
        provider reports a rate limit, every caller is held for
        `rate_limit_backoff_seconds`.

    Retry Schedule:
        Rate-limited and transient failures are retried up to `max_retries`
        times. The wait before retry n follows:
        `delay = min(retry_initial_delay_seconds * retry_multiplier ** (n - 1),
        retry_max_delay_seconds)`

        With the defaults (2.0, 3.0, 60.0): 2s, 6s, 18s, ... capped at 60s.

    Token Lease:
        The login token is reused until `token_refresh_buffer_hours` before
        the provider's stated `token_validity_hours` runs out.

    Attributes:
        base_url: Root API URL (scheme required, trailing slash stripped).
        username: GPS51 account name.
        password: GPS51 account password; sent MD5-hashed at login.
        request_timeout: [connect, read] timeout in seconds.
        verify_ssl: False, True, or path to a CA bundle.
        use_truststore: Build the SSLContext from the OS trust store.
        max_calls_per_window: Calls admitted per rolling window.
        window_seconds: Length of the rolling admission window.
        min_call_spacing_seconds: Minimum gap between consecutive calls.
        rate_limit_backoff_seconds: Shared hold applied on a provider rate limit.
        max_retries: Retries after the first attempt for retryable failures.
        retry_initial_delay_seconds: First retry delay.
        retry_multiplier: Growth factor between retry delays.
        retry_max_delay_seconds: Cap for a single retry delay.
        token_validity_hours: Provider-stated token lifetime.
        token_refresh_buffer_hours: Refresh this long before expiry.
        provider_timezone_offset_hours: UTC offset of provider-local timestamps.
    """

    model_config = ConfigDict(extra='forbid')

    base_url: str = Field(
        default='https://api.gps51.com',
        description='Root API endpoint URL with scheme, without trailing slash',
    )
    username: str = Field(
        min_length=1,
        description='GPS51 account username',
    )
    password: SecretStr = Field(
        description='GPS51 account password (masked in logs and repr)',
    )
    request_timeout: tuple[int, int] = Field(
        default=(10, 30),
        description='[connect_timeout, read_timeout] in seconds; both must be positive',
    )
    verify_ssl: bool | str = Field(
        default=True,
        description='False to disable SSL, True for system CA, or path to CA bundle',
    )
    use_truststore: bool = Field(
        default=False,
        description='Use truststore library for OS system CA certificates',
    )
    max_calls_per_window: int = Field(
        default=3,
        ge=1,
        le=100,
        description='Maximum calls admitted per rolling window',
    )
    window_seconds: float = Field(
        default=1.0,
        gt=0.0,
        le=60.0,
        description='Rolling admission window length in seconds',
    )
    min_call_spacing_seconds: float = Field(
        default=0.35,
        ge=0.0,
        le=10.0,
        description='Minimum spacing between consecutive calls in seconds',
    )
    rate_limit_backoff_seconds: float = Field(
        default=60.0,
        ge=0.0,
        le=3600.0,
        description='Shared backoff applied when the provider reports a rate limit',
    )
    max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description='Retries after the initial attempt for retryable failures',
    )
    retry_initial_delay_seconds: float = Field(
        default=2.0,
        ge=0.0,
        le=60.0,
        description='Delay before the first retry',
    )
    retry_multiplier: float = Field(
        default=3.0,
        ge=1.0,
        le=10.0,
        description='Exponential growth factor between retries',
    )
    retry_max_delay_seconds: float = Field(
        default=60.0,
        ge=0.0,
        le=600.0,
        description='Cap for any single retry delay',
    )
    token_validity_hours: float = Field(
        default=24.0,
        gt=0.0,
        description='Token lifetime stated by the provider',
    )
    token_refresh_buffer_hours: float = Field(
        default=1.0,
        ge=0.0,
        description='Refresh the token this long before it expires',
    )
    provider_timezone_offset_hours: float = Field(
        default=8.0,
        ge=-14.0,
        le=14.0,
        description='UTC offset of provider-local formatted timestamps (GPS51 = GMT+8)',
    )

    @field_validator('base_url')
    @classmethod
    def validate_base_url(cls, base_url: str) -> str:
        """Validate and normalize the API base URL.

        Args:
            base_url: The API base URL to validate.

        Returns:
            Normalized URL without trailing slash.

        Raises:
            ValueError: If URL is empty or missing http/https scheme.
        """
        if not base_url:
            raise ValueError('base_url cannot be empty')

        if not base_url.startswith(('http://', 'https://')):
            raise ValueError(
                f"base_url must start with 'http://' or 'https://', got: {base_url!r}"
            )

        return base_url.rstrip('/')

    @field_validator('password')
    @classmethod
    def validate_password_not_empty(cls, password: SecretStr) -> SecretStr:
        """Ensure the password is not empty or whitespace-only."""
        secret_value: str = password.get_secret_value()
        if not secret_value or not secret_value.strip():
            raise ValueError('password cannot be empty or whitespace-only')
        return password

    @field_validator('request_timeout')
    @classmethod
    def validate_timeout_values_positive(
        cls, timeout: tuple[int, int]
    ) -> tuple[int, int]:
        """Ensure both timeout values are positive integers.

        Args:
            timeout: Tuple of [connect_timeout, read_timeout] in seconds.

        Returns:
            The validated timeout tuple.

        Raises:
            ValueError: If either timeout value is non-positive.
        """
        connect_timeout, read_timeout = timeout

        if connect_timeout <= 0:
            raise ValueError(
                f'connect_timeout must be positive, got: {connect_timeout}'
            )
        if read_timeout <= 0:
            raise ValueError(f'read_timeout must be positive, got: {read_timeout}')

        return timeout

    @field_validator('verify_ssl')
    @classmethod
    def validate_ssl_configuration(cls, verify_ssl: bool | str) -> bool | str:
        """Validate that a CA bundle path, when given, points at a file."""
        if isinstance(verify_ssl, str):
            cert_path = Path(verify_ssl)

            if not cert_path.exists():
                raise ValueError(f'SSL certificate bundle file not found: {verify_ssl}')
            if not cert_path.is_file():
                raise ValueError(
                    f'SSL certificate path must be a file, not directory: {verify_ssl}'
                )

        return verify_ssl

    @model_validator(mode='after')
    def validate_token_buffer_shorter_than_validity(self) -> Self:
        """Ensure a refreshed token is usable for at least some time.

        A refresh buffer equal to or longer than the validity would force a
        login on every call.

        Raises:
            ValueError: If the buffer is not shorter than the validity.
        """
        if self.token_refresh_buffer_hours >= self.token_validity_hours:
            raise ValueError(
                f'token_refresh_buffer_hours ({self.token_refresh_buffer_hours}) '
                f'must be shorter than token_validity_hours ({self.token_validity_hours})'
            )
        return self


# =============================================================================
# Segmentation Configuration
# =============================================================================


class SegmentationConfig(BaseModel):
    """Settings for ignition resolution, trip splitting, and distance.

    Idle Threshold:
        An open trip whose vehicle sits at zero speed for at least
        `idle_threshold_seconds` (measured between sample timestamps, never
        wall-clock) is closed at the first zero-speed sample. GPS51's own
        trip report is believed to use 180s; some deployments observe 300s,
        so the value is configurable.

    Attributes:
        idle_threshold_seconds: Zero-speed duration that splits a trip.
        acc_bit_masks: Single-bit status masks that signal ACC on.
        max_hop_meters: Consecutive-sample hops longer than this are treated
            as GPS jumps and excluded from geodesic distance.
    """

    model_config = ConfigDict(extra='forbid')

    idle_threshold_seconds: float = Field(
        default=180.0,
        gt=0.0,
        le=3600.0,
        description='Zero-speed duration (seconds) after which an open trip is split',
    )
    acc_bit_masks: tuple[int, ...] = Field(
        default=(0x1, 0x2, 0x4, 0x8),
        min_length=1,
        description='Single-bit status masks (bits 0-3) indicating ignition on',
    )
    max_hop_meters: float = Field(
        default=10_000.0,
        gt=0.0,
        description='Maximum plausible distance between consecutive samples',
    )

    @field_validator('acc_bit_masks')
    @classmethod
    def validate_single_bit_masks(cls, masks: tuple[int, ...]) -> tuple[int, ...]:
        """Ensure every mask is a single bit within bits 0-3.

        Raises:
            ValueError: If a mask is zero, has several bits, or is above bit 3.
        """
        for mask in masks:
            is_single_bit: bool = mask > 0 and (mask & (mask - 1)) == 0
            if not is_single_bit or mask > MAX_ACC_BIT_MASK:
                raise ValueError(
                    f'acc_bit_masks entries must be single bits 0x1-0x8, got: {mask:#x}'
                )
        return masks


# =============================================================================
# Pipeline Configuration
# =============================================================================


class PipelineConfig(BaseModel):
    """Configuration for ingestion cycle execution.

    Incremental Strategy:
        Each device resumes from the timestamp of its last ingested position.
        A device with no history starts `initial_lookback_hours` in the past.
        Re-fetched overlap is harmless: position inserts are idempotent on
        (device_id, timestamp_utc).

    Attributes:
        device_ids: Devices to ingest. Empty list discovers devices through
            the provider's monitor list.
        initial_lookback_hours: History window for devices with no state.
        max_workers: Parallel device workers.
        fetch_deadline_seconds: Deadline for one device's fetch cycle.
    """

    model_config = ConfigDict(extra='forbid')

    device_ids: list[str] = Field(
        default_factory=list,
        description='Device IDs to ingest; empty discovers them from the provider',
    )
    initial_lookback_hours: float = Field(
        default=24.0,
        gt=0.0,
        le=24.0 * 90,
        description='Lookback window for devices without prior state',
    )
    max_workers: int = Field(
        default=4,
        ge=1,
        le=64,
        description='Number of parallel device workers',
    )
    fetch_deadline_seconds: float = Field(
        default=120.0,
        gt=0.0,
        le=3600.0,
        description='Deadline for a single device fetch cycle',
    )

    @field_validator('device_ids')
    @classmethod
    def validate_device_ids_unique(cls, device_ids: list[str]) -> list[str]:
        """Strip whitespace and reject blank or duplicate device IDs."""
        cleaned: list[str] = [device_id.strip() for device_id in device_ids]
        if any(not device_id for device_id in cleaned):
            raise ValueError('device_ids cannot contain blank entries')
        if len(set(cleaned)) != len(cleaned):
            raise ValueError('device_ids cannot contain duplicates')
        return cleaned


# =============================================================================
# Storage Configuration
# =============================================================================


class StorageConfig(BaseModel):
    """Configuration for Parquet tables and the persisted limiter state.

    Layout:
        data_dir/
            positions.parquet    - NormalizedPosition rows
            trips.parquet        - Trip rows (open and closed)
            sync_status.parquet  - Per-device sync status
        state_file               - Rate limiter / token lease JSON

    Attributes:
        data_dir: Directory holding the Parquet tables.
        parquet_compression: Compression codec for the Parquet writer.
        state_file: JSON file for the shared limiter state. Defaults to
            `data_dir/provider_state.json`.
    """

    model_config = ConfigDict(extra='forbid')

    data_dir: Path = Field(
        description='Directory for the positions, trips, and sync status tables',
    )
    parquet_compression: CompressionType = Field(
        default='snappy',
        description="Compression codec: 'snappy', 'gzip', 'brotli', 'lz4', 'zstd', or None",
    )
    state_file: Path | None = Field(
        default=None,
        description='Rate limiter / token lease JSON file (default: data_dir/provider_state.json)',
    )

    @model_validator(mode='after')
    def default_state_file_into_data_dir(self) -> Self:
        """Place the state file inside data_dir when not configured."""
        if self.state_file is None:
            self.state_file = self.data_dir / 'provider_state.json'
        return self

    @property
    def positions_path(self) -> Path:
        """Path of the normalized positions table."""
        return self.data_dir / 'positions.parquet'

    @property
    def trips_path(self) -> Path:
        """Path of the trips table."""
        return self.data_dir / 'trips.parquet'

    @property
    def sync_status_path(self) -> Path:
        """Path of the per-device sync status table."""
        return self.data_dir / 'sync_status.parquet'


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Configuration for application logging output.

    Console output is always enabled; file output is enabled by providing a
    file_path. The file_level defaults to DEBUG if not specified.

    Attributes:
        file_path: Path to log file. None disables file logging.
            Extension .log is appended automatically if missing.
        console_level: Minimum log level for console output.
        file_level: Minimum log level for file output.
    """

    model_config = ConfigDict(extra='forbid')

    file_path: Path | None = Field(
        default=None,
        description='Log file path (.log extension auto-added). None disables file logging.',
    )
    console_level: LogLevelName | int = Field(
        default='INFO',
        description="Console log level: 'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL', or int",
    )
    file_level: LogLevelName | int | None = Field(
        default=None,
        description='File log level. None disables file logging.',
    )

    @field_validator('file_path', mode='before')
    @classmethod
    def normalize_log_file_path(cls, path_value: str | Path | None) -> Path | None:
        """Normalize path and ensure .log extension."""
        if path_value is None:
            return None

        path_string: str = str(path_value)

        if not path_string.lower().endswith('.log'):
            path_string = f'{path_string}.log'

        return Path(path_string)

    @field_validator('console_level', 'file_level', mode='after')
    @classmethod
    def validate_numeric_log_level(
        cls, level_value: LogLevelName | int | None
    ) -> LogLevelName | int | None:
        """Validate numeric log levels are standard Python logging values.

        Raises:
            ValueError: If numeric level is not a standard logging value.
        """
        if level_value is None or isinstance(level_value, str):
            return level_value

        if level_value not in LOG_LEVEL_VALUES:
            raise ValueError(
                f'Numeric log level must be one of {sorted(LOG_LEVEL_VALUES)}, '
                f'got: {level_value}'
            )

        return level_value

    @model_validator(mode='after')
    def ensure_file_logging_configuration_consistency(self) -> Self:
        """Ensure file_path and file_level are consistently configured.

        Raises:
            ValueError: If file_level is set but file_path is missing.
        """
        has_file_path: bool = self.file_path is not None
        has_file_level: bool = self.file_level is not None

        if has_file_path and not has_file_level:
            self.file_level = 'DEBUG'

        if has_file_level and not has_file_path:
            raise ValueError(
                'file_level is specified but file_path is missing. '
                'Provide file_path to enable file logging, or remove file_level.'
            )

        return self

    def get_console_level_int(self) -> int:
        """Convert console_level to numeric value for logging module."""
        if isinstance(self.console_level, int):
            return self.console_level
        return LOG_LEVEL_NAME_TO_INT[self.console_level]

    def get_file_level_int(self) -> int | None:
        """Convert file_level to numeric value, or None if file logging is off."""
        if self.file_level is None:
            return None
        if isinstance(self.file_level, int):
            return self.file_level
        return LOG_LEVEL_NAME_TO_INT[self.file_level]


# =============================================================================
# Root Configuration
# =============================================================================


class TripEngineConfig(BaseModel):
    """Root configuration model for the Fleet Trip Engine.

    Aggregates all configuration sections. Every model in the hierarchy uses
    `extra='forbid'`, so configuration typos fail at load time.

    Attributes:
        provider: GPS51 connection, rate-limit, and token settings.
        segmentation: Ignition and trip segmentation parameters.
        pipeline: Ingestion cycle settings.
        storage: Parquet and state file locations.
        logging: Console and file logging settings.
    """

    model_config = ConfigDict(extra='forbid')

    provider: ProviderConfig = Field(
        description='GPS51 provider connection settings',
    )
    segmentation: SegmentationConfig = Field(
        default_factory=SegmentationConfig,
        description='Ignition resolution and trip segmentation parameters',
    )
    pipeline: PipelineConfig = Field(
        default_factory=PipelineConfig,
        description='Ingestion cycle settings',
    )
    storage: StorageConfig = Field(
        description='Parquet table and state file locations',
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description='Application logging configuration',
    )
