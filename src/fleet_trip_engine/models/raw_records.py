# fleet_trip_engine/models/raw_records.py
"""
Raw GPS51 telemetry record model.

GPS51 returns the same logical fields under different names depending on the
endpoint (`querytrack` uses `callat`/`callon`, `lastposition` sometimes uses
`lat`/`lon`, older firmware sends `latitude`/`longitude`). This model accepts
any of those spellings and exposes one canonical set of attributes. Values are
kept in provider units; conversion happens in `normalization.py`.
"""

import logging
import math
from typing import Any, Final

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

logger: logging.Logger = logging.getLogger(__name__)

__all__: list[str] = ['RawTelemetryRecord']

# Canonical field -> accepted source keys, in priority order. The canonical
# name is listed first so records can also be built directly in tests.
_FIELD_ALIASES: Final[dict[str, tuple[str, ...]]] = {
    'device_id': ('device_id', 'deviceid'),
    'timestamp': ('timestamp', 'gpstime', 'devicetime', 'updatetime', 'time'),
    'latitude': ('latitude', 'callat', 'lat'),
    'longitude': ('longitude', 'callon', 'lon', 'lng'),
    'speed': ('speed',),
    'status_bitmask': ('status_bitmask', 'status'),
    'status_text': ('status_text', 'strstatus'),
    'status_text_en': ('status_text_en', 'strstatusen'),
    'moving': ('moving',),
    'odometer_total': ('odometer_total', 'totaldistance'),
}

# Values treated as "not provided" when coalescing aliases. Zero timestamps
# are also skipped because GPS51 sends 0 for unset time fields.
_EMPTY_VALUES: Final[tuple[Any, ...]] = (None, '')


def _first_present(payload: dict[str, Any], keys: tuple[str, ...], skip_zero: bool) -> Any:
    for key in keys:
        value: Any = payload.get(key)
        if value in _EMPTY_VALUES:
            continue
        if skip_zero and value == 0:
            continue
        return value
    return None


class RawTelemetryRecord(BaseModel):
    """
    One immutable telemetry report as fetched from GPS51.

    Attributes:
        device_id: Provider device identifier.
        timestamp: Epoch milliseconds/seconds or a provider-local
            'YYYY-MM-DD HH:MM:SS' string.
        latitude: Latitude in decimal degrees, if reported.
        longitude: Longitude in decimal degrees, if reported.
        speed: Speed in provider units (m/h or km/h).
        status_bitmask: JT808-style status integer. Negative values are a
            "signal unavailable" sentinel.
        status_text: Free-text status, possibly localized (e.g. 'ACC开').
        status_text_en: English free-text status.
        moving: Provider movement flag (1 = moving).
        odometer_total: Cumulative distance counter in metres; 0 means absent.
    """

    model_config = ConfigDict(extra='ignore', frozen=True)

    device_id: str = Field(min_length=1)
    timestamp: int | float | str | None = None
    latitude: float | None = None
    longitude: float | None = None
    speed: float | None = None
    status_bitmask: int | None = None
    status_text: str | None = None
    status_text_en: str | None = None
    moving: int | None = None
    odometer_total: float | None = None

    @model_validator(mode='before')
    @classmethod
    def coalesce_provider_aliases(cls, data: Any) -> Any:
        """Map GPS51 field spellings onto canonical attribute names."""
        if not isinstance(data, dict):
            return data

        return {
            field_name: _first_present(
                data, source_keys, skip_zero=field_name == 'timestamp'
            )
            for field_name, source_keys in _FIELD_ALIASES.items()
        }

    @field_validator('device_id', mode='before')
    @classmethod
    def coerce_device_id(cls, device_id: Any) -> Any:
        """GPS51 sometimes sends numeric device IDs."""
        if isinstance(device_id, int | float) and math.isfinite(device_id):
            return str(int(device_id))
        if isinstance(device_id, str):
            return device_id.strip()
        return device_id

    @field_validator('status_bitmask', mode='before')
    @classmethod
    def parse_status_bitmask(cls, status: Any) -> int | None:
        """Parse numeric-string statuses; anything unparseable is None."""
        if status is None or isinstance(status, bool):
            return None
        if isinstance(status, int):
            return status
        if isinstance(status, float):
            # NaN and infinities are not bitmasks.
            return int(status) if math.isfinite(status) else None
        if isinstance(status, str):
            try:
                return int(status.strip(), 10)
            except ValueError:
                logger.debug('Ignoring non-numeric status bitmask: %r', status)
                return None
        return None

    @field_validator('latitude', 'longitude', 'speed', 'odometer_total', mode='before')
    @classmethod
    def parse_numeric_string(cls, value: Any) -> float | None:
        """Accept numeric strings; blank or malformed values become None."""
        if value is None or isinstance(value, bool):
            return None
        if isinstance(value, int | float):
            return float(value)
        if isinstance(value, str):
            try:
                return float(value.strip())
            except ValueError:
                return None
        return None

    @field_validator('moving', mode='before')
    @classmethod
    def parse_moving_flag(cls, moving: Any) -> int | None:
        """Normalize the movement flag to 0/1, or None if absent."""
        if moving is None:
            return None
        try:
            return 1 if int(moving) == 1 else 0
        except (TypeError, ValueError, OverflowError):
            return None

    @property
    def status_texts(self) -> tuple[str, ...]:
        """Non-empty status strings, localized text first."""
        return tuple(text for text in (self.status_text, self.status_text_en) if text)
