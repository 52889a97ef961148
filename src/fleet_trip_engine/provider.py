# fleet_trip_engine/provider.py
"""
Typed GPS51 actions on top of the rate-limited client.

Gps51Provider knows the request shape and response layout of the three
actions the engine uses:

- `querytrack`       - historical samples for one device in a time range
- `lastposition`     - newest sample per device, with a polling cursor
- `querymonitorlist` - the account's devices, grouped

It turns response records into RawTelemetryRecord models. Records that fail
validation are logged and skipped so one malformed sample never fails a
device's fetch.

Example:
    >>> config = load_config('config/trip_engine_config.yaml')
    >>> with Gps51Provider.from_config(config) as provider:
    ...     device_ids = provider.list_devices()
    ...     records = provider.fetch_track(device_ids[0], start, end)
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from types import TracebackType
from typing import Any, Final, Self

from pydantic import BaseModel, ConfigDict, ValidationError

from fleet_trip_engine.client import Gps51Client, ProviderGenericError
from fleet_trip_engine.common.file_io import StateFileHandler
from fleet_trip_engine.config import ProviderConfig, TripEngineConfig
from fleet_trip_engine.models import ProviderResponse, RawTelemetryRecord
from fleet_trip_engine.rate_limiter import RateLimiter

__all__: list[str] = ['Gps51Provider', 'LastPositionBatch']

logger: logging.Logger = logging.getLogger(__name__)

PROVIDER_TIME_FORMAT: Final[str] = '%Y-%m-%d %H:%M:%S'
COORDINATE_SYSTEM: Final[str] = 'wgs84'


class LastPositionBatch(BaseModel):
    """
    Result of one `lastposition` poll.

    Attributes:
        records: Newest record per device that reported since the cursor.
        last_query_time: Cursor to pass to the next poll.
    """

    model_config = ConfigDict(extra='forbid', frozen=True)

    records: list[RawTelemetryRecord]
    last_query_time: int


class Gps51Provider:
    """
    GPS51 action facade.

    Owns the Gps51Client it is given (or builds) and closes it on exit.
    """

    def __init__(self, client: Gps51Client, config: ProviderConfig) -> None:
        self._client: Gps51Client = client
        self._config: ProviderConfig = config
        self._provider_timezone = timezone(
            timedelta(hours=config.provider_timezone_offset_hours)
        )

    @classmethod
    def from_config(cls, config: TripEngineConfig) -> Self:
        """
        Build the provider with a limiter whose state persists to the
        configured state file.
        """
        state_file = config.storage.state_file
        state_handler: StateFileHandler | None = (
            StateFileHandler(state_file) if state_file is not None else None
        )
        limiter: RateLimiter = RateLimiter.from_config(
            config.provider, state_handler=state_handler
        )
        client = Gps51Client(config.provider, rate_limiter=limiter)
        return cls(client, config.provider)

    @property
    def client(self) -> Gps51Client:
        return self._client

    def close(self) -> None:
        self._client.close()

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
    # Actions
    # -------------------------------------------------------------------------

    def fetch_track(
        self,
        device_id: str,
        start: datetime,
        end: datetime,
        deadline: float | None = None,
    ) -> list[RawTelemetryRecord]:
        """
        Fetch historical samples for one device.

        Args:
            device_id: GPS51 device id.
            start: Inclusive range start (timezone-aware).
            end: Inclusive range end (timezone-aware).
            deadline: Absolute deadline on the client clock.

        Returns:
            Parsed records in provider order.

        Raises:
            ValueError: If the range is empty or times are naive.
            ProviderError: On provider failure (see Gps51Client.call).
        """
        if start.tzinfo is None or end.tzinfo is None:
            raise ValueError('fetch_track requires timezone-aware start and end')
        if end <= start:
            raise ValueError(f'fetch_track range is empty: {start} -> {end}')

        params: dict[str, Any] = {
            'deviceid': device_id,
            'starttime': self.format_provider_time(start),
            'endtime': self.format_provider_time(end),
            'coordsys': COORDINATE_SYSTEM,
        }
        response: ProviderResponse = self._client.call('querytrack', params, deadline)

        records: list[RawTelemetryRecord] = self._parse_records(
            response.records, default_device_id=device_id
        )
        logger.info(
            'querytrack %s: %d records between %s and %s',
            device_id,
            len(records),
            params['starttime'],
            params['endtime'],
        )
        return records

    def fetch_last_positions(
        self,
        device_ids: Iterable[str],
        last_query_time: int = 0,
        deadline: float | None = None,
    ) -> LastPositionBatch:
        """
        Poll the newest position of each device.

        Args:
            device_ids: Devices to poll.
            last_query_time: Cursor from the previous poll; 0 for everything.
            deadline: Absolute deadline on the client clock.

        Returns:
            LastPositionBatch with the records and the next cursor.
        """
        ids: list[str] = list(device_ids)
        if not ids:
            return LastPositionBatch(records=[], last_query_time=last_query_time)

        params: dict[str, Any] = {
            'deviceids': ids,
            'lastquerypositiontime': last_query_time,
        }
        response: ProviderResponse = self._client.call('lastposition', params, deadline)

        raw_cursor: Any = response.payload.get('lastquerypositiontime', last_query_time)
        try:
            next_cursor: int = int(raw_cursor)
        except (TypeError, ValueError):
            next_cursor = last_query_time

        records: list[RawTelemetryRecord] = self._parse_records(response.records)
        logger.debug('lastposition: %d of %d devices reported', len(records), len(ids))
        return LastPositionBatch(records=records, last_query_time=next_cursor)

    def list_devices(self, deadline: float | None = None) -> list[str]:
        """
        List the account's device ids across all monitor groups.

        Raises:
            ProviderGenericError: If the response carries no `groups` list.
        """
        response: ProviderResponse = self._client.call(
            'querymonitorlist', {'username': self._config.username}, deadline
        )

        groups: Any = response.payload.get('groups')
        if not isinstance(groups, list):
            raise ProviderGenericError(
                'querymonitorlist response has no groups',
                status_code=response.status,
                action='querymonitorlist',
            )

        device_ids: list[str] = []
        seen: set[str] = set()
        for group in groups:
            if not isinstance(group, dict):
                continue
            for device in group.get('devices') or []:
                device_id: Any = device.get('deviceid') if isinstance(device, dict) else None
                if device_id in (None, ''):
                    continue
                device_id = str(device_id)
                if device_id not in seen:
                    seen.add(device_id)
                    device_ids.append(device_id)

        logger.info('querymonitorlist: %d devices in %d groups', len(device_ids), len(groups))
        return device_ids

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def format_provider_time(self, moment: datetime) -> str:
        """Format an aware datetime as provider-local 'YYYY-MM-DD HH:MM:SS'."""
        return moment.astimezone(self._provider_timezone).strftime(PROVIDER_TIME_FORMAT)

    @staticmethod
    def _parse_records(
        raw_records: list[dict[str, Any]],
        default_device_id: str | None = None,
    ) -> list[RawTelemetryRecord]:
        parsed: list[RawTelemetryRecord] = []
        skipped: int = 0

        for raw_record in raw_records:
            payload: dict[str, Any] = raw_record
            if default_device_id is not None and not raw_record.get('deviceid'):
                # querytrack records omit the device id.
                payload = {**raw_record, 'deviceid': default_device_id}
            try:
                parsed.append(RawTelemetryRecord.model_validate(payload))
            except ValidationError as error:
                skipped += 1
                logger.warning(
                    'Skipping invalid record: %s', error.errors(include_url=False)
                )

        if skipped:
            logger.warning('Skipped %d of %d invalid records', skipped, len(raw_records))
        return parsed
