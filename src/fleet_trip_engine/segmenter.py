# fleet_trip_engine/segmenter.py
"""
Per-device trip segmentation over an ordered stream of positions.

Each device gets its own TripSegmenter. Positions are fed in timestamp order
and the segmenter emits TripEvents as trips open and close. The machine has
three states:

    IDLE_OFF --(ignition on)--------------------------> ACTIVE (trip opened)
    ACTIVE   --(speed == 0)---------------------------> IDLE_ON (anchor armed)
    IDLE_ON  --(speed > 0)----------------------------> ACTIVE
    IDLE_ON  --(anchor age >= idle threshold)---------> IDLE_OFF (closed at anchor)
    ACTIVE / IDLE_ON --(ignition off)-----------------> IDLE_OFF (closed here)

Ignition:
---------
Positions whose ignition could not be determined (`unknown`) carry forward
the last known ignition state; an unknown reading is never an off edge. A
fresh segmenter assumes the ignition was off.

Idle Split:
-----------
When the vehicle sits with ignition on for `idle_threshold_seconds`, the
trip is closed at the idle anchor (the first zero-speed sample) and the idle
samples after it are dropped. If the sample that crossed the threshold is
already moving, a new trip opens on it. Otherwise the next trip opens on the
first moving sample with ignition on. Elapsed time is measured between
sample timestamps, never against the wall clock.

Ordering:
---------
A sample whose timestamp equals or precedes the last processed one is
ignored and recorded as a SegmentationAnomaly.

Example:
    >>> segmenter = TripSegmenter('868120000000001')
    >>> for position in positions:
    ...     for event in segmenter.process(position):
    ...         store.upsert_trips([event.trip])
"""

import logging
import statistics
from collections.abc import Iterable, Sequence
from datetime import datetime
from enum import Enum
from typing import Self

from fleet_trip_engine.config import SegmentationConfig
from fleet_trip_engine.distance import (
    DEFAULT_MAX_HOP_METERS,
    DistanceResult,
    compute_trip_distance,
)
from fleet_trip_engine.models import (
    AnomalyKind,
    NormalizedPosition,
    SegmentationAnomaly,
    Trip,
    TripEndpoint,
    TripEvent,
    TripEventKind,
)

__all__: list[str] = ['DEFAULT_IDLE_THRESHOLD_SECONDS', 'SegmentState', 'TripSegmenter']

logger: logging.Logger = logging.getLogger(__name__)

DEFAULT_IDLE_THRESHOLD_SECONDS: float = 180.0


class SegmentState(str, Enum):
    IDLE_OFF = 'idle_off'
    ACTIVE = 'active'
    IDLE_ON = 'idle_on'


class TripSegmenter:
    """
    Ignition and idle-time driven trip state machine for one device.

    Not thread-safe; the pipeline runs one segmenter per device worker.
    """

    def __init__(
        self,
        device_id: str,
        idle_threshold_seconds: float = DEFAULT_IDLE_THRESHOLD_SECONDS,
        max_hop_meters: float = DEFAULT_MAX_HOP_METERS,
    ) -> None:
        if idle_threshold_seconds <= 0:
            raise ValueError(
                f'idle_threshold_seconds must be positive, got {idle_threshold_seconds}'
            )

        self._device_id: str = device_id
        self._idle_threshold_seconds: float = idle_threshold_seconds
        self._max_hop_meters: float = max_hop_meters

        self._state: SegmentState = SegmentState.IDLE_OFF
        self._last_known_ignition: bool = False
        self._last_timestamp: datetime | None = None
        self._sequence_number: int = 0
        self._trip_samples: list[NormalizedPosition] = []
        self._idle_anchor: NormalizedPosition | None = None
        self._anomalies: list[SegmentationAnomaly] = []

    @classmethod
    def from_config(cls, device_id: str, config: SegmentationConfig) -> Self:
        return cls(
            device_id,
            idle_threshold_seconds=config.idle_threshold_seconds,
            max_hop_meters=config.max_hop_meters,
        )

    @property
    def device_id(self) -> str:
        return self._device_id

    @property
    def state(self) -> SegmentState:
        return self._state

    @property
    def last_sequence_number(self) -> int:
        """Sequence number of the most recently opened trip, 0 if none."""
        return self._sequence_number

    @property
    def open_trip(self) -> Trip | None:
        """Snapshot of the open trip with its running aggregates."""
        if not self._trip_samples:
            return None
        return self._build_trip(self._trip_samples)

    @property
    def anomalies(self) -> list[SegmentationAnomaly]:
        return list(self._anomalies)

    def drain_anomalies(self) -> list[SegmentationAnomaly]:
        """Return the recorded anomalies and clear them."""
        drained: list[SegmentationAnomaly] = self._anomalies
        self._anomalies = []
        return drained

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    def process(self, position: NormalizedPosition) -> list[TripEvent]:
        """
        Advance the state machine by one position.

        Args:
            position: Next position for this device.

        Returns:
            Trip events caused by this position, in order. A single position
            can close one trip and open the next.

        Raises:
            ValueError: If the position belongs to another device.
        """
        if position.device_id != self._device_id:
            raise ValueError(
                f'Segmenter for {self._device_id!r} got a position for '
                f'{position.device_id!r}'
            )

        if not self._accept_timestamp(position):
            return []

        ignition_on, just_turned_on = self._effective_ignition(position)

        if self._state is SegmentState.IDLE_OFF:
            if ignition_on and (just_turned_on or position.speed_kmh > 0):
                return [self._start_trip(position)]
            return []

        if self._state is SegmentState.ACTIVE:
            self._trip_samples.append(position)
            if not ignition_on:
                return [self._close_trip(position)]
            if position.is_stationary:
                self._arm_idle_anchor(position)
            return []

        return self._process_idle_on(position, ignition_on)

    def process_many(self, positions: Iterable[NormalizedPosition]) -> list[TripEvent]:
        events: list[TripEvent] = []
        for position in positions:
            events.extend(self.process(position))
        return events

    def _process_idle_on(
        self, position: NormalizedPosition, ignition_on: bool
    ) -> list[TripEvent]:
        anchor: NormalizedPosition | None = self._idle_anchor
        if anchor is None:
            raise RuntimeError(f'{self._device_id}: IDLE_ON without an idle anchor')

        if not ignition_on:
            self._trip_samples.append(position)
            return [self._close_trip(position)]

        idle_seconds: float = (position.timestamp_utc - anchor.timestamp_utc).total_seconds()
        if idle_seconds >= self._idle_threshold_seconds:
            logger.debug(
                '%s idle for %.0fs since %s; splitting trip %d',
                self._device_id,
                idle_seconds,
                anchor.timestamp_utc.isoformat(),
                self._sequence_number,
            )
            anchor_index: int = self._trip_samples.index(anchor)
            del self._trip_samples[anchor_index + 1 :]

            events: list[TripEvent] = [self._close_trip(anchor)]
            if position.speed_kmh > 0:
                events.append(self._start_trip(position))
            return events

        self._trip_samples.append(position)
        if position.speed_kmh > 0:
            self._idle_anchor = None
            self._state = SegmentState.ACTIVE
        return []

    # -------------------------------------------------------------------------
    # Trip lifecycle
    # -------------------------------------------------------------------------

    def _start_trip(self, position: NormalizedPosition) -> TripEvent:
        self._sequence_number += 1
        self._trip_samples = [position]
        self._state = SegmentState.ACTIVE
        if position.is_stationary:
            self._arm_idle_anchor(position)

        trip: Trip = self._build_trip(self._trip_samples)
        logger.info(
            'Trip %d opened for %s at %s',
            trip.trip_sequence_number,
            self._device_id,
            trip.start_time.isoformat(),
        )
        return TripEvent(kind=TripEventKind.OPENED, trip=trip)

    def _close_trip(self, end_sample: NormalizedPosition) -> TripEvent:
        samples: list[NormalizedPosition] = self._trip_samples
        result: DistanceResult = compute_trip_distance(samples, self._max_hop_meters)
        self._anomalies.extend(result.anomalies)

        trip: Trip = self._build_trip(samples, end_sample=end_sample, distance=result)

        self._trip_samples = []
        self._idle_anchor = None
        self._state = SegmentState.IDLE_OFF

        logger.info(
            'Trip %d closed for %s: %.0fs, %.0fm (%s)',
            trip.trip_sequence_number,
            self._device_id,
            trip.duration_seconds or 0.0,
            trip.distance_value or 0.0,
            result.method.value,
        )
        return TripEvent(kind=TripEventKind.CLOSED, trip=trip)

    def close_open_trip(self, at: datetime | None = None) -> TripEvent | None:
        """
        Force-close the open trip, for an external stale-trip sweep.

        The trip ends at the idle anchor when the vehicle is idling, otherwise
        at its last sample. With `at`, samples after that instant are left out.

        Returns:
            The closed event, or None if no trip is open.

        Raises:
            ValueError: If `at` precedes the trip's start.
        """
        if not self._trip_samples:
            return None

        if at is not None:
            if at < self._trip_samples[0].timestamp_utc:
                raise ValueError(
                    f'Cannot close trip {self._sequence_number} at {at.isoformat()}: '
                    'before its start'
                )
            self._trip_samples = [
                sample for sample in self._trip_samples if sample.timestamp_utc <= at
            ]
            if self._idle_anchor is not None and self._idle_anchor.timestamp_utc > at:
                self._idle_anchor = None

        if self._idle_anchor is not None:
            anchor_index: int = self._trip_samples.index(self._idle_anchor)
            del self._trip_samples[anchor_index + 1 :]

        return self._close_trip(self._trip_samples[-1])

    def _arm_idle_anchor(self, position: NormalizedPosition) -> None:
        self._idle_anchor = position
        self._state = SegmentState.IDLE_ON

    def _build_trip(
        self,
        samples: Sequence[NormalizedPosition],
        end_sample: NormalizedPosition | None = None,
        distance: DistanceResult | None = None,
    ) -> Trip:
        speeds: list[float] = [sample.speed_kmh for sample in samples]
        moving_speeds: list[float] = [speed for speed in speeds if speed > 0]

        return Trip(
            device_id=self._device_id,
            trip_sequence_number=self._sequence_number,
            start_time=samples[0].timestamp_utc,
            end_time=end_sample.timestamp_utc if end_sample is not None else None,
            start_position=TripEndpoint.from_position(samples[0]),
            end_position=(
                TripEndpoint.from_position(end_sample) if end_sample is not None else None
            ),
            distance_value=distance.value if distance is not None else None,
            distance_method=distance.method if distance is not None else None,
            avg_speed=round(statistics.fmean(moving_speeds), 1) if moving_speeds else 0.0,
            max_speed=max(speeds),
            sample_count=len(samples),
        )

    # -------------------------------------------------------------------------
    # Input checks
    # -------------------------------------------------------------------------

    def _accept_timestamp(self, position: NormalizedPosition) -> bool:
        last: datetime | None = self._last_timestamp
        if last is not None and position.timestamp_utc <= last:
            kind: AnomalyKind = (
                AnomalyKind.DUPLICATE_TIMESTAMP
                if position.timestamp_utc == last
                else AnomalyKind.OUT_OF_ORDER
            )
            anomaly = SegmentationAnomaly(
                kind=kind,
                device_id=self._device_id,
                timestamp_utc=position.timestamp_utc,
                detail=f'last processed sample was at {last.isoformat()}',
            )
            self._anomalies.append(anomaly)
            logger.warning(
                'Ignoring %s sample for %s at %s (last %s)',
                kind.value,
                self._device_id,
                position.timestamp_utc.isoformat(),
                last.isoformat(),
            )
            return False

        self._last_timestamp = position.timestamp_utc
        return True

    def _effective_ignition(self, position: NormalizedPosition) -> tuple[bool, bool]:
        """Return (ignition_on, just_turned_on) with unknown carried forward."""
        if not position.ignition_known:
            return self._last_known_ignition, False

        just_turned_on: bool = position.ignition_on and not self._last_known_ignition
        self._last_known_ignition = position.ignition_on
        return position.ignition_on, just_turned_on

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def restore(
        self,
        last_sequence_number: int = 0,
        open_trip: Trip | None = None,
        open_trip_positions: Sequence[NormalizedPosition] = (),
        last_position: NormalizedPosition | None = None,
        last_known_ignition: bool | None = None,
    ) -> None:
        """
        Rebuild state from persisted data before processing new positions.

        The open trip's positions are replayed without emitting events, so
        its aggregates and idle anchor match what a continuous run would have.

        Args:
            last_sequence_number: Highest trip sequence number stored for the
                device.
            open_trip: The device's open trip, if any.
            open_trip_positions: Stored positions from the open trip's start
                onward.
            last_position: Latest stored position for the device.
            last_known_ignition: Ignition of the latest stored position whose
                ignition was determined. Carried forward when no open trip is
                replayed, since `last_position` may itself be unknown.

        Raises:
            ValueError: If an open trip is given without any of its positions.
        """
        self._state = SegmentState.IDLE_OFF
        self._trip_samples = []
        self._idle_anchor = None
        self._last_known_ignition = False
        self._last_timestamp = None
        self._sequence_number = last_sequence_number

        if open_trip is not None:
            replay: list[NormalizedPosition] = sorted(
                (
                    position
                    for position in open_trip_positions
                    if position.timestamp_utc >= open_trip.start_time
                ),
                key=lambda position: position.timestamp_utc,
            )
            if not replay:
                raise ValueError(
                    f'Open trip {open_trip.trip_sequence_number} for {self._device_id} '
                    'has no stored positions'
                )

            self._sequence_number = open_trip.trip_sequence_number - 1
            self._last_known_ignition = True
            self._last_timestamp = replay[0].timestamp_utc
            self._start_trip(replay[0])

            for position in replay[1:]:
                replay_events: list[TripEvent] = self.process(position)
                if replay_events:
                    logger.warning(
                        'Replaying open trip %d for %s produced %d event(s); '
                        'continuing from the replayed state',
                        open_trip.trip_sequence_number,
                        self._device_id,
                        len(replay_events),
                    )
            self._sequence_number = max(self._sequence_number, last_sequence_number)
        elif last_known_ignition is not None:
            self._last_known_ignition = last_known_ignition

        if last_position is not None:
            if self._last_timestamp is None or last_position.timestamp_utc > self._last_timestamp:
                self._last_timestamp = last_position.timestamp_utc
                if last_position.ignition_known:
                    self._last_known_ignition = last_position.ignition_on

        logger.debug(
            'Restored segmenter for %s: state=%s, sequence=%d',
            self._device_id,
            self._state.value,
            self._sequence_number,
        )
