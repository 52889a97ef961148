#!/usr/bin/env python3
"""
Example usage of the trip ingestion pipeline.

This script runs one ingestion cycle for the devices in the configuration
file, then prints each device's trips from the last 24 hours.
"""

import logging
from datetime import UTC, datetime, timedelta

from fleet_trip_engine import IngestionPipeline, PipelineError

logger = logging.getLogger(__name__)


def main() -> None:
    """Run one ingestion cycle and summarize the stored trips."""
    logger.info('Loading configuration...')
    with IngestionPipeline('config/trip_engine_config.yaml') as pipeline:
        try:
            results = pipeline.run()
        except PipelineError:
            logger.exception('Ingestion cycle could not run')
            return

        since = datetime.now(UTC) - timedelta(hours=24)

        for device_id, result in sorted(results.items()):
            if not result.succeeded:
                logger.warning('%s failed: %s', device_id, result.error)
                continue

            trips = pipeline.store.trips_for_device(device_id, start=since)
            logger.info('%s: %d trip(s) in the last 24h', device_id, len(trips))

            for trip in trips:
                if trip.is_open:
                    print(
                        f'  #{trip.trip_sequence_number} open since '
                        f'{trip.start_time:%Y-%m-%d %H:%M} ({trip.sample_count} samples)'
                    )
                    continue

                approximate = ' ~' if trip.is_approximate else ''
                print(
                    f'  #{trip.trip_sequence_number} '
                    f'{trip.start_time:%Y-%m-%d %H:%M} -> {trip.end_time:%H:%M}  '
                    f'{(trip.distance_value or 0.0) / 1000:.2f} km{approximate}  '
                    f'avg {trip.avg_speed:.0f} / max {trip.max_speed:.0f} km/h'
                )

            for anomaly in result.anomalies:
                print(f'  anomaly: {anomaly.kind.value} at {anomaly.timestamp_utc}')


if __name__ == '__main__':
    main()
