#!/usr/bin/env python3
"""
Reading-history providers
=========================
Time-series access for the 3-hour aggregator and the current-reading fallback.

- InMemoryReadingHistory: local mode for development, tests and the CLI.
  Keeps readings for the archival horizon (7 days by default).
- MySQLReadingHistory: queries the station_readings table written by the
  external feed collector. One row per (station, timestamp, pollutant).

The engine only reads; retention in the MySQL store is owned by the collector.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

import mysql.connector

from aqhi_backend.exceptions import UpstreamFetchFailure
from aqhi_backend.models import Measurement, PollutantReading, SourceTag, ensure_utc
from aqhi_backend.processors.concentration_normalizer import normalize_pollutant_name, normalize_unit
from aqhi_backend.utils.database_connection import SimpleDatabase

logger = logging.getLogger(__name__)

ARCHIVAL_HORIZON = timedelta(days=7)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryReadingHistory:
    """Process-local reading store with archival pruning"""

    def __init__(self, archival_horizon: timedelta = ARCHIVAL_HORIZON,
                 clock: Callable[[], datetime] = _utc_now):
        self.archival_horizon = archival_horizon
        self.clock = clock
        self._readings: Dict[str, List[PollutantReading]] = defaultdict(list)

    def record(self, reading: PollutantReading):
        history = self._readings[reading.station_id]
        history.append(reading)
        history.sort(key=lambda r: r.timestamp)

    def record_many(self, readings: List[PollutantReading]):
        for reading in readings:
            self.record(reading)

    def prune(self) -> int:
        """Drop readings older than the archival horizon, returning how many went"""
        cutoff = self.clock() - self.archival_horizon
        removed = 0
        for station_id in list(self._readings):
            kept = [r for r in self._readings[station_id] if r.timestamp >= cutoff]
            removed += len(self._readings[station_id]) - len(kept)
            if kept:
                self._readings[station_id] = kept
            else:
                del self._readings[station_id]
        if removed:
            logger.info(f"🧹 Pruned {removed} readings older than {self.archival_horizon}")
        return removed

    async def fetch_readings(self, station_id: str, from_time: datetime,
                             to_time: datetime) -> List[PollutantReading]:
        from_time, to_time = ensure_utc(from_time), ensure_utc(to_time)
        return [r for r in self._readings.get(station_id, []) if from_time <= r.timestamp <= to_time]

    async def latest_reading(self, station_id: str) -> Optional[PollutantReading]:
        history = self._readings.get(station_id)
        return history[-1] if history else None

    def station_ids(self) -> List[str]:
        return sorted(self._readings)


class MySQLReadingHistory:
    """
    Reads station history from MySQL

    Expected table (provisioned by the collector):
        station_readings(station_id, timestamp, latitude, longitude,
                         pollutant, quantity, unit, source_tag)
    """

    def __init__(self, database: SimpleDatabase, table: str = 'station_readings'):
        if not table.replace('_', '').isalnum():
            raise ValueError(f"Invalid table name: {table}")
        self.database = database
        self.table = table

    def _run_query(self, query: str, params: tuple) -> List[Dict]:
        conn = self.database.get_connection()
        if not conn:
            raise UpstreamFetchFailure(f"No database connection to {self.database.describe()}")

        try:
            cursor = conn.cursor(dictionary=True)
            cursor.execute(query, params)
            rows = cursor.fetchall()
            cursor.close()
            return rows
        except mysql.connector.Error as e:
            raise UpstreamFetchFailure(f"History query failed: {e}") from e
        finally:
            conn.close()

    @staticmethod
    def rows_to_readings(rows: List[Dict]) -> List[PollutantReading]:
        """Group long-format rows into one reading per (station, timestamp)"""
        grouped: Dict[tuple, PollutantReading] = {}

        for row in rows:
            timestamp = ensure_utc(row['timestamp'])
            key = (str(row['station_id']), timestamp)
            reading = grouped.get(key)
            if reading is None:
                reading = PollutantReading(
                    station_id=key[0],
                    timestamp=timestamp,
                    latitude=float(row['latitude']),
                    longitude=float(row['longitude']),
                )
                grouped[key] = reading

            pollutant = normalize_pollutant_name(row['pollutant'])
            quantity = row.get('quantity')
            if pollutant is None or quantity is None or float(quantity) < 0:
                continue

            tag = SourceTag.SUPPLEMENT if row.get('source_tag') == SourceTag.SUPPLEMENT.value else SourceTag.PRIMARY
            reading.values[pollutant] = Measurement(
                float(quantity),
                normalize_unit(row.get('unit')) or str(row.get('unit')),
                tag,
            )

        return sorted(grouped.values(), key=lambda r: r.timestamp)

    def _fetch_sync(self, station_id: str, from_time: datetime, to_time: datetime) -> List[PollutantReading]:
        query = f"""
            SELECT station_id, timestamp, latitude, longitude, pollutant, quantity, unit, source_tag
            FROM {self.table}
            WHERE station_id = %s
            AND timestamp BETWEEN %s AND %s
            ORDER BY timestamp ASC
        """
        # MySQL DATETIME columns are naive UTC
        params = (
            station_id,
            ensure_utc(from_time).replace(tzinfo=None),
            ensure_utc(to_time).replace(tzinfo=None),
        )
        return self.rows_to_readings(self._run_query(query, params))

    def _latest_sync(self, station_id: str) -> Optional[PollutantReading]:
        query = f"""
            SELECT station_id, timestamp, latitude, longitude, pollutant, quantity, unit, source_tag
            FROM {self.table}
            WHERE station_id = %s
            AND timestamp = (SELECT MAX(timestamp) FROM {self.table} WHERE station_id = %s)
        """
        readings = self.rows_to_readings(self._run_query(query, (station_id, station_id)))
        return readings[-1] if readings else None

    async def fetch_readings(self, station_id: str, from_time: datetime,
                             to_time: datetime) -> List[PollutantReading]:
        loop = asyncio.get_running_loop()
        readings = await loop.run_in_executor(None, self._fetch_sync, station_id, from_time, to_time)
        logger.debug(f"📊 Loaded {len(readings)} readings for {station_id}")
        return readings

    async def latest_reading(self, station_id: str) -> Optional[PollutantReading]:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._latest_sync, station_id)
