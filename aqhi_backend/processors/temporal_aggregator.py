#!/usr/bin/env python3
"""
🕐 3-HOUR MOVING AVERAGE AGGREGATOR
==================================
Per-station windowed means of recent readings with a data quality tier.

AVERAGING RULES:
- Pull every reading for the station inside [now - window, now]
- Per pollutant, average only measurements strictly greater than zero
- Zero and absent measurements are excluded from both sum and count.
  This treats a true zero the same as a missing value; readings from
  the primary feed rarely report exact zeros, so the window keeps it.
- A sample is a reading with at least one usable measurement

QUALITY TIERS (checked in order, first match wins):
- excellent: ≥15 samples and full window coverage
- good:      ≥10 samples and ≥2/3 coverage
- fair:      ≥5 samples and ≥1/3 coverage
- limited:   any samples
- estimated: no samples (aggregate() returns None, caller falls back)
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

import pandas as pd

from aqhi_backend.exceptions import InvalidConfiguration, UpstreamFetchFailure
from aqhi_backend.models import AggregateWindow, Pollutant, PollutantReading, QualityTier
from aqhi_backend.processors.concentration_normalizer import ConcentrationNormalizer

logger = logging.getLogger(__name__)

DEFAULT_WINDOW = timedelta(hours=3)
DEFAULT_POLL_INTERVAL = timedelta(minutes=10)

# (tier, min_samples, min_coverage), strongest first
DEFAULT_QUALITY_THRESHOLDS: Tuple[Tuple[QualityTier, int, float], ...] = (
    (QualityTier.EXCELLENT, 15, 1.0),
    (QualityTier.GOOD, 10, 0.66),
    (QualityTier.FAIR, 5, 0.33),
    (QualityTier.LIMITED, 1, 0.0),
)


class ReadingHistoryProvider(Protocol):
    async def fetch_readings(self, station_id: str, from_time: datetime,
                             to_time: datetime) -> List[PollutantReading]:
        ...


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def classify_quality(sample_count: int, coverage: float,
                     thresholds: Sequence[Tuple[QualityTier, int, float]] = DEFAULT_QUALITY_THRESHOLDS) -> QualityTier:
    """Monotonic in both sample_count and coverage"""
    for tier, min_samples, min_coverage in thresholds:
        if sample_count >= min_samples and coverage >= min_coverage:
            return tier
    return QualityTier.ESTIMATED


def validate_thresholds(thresholds: Sequence[Tuple[QualityTier, int, float]]):
    previous = None
    for tier, min_samples, min_coverage in thresholds:
        if min_samples < 1 or not 0.0 <= min_coverage <= 1.0:
            raise InvalidConfiguration(f"Invalid quality threshold for {tier}: {min_samples}, {min_coverage}")
        if previous and (min_samples > previous[0] or min_coverage > previous[1]):
            raise InvalidConfiguration("Quality thresholds must be listed strongest first")
        previous = (min_samples, min_coverage)


class TemporalAggregator:
    """
    Windowed averaging over the reading-history provider
    """

    def __init__(self, history_provider: ReadingHistoryProvider,
                 window: timedelta = DEFAULT_WINDOW,
                 poll_interval: timedelta = DEFAULT_POLL_INTERVAL,
                 thresholds: Sequence[Tuple[QualityTier, int, float]] = DEFAULT_QUALITY_THRESHOLDS,
                 timeout_seconds: float = 10.0,
                 normalizer: Optional[ConcentrationNormalizer] = None,
                 clock: Callable[[], datetime] = utc_now):
        if window <= timedelta(0):
            raise InvalidConfiguration(f"Aggregation window must be positive, got {window}")
        if poll_interval <= timedelta(0):
            raise InvalidConfiguration(f"Poll interval must be positive, got {poll_interval}")
        validate_thresholds(thresholds)

        self.history_provider = history_provider
        self.window = window
        self.poll_interval = poll_interval
        self.thresholds = tuple(thresholds)
        self.timeout_seconds = timeout_seconds
        self.normalizer = normalizer or ConcentrationNormalizer()
        self.clock = clock

    async def _load_readings(self, station_id: str, from_time: datetime,
                             to_time: datetime) -> Optional[List[PollutantReading]]:
        try:
            return await asyncio.wait_for(
                self.history_provider.fetch_readings(station_id, from_time, to_time),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning(f"⚠️ History query for {station_id} timed out after {self.timeout_seconds}s")
        except UpstreamFetchFailure as e:
            logger.warning(f"⚠️ History query for {station_id} failed: {e}")
        except Exception as e:
            logger.error(f"❌ History query for {station_id} failed unexpectedly: {type(e).__name__}: {e}")
        return None

    def window_coverage(self, timestamps: List[datetime], window: timedelta) -> float:
        if not timestamps:
            return 0.0
        span = max(timestamps) - min(timestamps) + self.poll_interval
        return max(0.0, min(1.0, span / window))

    def build_window(self, station_id: str, readings: List[PollutantReading],
                     window_start: datetime, window_end: datetime) -> Optional[AggregateWindow]:
        """Average readings already restricted to the window; None when no samples"""
        rows = []
        units: Dict[Pollutant, str] = {}
        sample_times = []

        for reading in readings:
            if not window_start <= reading.timestamp <= window_end:
                continue
            row = {}
            for pollutant, measurement in reading.values.items():
                if measurement.quantity <= 0:
                    continue
                try:
                    canonical = self.normalizer.to_canonical(measurement.concentration, pollutant)
                except InvalidConfiguration as e:
                    logger.warning(f"⚠️ {station_id}: skipping {pollutant.value} sample: {e}")
                    continue
                row[pollutant] = canonical.value
                units[pollutant] = canonical.unit
            if row:
                rows.append(row)
                sample_times.append(reading.timestamp)

        if not rows:
            return None

        frame = pd.DataFrame(rows)
        means = {Pollutant(pollutant): float(value) for pollutant, value in frame.mean(skipna=True).items()}
        counts = {Pollutant(pollutant): int(value) for pollutant, value in frame.count().items()}

        sample_count = len(rows)
        coverage = self.window_coverage(sample_times, window_end - window_start)

        return AggregateWindow(
            station_id=station_id,
            window_start=window_start,
            window_end=window_end,
            means=means,
            units=units,
            sample_count=sample_count,
            coverage=coverage,
            quality_tier=classify_quality(sample_count, coverage, self.thresholds),
            pollutant_counts=counts,
        )

    async def aggregate(self, station_id: str, window: Optional[timedelta] = None) -> Optional[AggregateWindow]:
        """
        Windowed averages for one station

        Returns None when the window holds no usable sample or the history
        provider failed; the caller falls back to the current reading.
        """
        window = window or self.window
        window_end = self.clock()
        window_start = window_end - window

        readings = await self._load_readings(station_id, window_start, window_end)
        if not readings:
            logger.info(f"📊 No stored readings for {station_id} in the last {window}")
            return None

        result = self.build_window(station_id, readings, window_start, window_end)
        if result is None:
            logger.info(f"📊 {station_id}: {len(readings)} readings but no usable samples")
            return None

        logger.info(
            f"📊 {station_id}: {result.sample_count} samples, "
            f"coverage {result.coverage:.0%}, quality {result.quality_tier.value}"
        )
        return result

    async def aggregate_batch(self, station_ids: List[str],
                              window: Optional[timedelta] = None) -> Dict[str, Optional[AggregateWindow]]:
        results = await asyncio.gather(*(self.aggregate(sid, window) for sid in station_ids))
        return dict(zip(station_ids, results))
