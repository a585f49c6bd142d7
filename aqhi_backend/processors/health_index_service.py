#!/usr/bin/env python3
"""
🏥 HEALTH INDEX SERVICE
======================
Cache-fronted fallback chain producing one HealthIndexResult per station.

FALLBACK CHAIN (strictly sequential per station):
1. aggregate - 3-hour windowed means, gaps filled from the fused current reading
2. current   - the latest single reading (fused with supplementary data)
3. none      - tagged no-data result with an explanatory note

Callers always get a result back. The only exception that escapes is
InvalidConfiguration for an unknown variant name.

BATCHES:
- Cache hits are served first
- One fusion pass covers every cache miss, so grid fetches stay deduplicated
- Per-station chains run as concurrent tasks; results keep the input order
- Concurrent requests for the same (station, variant) share one computation
"""

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

import numpy as np

from aqhi_backend.exceptions import InsufficientData, UpstreamFetchFailure
from aqhi_backend.models import (
    NO_DATA_LEVEL, NO_DATA_VALUE,
    CalculationMethod, Concentration, HealthIndexResult, Pollutant, PollutantReading,
    QualityTier, SourceTag,
)
from aqhi_backend.processors.formula_engine import FormulaEngine, FormulaVariant
from aqhi_backend.processors.result_cache import CacheKey, ResultCache
from aqhi_backend.processors.source_fusion import SourceFusion
from aqhi_backend.processors.temporal_aggregator import TemporalAggregator, utc_now

logger = logging.getLogger(__name__)


class CurrentReadingProvider(Protocol):
    async def latest_reading(self, station_id: str) -> Optional[PollutantReading]:
        ...


def summarize(results: List[HealthIndexResult]) -> Dict:
    """Batch statistics: value range over data-bearing results, level and method counts"""
    with_data = [r for r in results if r.has_data]
    values = np.array([r.value for r in with_data], dtype=float)

    by_level: Dict[str, int] = {}
    by_method = {method.value: 0 for method in CalculationMethod}
    for result in results:
        by_level[result.level.label] = by_level.get(result.level.label, 0) + 1
        by_method[result.calculation_method.value] += 1

    return {
        'total': len(results),
        'with_data': len(with_data),
        'no_data': len(results) - len(with_data),
        'min': float(values.min()) if values.size else None,
        'max': float(values.max()) if values.size else None,
        'mean': round(float(values.mean()), 2) if values.size else None,
        'by_level': by_level,
        'by_method': by_method,
    }


class HealthIndexService:
    """
    Computes health index results for stations under a formula variant
    """

    def __init__(self, engine: FormulaEngine,
                 aggregator: Optional[TemporalAggregator] = None,
                 fusion: Optional[SourceFusion] = None,
                 current_provider: Optional[CurrentReadingProvider] = None,
                 cache: Optional[ResultCache] = None,
                 default_variant: str = 'thai',
                 timeout_seconds: float = 10.0,
                 clock: Callable[[], datetime] = utc_now):
        self.engine = engine
        self.aggregator = aggregator
        self.fusion = fusion
        self.current_provider = current_provider
        self.cache = cache or ResultCache(clock=clock)
        self.default_variant = engine.get_variant(default_variant).name
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.computations = 0
        self._in_flight: Dict[CacheKey, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def get_or_compute(self, station_id: str, variant: Optional[str] = None,
                             current_reading: Optional[PollutantReading] = None) -> HealthIndexResult:
        """
        Cached result for (station_id, variant), computing it on a miss

        Args:
            station_id: Station to evaluate
            variant: Formula variant name, the service default when omitted
            current_reading: Latest reading if the caller already has it;
                otherwise the current-reading provider is asked on demand
        """
        formula = self.engine.get_variant(variant or self.default_variant)

        cached = self.cache.get(station_id, formula.name)
        if cached is not None:
            logger.debug(f"✅ Cache hit for {station_id}/{formula.name}")
            return cached

        return await self._shared_compute(station_id, formula, current_reading, fused=False)

    async def compute_batch(self, readings: List[PollutantReading],
                            variant: Optional[str] = None) -> List[HealthIndexResult]:
        """Results for a batch of current readings, in input order"""
        formula = self.engine.get_variant(variant or self.default_variant)

        results: List[Optional[HealthIndexResult]] = [None] * len(readings)
        misses = []
        for i, reading in enumerate(readings):
            cached = self.cache.get(reading.station_id, formula.name)
            if cached is not None:
                results[i] = cached
            else:
                misses.append(i)

        logger.info(f"📊 Batch of {len(readings)} stations: {len(readings) - len(misses)} cached, {len(misses)} to compute")

        if misses:
            pending = [readings[i] for i in misses]
            if self.fusion is not None:
                try:
                    pending = await self.fusion.fuse(pending)
                except Exception as e:
                    logger.error(f"❌ Supplementing the batch failed, computing without it: {type(e).__name__}: {e}")

            computed = await asyncio.gather(*(
                self._shared_compute(reading.station_id, formula, reading, fused=True)
                for reading in pending
            ))
            for i, result in zip(misses, computed):
                results[i] = result

        return results

    def summarize(self, results: List[HealthIndexResult]) -> Dict:
        return summarize(results)

    # ------------------------------------------------------------------
    # Computation
    # ------------------------------------------------------------------

    async def _shared_compute(self, station_id: str, formula: FormulaVariant,
                              current_reading: Optional[PollutantReading], fused: bool) -> HealthIndexResult:
        key = CacheKey(station_id, formula.name)
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._compute_and_store(station_id, formula, current_reading, fused))
            self._in_flight[key] = task
            task.add_done_callback(lambda done: self._release(key, done))
        return await asyncio.shield(task)

    def _release(self, key: CacheKey, task: asyncio.Task):
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _compute_and_store(self, station_id: str, formula: FormulaVariant,
                                 current_reading: Optional[PollutantReading], fused: bool) -> HealthIndexResult:
        result = await self.run_chain(station_id, formula, current_reading, fused)
        self.cache.put(result)
        return result

    async def run_chain(self, station_id: str, formula: FormulaVariant,
                        current_reading: Optional[PollutantReading] = None,
                        fused: bool = False) -> HealthIndexResult:
        """Uncached fallback chain: aggregate, then current, then no-data"""
        self.computations += 1
        reasons = []
        resolved: List[Optional[PollutantReading]] = []

        async def current() -> Optional[PollutantReading]:
            # Slot is taken before resolving so a failure is not retried within one chain
            if not resolved:
                resolved.append(None)
                resolved[0] = await self._resolve_current(station_id, current_reading, fused)
            return resolved[0]

        steps = (
            (CalculationMethod.AGGREGATE, self._from_aggregate),
            (CalculationMethod.CURRENT, self._from_current),
        )
        for method, step in steps:
            try:
                result = await step(station_id, formula, current)
            except InsufficientData as e:
                reasons.append(f"{method.value}: {e}")
                continue
            except (OverflowError, ValueError) as e:
                logger.warning(f"⚠️ {station_id}: {method.value} computation failed: {e}")
                reasons.append(f"{method.value}: {e}")
                continue
            except Exception as e:
                logger.error(f"❌ {station_id}: {method.value} step failed unexpectedly: {type(e).__name__}: {e}")
                reasons.append(f"{method.value}: upstream failure ({type(e).__name__})")
                continue

            logger.info(f"✅ {station_id}: {formula.name} AQHI {result.value} ({result.level.label}) via {method.value}")
            return result

        logger.warning(f"❌ {station_id}: no data for {formula.name} ({'; '.join(reasons)})")
        return self._no_data(station_id, formula, reasons)

    async def _resolve_current(self, station_id: str, reading: Optional[PollutantReading],
                               fused: bool) -> Optional[PollutantReading]:
        if reading is None and self.current_provider is not None:
            try:
                reading = await asyncio.wait_for(
                    self.current_provider.latest_reading(station_id),
                    timeout=self.timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(f"⚠️ Latest reading for {station_id} timed out after {self.timeout_seconds}s")
                return None
            except UpstreamFetchFailure as e:
                logger.warning(f"⚠️ Latest reading for {station_id} failed: {e}")
                return None
            except Exception as e:
                logger.error(f"❌ Latest reading for {station_id} failed unexpectedly: {type(e).__name__}: {e}")
                return None

        if reading is not None and not fused and self.fusion is not None:
            try:
                reading = (await self.fusion.fuse([reading]))[0]
            except Exception as e:
                logger.error(f"❌ {station_id}: supplementing the current reading failed: {type(e).__name__}: {e}")
        return reading

    async def _from_aggregate(self, station_id: str, formula: FormulaVariant,
                              current: Callable[[], Awaitable[Optional[PollutantReading]]]) -> HealthIndexResult:
        if self.aggregator is None:
            raise InsufficientData("no reading history configured")

        window = await self.aggregator.aggregate(station_id)
        if window is None:
            raise InsufficientData(f"no usable samples in the last {self.aggregator.window}")

        averaged = window.concentrations()
        concentrations: Dict[Pollutant, Optional[Concentration]] = {
            p: averaged.get(p) for p in formula.pollutants
        }
        if all(c is None for c in concentrations.values()):
            raise InsufficientData(f"window has none of {', '.join(p.value for p in formula.pollutants)}")

        supplemented = []
        gaps = [p for p, c in concentrations.items() if c is None]
        if gaps:
            reading = await current()
            if reading is not None:
                for pollutant in gaps:
                    measurement = reading.values.get(pollutant)
                    if measurement is None:
                        continue
                    concentrations[pollutant] = measurement.concentration
                    if measurement.source_tag == SourceTag.SUPPLEMENT:
                        supplemented.append(pollutant)

        result = self.engine.evaluate(formula, concentrations, station_id=station_id,
                                      calculation_method=CalculationMethod.AGGREGATE)
        result.quality_tier = window.quality_tier
        result.sample_count = window.sample_count
        result.supplemented_pollutants = supplemented
        hours = window.window_end - window.window_start
        result.note = f"{hours.total_seconds() / 3600:g}-hour average of {window.sample_count} readings"
        return result

    async def _from_current(self, station_id: str, formula: FormulaVariant,
                            current: Callable[[], Awaitable[Optional[PollutantReading]]]) -> HealthIndexResult:
        reading = await current()
        if reading is None:
            raise InsufficientData("no current reading")

        concentrations = {p: reading.concentration(p) for p in formula.pollutants}
        if all(c is None for c in concentrations.values()):
            raise InsufficientData(f"current reading has none of {', '.join(p.value for p in formula.pollutants)}")

        result = self.engine.evaluate(formula, concentrations, station_id=station_id,
                                      calculation_method=CalculationMethod.CURRENT)
        result.quality_tier = QualityTier.ESTIMATED
        result.sample_count = 1
        result.supplemented_pollutants = [
            p for p in formula.pollutants if p in reading.pollutants_by_source(SourceTag.SUPPLEMENT)
        ]
        result.note = f"Single reading at {reading.timestamp.isoformat()}"
        return result

    def _no_data(self, station_id: str, formula: FormulaVariant, reasons: List[str]) -> HealthIndexResult:
        return HealthIndexResult(
            station_id=station_id,
            variant=formula.name,
            value=NO_DATA_VALUE,
            risk_components={},
            level=NO_DATA_LEVEL,
            calculation_method=CalculationMethod.NONE,
            computed_at=self.clock(),
            quality_tier=QualityTier.ESTIMATED,
            missing_pollutants=list(formula.required_pollutants),
            note="No data available: " + "; ".join(reasons) if reasons else "No data available",
        )
