#!/usr/bin/env python3
"""
🔬 PRIMARY + SUPPLEMENT SOURCE FUSION
====================================
Fills pollutants the primary station feed is missing from a supplementary
geospatial source sampled on a small fixed grid.

FUSION STRATEGY:
- Find the formula-required pollutants each station is missing
- Snap each station needing data to its nearest grid point (planar distance on lat/lon)
- Fetch every distinct grid point at most once per batch; concurrent
  callers for the same point await the same in-flight task
- Merge only missing slots, tagged `supplement`; primary values are never overwritten

COST CONTROL:
- N stations mapping to G distinct grid points issue exactly G fetches
- A daily call budget caps total fetches; once exhausted, fetches are skipped
- A failed or timed-out fetch leaves the affected gaps unfilled
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Tuple

import numpy as np

from aqhi_backend.exceptions import InvalidConfiguration, UpstreamFetchFailure
from aqhi_backend.models import Concentration, Measurement, Pollutant, PollutantReading, SourceTag
from aqhi_backend.processors.concentration_normalizer import ConcentrationNormalizer, normalize_pollutant_name

logger = logging.getLogger(__name__)

GridKey = Tuple[float, float]

# Bangkok metropolitan bounding box
DEFAULT_BOUNDING_BOX = (13.5, 14.0, 100.3, 100.9)


class SupplementProvider(Protocol):
    async def lookup(self, latitude: float, longitude: float) -> Dict[str, Concentration]:
        ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class GridSupplementPoint:
    """Supplementary data fetched for one grid point; lives for one fusion pass"""
    grid_key: GridKey
    latitude: float
    longitude: float
    concentrations: Dict[Pollutant, Concentration]
    fetched_at: datetime


@dataclass
class FusionReport:
    """Cost and coverage figures for one fusion pass"""
    stations_checked: int = 0
    stations_needing_data: int = 0
    stations_supplemented: int = 0
    missing_by_pollutant: Dict[Pollutant, int] = field(default_factory=dict)
    supplemented_by_pollutant: Dict[Pollutant, int] = field(default_factory=dict)
    grid_points_needed: int = 0
    fetches_issued: int = 0
    fetch_failures: int = 0
    budget_skips: int = 0

    @property
    def api_calls_saved(self) -> int:
        return max(0, self.stations_needing_data - self.fetches_issued)


class SupplementGrid:
    """
    Fixed rows × cols lattice of sampling points spanning a bounding box
    """

    def __init__(self, lat_min: float, lat_max: float, lon_min: float, lon_max: float,
                 rows: int = 3, cols: int = 3):
        if lat_min >= lat_max or lon_min >= lon_max:
            raise InvalidConfiguration(
                f"Invalid grid bounding box: lat {lat_min}-{lat_max}, lon {lon_min}-{lon_max}"
            )
        if rows < 1 or cols < 1:
            raise InvalidConfiguration(f"Grid resolution must be at least 1x1, got {rows}x{cols}")

        self.bounding_box = (lat_min, lat_max, lon_min, lon_max)
        self.rows = rows
        self.cols = cols

        lat_step = (lat_max - lat_min) / (rows - 1) if rows > 1 else 0.0
        lon_step = (lon_max - lon_min) / (cols - 1) if cols > 1 else 0.0

        # Row-major order; ties in nearest() go to the first point
        self.points: List[GridKey] = [
            (round(lat_min + i * lat_step, 3), round(lon_min + j * lon_step, 3))
            for i in range(rows)
            for j in range(cols)
        ]
        self._coords = np.array(self.points, dtype=float)

    def nearest(self, latitude: float, longitude: float) -> GridKey:
        """Nearest grid point by planar Euclidean distance on (lat, lon)"""
        distances = np.hypot(self._coords[:, 0] - latitude, self._coords[:, 1] - longitude)
        return self.points[int(np.argmin(distances))]


class SupplementBudget:
    """
    Per-day cap on supplementary API calls, reset at UTC midnight
    """

    def __init__(self, daily_limit: Optional[int], clock: Callable[[], datetime] = _utc_now):
        if daily_limit is not None and daily_limit < 0:
            raise InvalidConfiguration(f"Daily supplement budget cannot be negative: {daily_limit}")
        self.daily_limit = daily_limit
        self.clock = clock
        self._day: Optional[date] = None
        self._used = 0

    def _roll_day(self):
        today = self.clock().date()
        if today != self._day:
            self._day = today
            self._used = 0

    def try_acquire(self) -> bool:
        self._roll_day()
        if self.daily_limit is not None and self._used >= self.daily_limit:
            return False
        self._used += 1
        return True

    @property
    def used_today(self) -> int:
        self._roll_day()
        return self._used

    @property
    def remaining(self) -> Optional[int]:
        if self.daily_limit is None:
            return None
        return max(0, self.daily_limit - self.used_today)


class SourceFusion:
    """
    Fuses primary station readings with grid-sampled supplementary data
    """

    def __init__(self, supplement_provider: SupplementProvider,
                 grid: SupplementGrid,
                 required_pollutants: Iterable[Pollutant],
                 normalizer: Optional[ConcentrationNormalizer] = None,
                 budget: Optional[SupplementBudget] = None,
                 timeout_seconds: float = 15.0,
                 clock: Callable[[], datetime] = _utc_now):
        self.supplement_provider = supplement_provider
        self.grid = grid
        self.required_pollutants = list(dict.fromkeys(required_pollutants))
        if not self.required_pollutants:
            raise InvalidConfiguration("Source fusion needs at least one required pollutant")
        self.normalizer = normalizer or ConcentrationNormalizer()
        self.budget = budget or SupplementBudget(None, clock)
        self.timeout_seconds = timeout_seconds
        self.clock = clock
        self.last_report: Optional[FusionReport] = None

    def grid_key_for(self, reading: PollutantReading) -> Optional[GridKey]:
        try:
            return self.grid.nearest(reading.latitude, reading.longitude)
        except (TypeError, ValueError) as e:
            logger.warning(f"⚠️ {reading.station_id}: no grid point for ({reading.latitude}, {reading.longitude}): {e}")
            return None

    def missing_pollutants(self, reading: PollutantReading) -> List[Pollutant]:
        """Required pollutants with no measurement; a measured zero counts as present"""
        return [p for p in self.required_pollutants if p not in reading.values]

    def _to_canonical(self, raw: Dict[str, Concentration]) -> Dict[Pollutant, Concentration]:
        concentrations = {}
        for code, concentration in raw.items():
            pollutant = normalize_pollutant_name(code)
            if pollutant is None or concentration.value < 0:
                continue
            try:
                concentrations[pollutant] = self.normalizer.to_canonical(concentration, pollutant)
            except InvalidConfiguration as e:
                logger.warning(f"⚠️ Dropping supplementary {code}: {e}")
        return concentrations

    async def _fetch_point(self, grid_key: GridKey, report: FusionReport) -> Optional[GridSupplementPoint]:
        if not self.budget.try_acquire():
            report.budget_skips += 1
            logger.warning(f"💰 Daily supplement budget exhausted, skipping grid point {grid_key}")
            return None

        report.fetches_issued += 1
        latitude, longitude = grid_key
        try:
            raw = await asyncio.wait_for(
                self.supplement_provider.lookup(latitude, longitude),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError:
            report.fetch_failures += 1
            logger.warning(f"⚠️ Supplement fetch for {grid_key} timed out after {self.timeout_seconds}s")
            return None
        except UpstreamFetchFailure as e:
            report.fetch_failures += 1
            logger.error(f"❌ Supplement fetch for {grid_key} failed: {e}")
            return None
        except Exception as e:
            report.fetch_failures += 1
            logger.error(f"❌ Supplement fetch for {grid_key} failed unexpectedly: {type(e).__name__}: {e}")
            return None

        return GridSupplementPoint(
            grid_key=grid_key,
            latitude=latitude,
            longitude=longitude,
            concentrations=self._to_canonical(raw or {}),
            fetched_at=self.clock(),
        )

    def _shared_fetch(self, grid_key: GridKey, in_flight: Dict[GridKey, 'asyncio.Task'],
                      report: FusionReport) -> Awaitable[Optional[GridSupplementPoint]]:
        # Check-and-insert happens without yielding, so the first caller owns the fetch
        task = in_flight.get(grid_key)
        if task is None:
            task = asyncio.ensure_future(self._fetch_point(grid_key, report))
            in_flight[grid_key] = task
        return task

    def merge(self, reading: PollutantReading, point: Optional[GridSupplementPoint],
              missing: List[Pollutant]) -> Tuple[PollutantReading, List[Pollutant]]:
        """Fill only the missing slots; returns the new reading and what was filled"""
        if point is None:
            return reading, []

        values = dict(reading.values)
        filled = []
        for pollutant in missing:
            if pollutant in values:
                continue
            concentration = point.concentrations.get(pollutant)
            if concentration is None:
                continue
            values[pollutant] = Measurement(concentration.value, concentration.unit, SourceTag.SUPPLEMENT)
            filled.append(pollutant)

        if not filled:
            return reading, []
        return reading.with_values(values), filled

    async def _fuse_station(self, reading: PollutantReading, in_flight: Dict[GridKey, 'asyncio.Task'],
                            report: FusionReport) -> PollutantReading:
        missing = self.missing_pollutants(reading)
        if not missing:
            return reading

        grid_key = self.grid_key_for(reading)
        if grid_key is None:
            return reading

        try:
            point = await self._shared_fetch(grid_key, in_flight, report)
            fused, filled = self.merge(reading, point, missing)
        except Exception as e:
            logger.error(f"❌ {reading.station_id}: supplement merge failed: {type(e).__name__}: {e}")
            return reading

        if filled:
            report.stations_supplemented += 1
            for pollutant in filled:
                report.supplemented_by_pollutant[pollutant] = report.supplemented_by_pollutant.get(pollutant, 0) + 1
            logger.debug(f"✓ {reading.station_id}: added {', '.join(p.value.upper() for p in filled)} from {grid_key}")
        return fused

    async def fuse_with_report(self, readings: List[PollutantReading]) -> Tuple[List[PollutantReading], FusionReport]:
        """Fuse a batch of station readings; output order matches input order"""
        report = FusionReport(stations_checked=len(readings))

        needing = []
        for reading in readings:
            missing = self.missing_pollutants(reading)
            if missing:
                needing.append(reading)
                for pollutant in missing:
                    report.missing_by_pollutant[pollutant] = report.missing_by_pollutant.get(pollutant, 0) + 1
        report.stations_needing_data = len(needing)
        report.grid_points_needed = len({self.grid_key_for(r) for r in needing} - {None})

        if not needing:
            logger.info(f"✅ All {len(readings)} stations have complete data - no supplement needed")
            self.last_report = report
            return list(readings), report

        logger.info(
            f"📊 {report.stations_needing_data}/{len(readings)} stations missing data, "
            f"{report.grid_points_needed} grid points needed"
        )

        in_flight: Dict[GridKey, asyncio.Task] = {}
        fused = await asyncio.gather(*(self._fuse_station(r, in_flight, report) for r in readings))

        logger.info(
            f"💰 Supplement fetches: {report.fetches_issued} issued, {report.fetch_failures} failed, "
            f"{report.budget_skips} skipped by budget, {report.api_calls_saved} calls saved"
        )
        self.last_report = report
        return list(fused), report

    async def fuse(self, readings: List[PollutantReading]) -> List[PollutantReading]:
        fused, _ = await self.fuse_with_report(readings)
        return fused
