"""
Shared fixtures and fakes for the AQHI backend tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from aqhi_backend.exceptions import UpstreamFetchFailure
from aqhi_backend.models import PPB, UG_M3, Concentration, Measurement, Pollutant, PollutantReading

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Settable clock shared by the components under test"""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeHistory:
    """In-memory history provider that counts calls and can fail or stall"""

    def __init__(self, readings: Optional[List[PollutantReading]] = None,
                 fail: bool = False, delay: float = 0.0, error: Optional[Exception] = None):
        self.readings = list(readings or [])
        self.fail = fail
        self.error = error
        self.delay = delay
        self.calls = 0

    async def fetch_readings(self, station_id, from_time, to_time):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        if self.fail:
            raise UpstreamFetchFailure("history store unavailable")
        return [r for r in self.readings
                if r.station_id == station_id and from_time <= r.timestamp <= to_time]

    async def latest_reading(self, station_id):
        if self.error:
            raise self.error
        if self.fail:
            raise UpstreamFetchFailure("history store unavailable")
        history = [r for r in self.readings if r.station_id == station_id]
        return max(history, key=lambda r: r.timestamp) if history else None


class FakeSupplementProvider:
    """Grid-point source returning fixed concentrations; records every lookup"""

    def __init__(self, concentrations: Optional[Dict[str, Concentration]] = None,
                 fail: bool = False, delay: float = 0.01, error: Optional[Exception] = None):
        if concentrations is None:
            concentrations = {
                'o3': Concentration(30.0, PPB),
                'no2': Concentration(20.0, PPB),
            }
        self.concentrations = concentrations
        self.fail = fail
        self.error = error
        self.delay = delay
        self.calls: List[tuple] = []

    async def lookup(self, latitude, longitude):
        self.calls.append((latitude, longitude))
        await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        if self.fail:
            raise UpstreamFetchFailure("supplementary API returned 503")
        return dict(self.concentrations)


def make_reading(station_id='bkk-01', timestamp=NOW, lat=13.75, lon=100.5, **values) -> PollutantReading:
    """Reading with values given as pollutant=quantity (μg/m³ unless a (value, unit) tuple)"""
    measurements = {}
    for name, value in values.items():
        quantity, unit = value if isinstance(value, tuple) else (value, UG_M3)
        measurements[Pollutant(name)] = Measurement(quantity, unit)
    return PollutantReading(station_id, timestamp, lat, lon, measurements)


@pytest.fixture
def clock():
    return FixedClock()
