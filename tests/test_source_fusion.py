"""
Tests for grid-based supplementary fusion and its cost controls.
"""

import asyncio

import pytest

from aqhi_backend.exceptions import InvalidConfiguration
from aqhi_backend.models import PPB, UG_M3, Concentration, Pollutant, SourceTag
from aqhi_backend.processors.source_fusion import SourceFusion, SupplementBudget, SupplementGrid

from conftest import FakeSupplementProvider, make_reading

REQUIRED = [Pollutant.PM25, Pollutant.O3, Pollutant.NO2]


def bangkok_grid():
    return SupplementGrid(13.5, 14.0, 100.3, 100.9, rows=3, cols=3)


class TestSupplementGrid:
    """Tests for the sampling grid."""

    def test_points_row_major(self):
        """Test the 3x3 Bangkok grid layout."""
        grid = bangkok_grid()
        assert len(grid.points) == 9
        assert grid.points[0] == (13.5, 100.3)
        assert grid.points[1] == (13.5, 100.6)
        assert grid.points[4] == (13.75, 100.6)
        assert grid.points[-1] == (14.0, 100.9)

    def test_nearest(self):
        """Test nearest grid point lookup."""
        grid = bangkok_grid()
        assert grid.nearest(13.74, 100.52) == (13.75, 100.6)
        assert grid.nearest(13.1, 99.0) == (13.5, 100.3)

    def test_tie_goes_to_first_point(self):
        """Test that an equidistant station resolves to the earlier point."""
        grid = SupplementGrid(0.0, 1.0, 0.0, 1.0, rows=2, cols=2)
        assert grid.nearest(0.5, 0.5) == (0.0, 0.0)

    def test_invalid_box(self):
        """Test that an inverted bounding box is rejected."""
        with pytest.raises(InvalidConfiguration):
            SupplementGrid(14.0, 13.5, 100.3, 100.9)


class TestSupplementBudget:
    """Tests for the daily call cap."""

    def test_exhaustion_and_reset(self, clock):
        """Test that the budget runs out and resets the next UTC day."""
        budget = SupplementBudget(2, clock=clock)
        assert budget.try_acquire()
        assert budget.try_acquire()
        assert not budget.try_acquire()
        assert budget.remaining == 0

        clock.advance(days=1)
        assert budget.remaining == 2
        assert budget.try_acquire()

    def test_unlimited(self, clock):
        """Test that no limit means every call is allowed."""
        budget = SupplementBudget(None, clock=clock)
        assert all(budget.try_acquire() for _ in range(50))
        assert budget.remaining is None


class TestSourceFusion:
    """Tests for fuse()."""

    def make_fusion(self, provider, clock, **kwargs):
        return SourceFusion(provider, bangkok_grid(), REQUIRED, clock=clock, **kwargs)

    def test_one_fetch_for_shared_grid_point(self, clock):
        """Test that N stations on one grid point trigger exactly one fetch."""
        provider = FakeSupplementProvider()
        fusion = self.make_fusion(provider, clock)
        readings = [make_reading(f's{i}', lat=13.74 + i * 0.001, lon=100.55, pm25=20.0) for i in range(10)]

        fused, report = asyncio.run(fusion.fuse_with_report(readings))

        assert len(provider.calls) == 1
        assert report.grid_points_needed == 1
        assert report.fetches_issued == 1
        assert report.api_calls_saved == 9
        assert all(r.values[Pollutant.O3].source_tag == SourceTag.SUPPLEMENT for r in fused)

    def test_fetch_count_equals_distinct_cells(self, clock):
        """Test G fetches for stations spread over G grid points."""
        provider = FakeSupplementProvider()
        fusion = self.make_fusion(provider, clock)
        readings = [
            make_reading('a', lat=13.5, lon=100.3, pm25=10.0),
            make_reading('b', lat=13.51, lon=100.31, pm25=10.0),
            make_reading('c', lat=14.0, lon=100.9, pm25=10.0),
            make_reading('d', lat=13.76, lon=100.61, pm25=10.0),
        ]

        asyncio.run(fusion.fuse(readings))

        assert len(provider.calls) == 3
        assert set(provider.calls) == {(13.5, 100.3), (14.0, 100.9), (13.75, 100.6)}

    def test_primary_values_never_overwritten(self, clock):
        """Test that only missing pollutants are filled."""
        provider = FakeSupplementProvider({
            'pm25': Concentration(99.0, UG_M3),
            'o3': Concentration(30.0, PPB),
            'no2': Concentration(20.0, PPB),
        })
        fusion = self.make_fusion(provider, clock)
        reading = make_reading(pm25=25.0, no2=0.0)

        fused = asyncio.run(fusion.fuse([reading]))[0]

        assert fused.values[Pollutant.PM25].quantity == 25.0
        assert fused.values[Pollutant.PM25].source_tag == SourceTag.PRIMARY
        assert fused.values[Pollutant.NO2].quantity == 0.0
        assert fused.values[Pollutant.O3].source_tag == SourceTag.SUPPLEMENT
        assert fused.values[Pollutant.O3].unit == UG_M3
        assert fused.values[Pollutant.O3].quantity == pytest.approx(30.0 * 1.962)
        assert Pollutant.O3 not in reading.values

    def test_complete_readings_skip_fetching(self, clock):
        """Test that complete stations never call the provider."""
        provider = FakeSupplementProvider()
        fusion = self.make_fusion(provider, clock)

        fused = asyncio.run(fusion.fuse([make_reading(pm25=10.0, o3=40.0, no2=30.0)]))

        assert provider.calls == []
        assert fusion.last_report.stations_needing_data == 0
        assert fused[0].pollutants_by_source(SourceTag.SUPPLEMENT) == []

    def test_failed_fetch_leaves_gaps(self, clock):
        """Test that a failed fetch leaves the reading unchanged."""
        provider = FakeSupplementProvider(fail=True)
        fusion = self.make_fusion(provider, clock)
        reading = make_reading(pm25=10.0)

        fused, report = asyncio.run(fusion.fuse_with_report([reading, make_reading('b', pm25=12.0)]))

        assert fused[0] is reading
        assert report.fetch_failures == 1
        assert report.stations_supplemented == 0
        assert len(provider.calls) == 1

    def test_unexpected_fetch_error_leaves_gaps(self, clock):
        """Test that a connection error from the provider is counted as a failed fetch."""
        provider = FakeSupplementProvider(error=ConnectionResetError("peer reset"))
        fusion = self.make_fusion(provider, clock)
        readings = [make_reading('a', pm25=10.0), make_reading('b', pm25=12.0)]

        fused, report = asyncio.run(fusion.fuse_with_report(readings))

        assert fused == readings
        assert report.fetch_failures == 1
        assert len(provider.calls) == 1

    def test_station_without_coordinates_left_unfused(self, clock):
        """Test that a station with no usable position is passed through."""
        provider = FakeSupplementProvider()
        fusion = self.make_fusion(provider, clock)
        lost = make_reading('lost', lat=None, pm25=10.0)

        fused, report = asyncio.run(fusion.fuse_with_report([lost, make_reading('b', pm25=12.0)]))

        assert fused[0] is lost
        assert fused[1].values[Pollutant.O3].source_tag == SourceTag.SUPPLEMENT
        assert report.grid_points_needed == 1

    def test_timeout_leaves_gaps(self, clock):
        """Test that a slow provider is treated as a failure."""
        provider = FakeSupplementProvider(delay=0.5)
        fusion = self.make_fusion(provider, clock, timeout_seconds=0.05)

        fused, report = asyncio.run(fusion.fuse_with_report([make_reading(pm25=10.0)]))

        assert Pollutant.O3 not in fused[0].values
        assert report.fetch_failures == 1

    def test_budget_exhaustion_skips_fetches(self, clock):
        """Test that fetches stop once the daily budget is used up."""
        provider = FakeSupplementProvider()
        budget = SupplementBudget(1, clock=clock)
        fusion = self.make_fusion(provider, clock, budget=budget)
        readings = [
            make_reading('a', lat=13.5, lon=100.3, pm25=10.0),
            make_reading('b', lat=14.0, lon=100.9, pm25=10.0),
        ]

        fused, report = asyncio.run(fusion.fuse_with_report(readings))

        assert len(provider.calls) == 1
        assert report.budget_skips == 1
        assert sum(1 for r in fused if Pollutant.O3 in r.values) == 1

    def test_order_preserved(self, clock):
        """Test that output order matches input order."""
        fusion = self.make_fusion(FakeSupplementProvider(), clock)
        readings = [make_reading(f's{i}', lat=13.5 + 0.05 * i, pm25=10.0) for i in range(8)]

        fused = asyncio.run(fusion.fuse(readings))

        assert [r.station_id for r in fused] == [f's{i}' for i in range(8)]

    def test_report_counts(self, clock):
        """Test per-pollutant missing and supplemented counts."""
        provider = FakeSupplementProvider({'o3': Concentration(30.0, PPB)})
        fusion = self.make_fusion(provider, clock)

        _, report = asyncio.run(fusion.fuse_with_report([make_reading(pm25=10.0)]))

        assert report.missing_by_pollutant == {Pollutant.O3: 1, Pollutant.NO2: 1}
        assert report.supplemented_by_pollutant == {Pollutant.O3: 1}
        assert report.stations_supplemented == 1
