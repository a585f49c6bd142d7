"""
Tests for the windowed averaging and quality tiers.
"""

import asyncio
from datetime import timedelta

import pytest

from aqhi_backend.exceptions import InvalidConfiguration
from aqhi_backend.models import PPB, UG_M3, Pollutant, QualityTier
from aqhi_backend.processors.temporal_aggregator import TemporalAggregator, classify_quality

from conftest import NOW, FakeHistory, make_reading


def readings_every_10_minutes(count, station_id='bkk-01', **values):
    return [
        make_reading(station_id, NOW - timedelta(minutes=10 * i), **values)
        for i in range(count)
    ]


class TestQualityTiers:
    """Tests for the quality classification."""

    @pytest.mark.parametrize("samples,coverage,expected", [
        (18, 1.0, QualityTier.EXCELLENT),
        (15, 0.99, QualityTier.GOOD),
        (10, 0.66, QualityTier.GOOD),
        (9, 1.0, QualityTier.FAIR),
        (5, 0.33, QualityTier.FAIR),
        (4, 1.0, QualityTier.LIMITED),
        (1, 0.0, QualityTier.LIMITED),
        (0, 0.0, QualityTier.ESTIMATED),
    ])
    def test_thresholds(self, samples, coverage, expected):
        """Test the tier table."""
        assert classify_quality(samples, coverage) == expected

    def test_monotonic(self):
        """Test that more samples or coverage never lowers the tier."""
        order = [QualityTier.ESTIMATED, QualityTier.LIMITED, QualityTier.FAIR, QualityTier.GOOD, QualityTier.EXCELLENT]
        for samples in range(0, 20):
            for step in range(0, 11):
                coverage = step / 10
                tier = order.index(classify_quality(samples, coverage))
                assert order.index(classify_quality(samples + 1, coverage)) >= tier
                assert order.index(classify_quality(samples, min(1.0, coverage + 0.1))) >= tier


class TestAggregate:
    """Tests for aggregate()."""

    def test_full_window(self, clock):
        """Test 18 ten-minute readings give full coverage and excellent quality."""
        history = FakeHistory(readings_every_10_minutes(18, pm25=30.0, o3=60.0))
        aggregator = TemporalAggregator(history, clock=clock)

        window = asyncio.run(aggregator.aggregate('bkk-01'))

        assert window.sample_count == 18
        assert window.coverage == 1.0
        assert window.quality_tier == QualityTier.EXCELLENT
        assert window.means[Pollutant.PM25] == pytest.approx(30.0)
        assert window.means[Pollutant.O3] == pytest.approx(60.0)

    def test_zero_values_excluded(self, clock):
        """Test that zero measurements are excluded from the mean."""
        history = FakeHistory([
            make_reading(timestamp=NOW, pm25=20.0, no2=0.0),
            make_reading(timestamp=NOW - timedelta(minutes=10), pm25=0.0, no2=40.0),
            make_reading(timestamp=NOW - timedelta(minutes=20), pm25=40.0),
        ])
        aggregator = TemporalAggregator(history, clock=clock)

        window = asyncio.run(aggregator.aggregate('bkk-01'))

        assert window.means[Pollutant.PM25] == pytest.approx(30.0)
        assert window.means[Pollutant.NO2] == pytest.approx(40.0)
        assert window.pollutant_counts == {Pollutant.PM25: 2, Pollutant.NO2: 1}
        assert window.sample_count == 3

    def test_coverage_includes_poll_interval(self, clock):
        """Test that one reading covers one poll interval of the window."""
        history = FakeHistory([make_reading(timestamp=NOW, pm25=12.0)])
        aggregator = TemporalAggregator(history, clock=clock)

        window = asyncio.run(aggregator.aggregate('bkk-01'))

        assert window.coverage == pytest.approx(10 / 180)
        assert window.quality_tier == QualityTier.LIMITED

    def test_old_readings_outside_window(self, clock):
        """Test that readings older than the window are ignored."""
        history = FakeHistory([make_reading(timestamp=NOW - timedelta(hours=4), pm25=12.0)])
        aggregator = TemporalAggregator(history, clock=clock)

        assert asyncio.run(aggregator.aggregate('bkk-01')) is None

    def test_all_zero_samples_return_none(self, clock):
        """Test that a window without usable samples never divides by zero."""
        history = FakeHistory(readings_every_10_minutes(6, pm25=0.0, o3=0.0))
        aggregator = TemporalAggregator(history, clock=clock)

        assert asyncio.run(aggregator.aggregate('bkk-01')) is None

    def test_empty_readings_return_none(self, clock):
        """Test readings with empty value maps."""
        history = FakeHistory(readings_every_10_minutes(3))
        aggregator = TemporalAggregator(history, clock=clock)

        assert asyncio.run(aggregator.aggregate('bkk-01')) is None

    def test_history_failure_returns_none(self, clock):
        """Test that an upstream failure is absorbed."""
        aggregator = TemporalAggregator(FakeHistory(fail=True), clock=clock)

        assert asyncio.run(aggregator.aggregate('bkk-01')) is None

    def test_unexpected_history_error_returns_none(self, clock):
        """Test that a driver fault outside the error taxonomy is absorbed."""
        aggregator = TemporalAggregator(FakeHistory(error=RuntimeError("driver bug")), clock=clock)

        assert asyncio.run(aggregator.aggregate('bkk-01')) is None

    def test_mixed_units_averaged_in_canonical_unit(self, clock):
        """Test that ppb and μg/m³ samples of one pollutant are averaged after conversion."""
        history = FakeHistory([
            make_reading(timestamp=NOW, o3=(50.0, PPB)),
            make_reading(timestamp=NOW - timedelta(minutes=10), o3=(98.1, UG_M3)),
        ])
        aggregator = TemporalAggregator(history, clock=clock)

        window = asyncio.run(aggregator.aggregate('bkk-01'))

        assert window.units[Pollutant.O3] == UG_M3
        assert window.means[Pollutant.O3] == pytest.approx(98.1)

    def test_history_timeout_returns_none(self, clock):
        """Test that a slow history store times out."""
        history = FakeHistory(readings_every_10_minutes(3, pm25=10.0), delay=0.5)
        aggregator = TemporalAggregator(history, timeout_seconds=0.05, clock=clock)

        assert asyncio.run(aggregator.aggregate('bkk-01')) is None

    def test_batch(self, clock):
        """Test per-station results for a batch."""
        history = FakeHistory(readings_every_10_minutes(3, 'a', pm25=10.0))
        aggregator = TemporalAggregator(history, clock=clock)

        results = asyncio.run(aggregator.aggregate_batch(['a', 'b']))

        assert results['a'].sample_count == 3
        assert results['b'] is None


class TestConfiguration:
    """Tests for aggregator validation."""

    def test_non_positive_window(self):
        """Test that a zero window is rejected."""
        with pytest.raises(InvalidConfiguration):
            TemporalAggregator(FakeHistory(), window=timedelta(0))

    def test_thresholds_must_be_ordered(self):
        """Test that weaker thresholds cannot come first."""
        with pytest.raises(InvalidConfiguration):
            TemporalAggregator(FakeHistory(), thresholds=[
                (QualityTier.FAIR, 5, 0.33),
                (QualityTier.EXCELLENT, 15, 1.0),
            ])
