"""
Unit Tests for Reference Calculator
"""

from datetime import datetime, timedelta

import numpy as np
import pytest

from spot_impact.exceptions import ConfigurationError, InsufficientDataError
from spot_impact.reference import ReferenceCalculator, compute_reference, empty_reference
from spot_impact.types import METRIC_NAMES, WINDOW_KEYS, MetricSample, ReferenceStatistic


class TestReferenceCalculator:
    """Test suite for ReferenceCalculator class"""

    @pytest.fixture
    def calculator(self):
        return ReferenceCalculator()

    def test_comparable_periods_respect_tolerances(self, calculator, event_time, historical_samples):
        periods = calculator.comparable_periods(event_time, historical_samples)

        assert len(periods) > 0
        assert (periods['timestamp'] < event_time).all()
        assert set(periods['timestamp'].dt.dayofweek) <= {2, 3, 4}
        assert set(periods['timestamp'].dt.hour) <= {18, 19, 20, 21, 22}

    def test_tolerances_wrap_around(self, calculator):
        # Monday 00:00 event: Sunday 23:00 is one day and one hour away
        event = datetime(2024, 3, 18, 0, 0)
        samples = [
            MetricSample(timestamp=datetime(2024, 3, 17, 23, 0), active_users=50),
            MetricSample(timestamp=datetime(2024, 3, 13, 23, 0), active_users=70),
        ]
        periods = calculator.comparable_periods(event, samples)
        assert periods['active_users'].tolist() == [50]

    def test_samples_at_or_after_event_are_excluded(self, calculator, event_time):
        samples = [
            MetricSample(timestamp=event_time, active_users=500),
            MetricSample(timestamp=event_time - timedelta(days=7), active_users=100),
        ]
        periods = calculator.comparable_periods(event_time, samples)
        assert periods['active_users'].tolist() == [100]

    def test_statistic(self, calculator):
        stat = calculator.statistic(np.array([4.0, 1.0, 3.0, 2.0]))
        assert stat.mean == pytest.approx(2.5)
        assert stat.median == 3.0
        assert stat.std_dev == pytest.approx(np.std([1, 2, 3, 4]))
        assert stat.confidence == 68
        assert stat.sample_size == 4

    def test_statistic_confidence_capped(self, calculator):
        stat = calculator.statistic(np.ones(50))
        assert stat.confidence == 95

    def test_statistic_requires_values(self, calculator):
        with pytest.raises(InsufficientDataError):
            calculator.statistic(np.array([]))

    def test_reference_covers_every_window_and_metric(self, calculator, event_time, historical_samples):
        reference = calculator.compute_reference(event_time, historical_samples)

        assert set(reference) == set(WINDOW_KEYS)
        for stats in reference.values():
            assert set(stats) == set(METRIC_NAMES)
            assert stats['active_users'].sample_size > 0
            assert 0 <= stats['active_users'].confidence <= 100

    def test_reference_rates(self, calculator, event_time, historical_samples):
        stats = calculator.compute_reference(event_time, historical_samples)['immediate']
        assert stats['bounce_rate'].mean == pytest.approx(40.0)
        assert stats['conversion_rate'].mean == pytest.approx(2.0)
        assert stats['avg_session_duration'].mean == pytest.approx(120.0)

    def test_empty_history(self, calculator, event_time):
        reference = calculator.compute_reference(event_time, [])
        for stats in reference.values():
            for stat in stats.values():
                assert stat == ReferenceStatistic.empty()

    def test_missing_timestamp(self, calculator, historical_samples):
        with pytest.raises(ConfigurationError) as exc_info:
            calculator.compute_reference(None, historical_samples)
        assert exc_info.value.field == 'timestamp'

    def test_string_timestamp(self, calculator, historical_samples):
        reference = calculator.compute_reference('2024-03-14T20:00:00', historical_samples)
        assert reference['immediate']['sessions'].sample_size > 0

    def test_function_form_matches(self, event_time, historical_samples):
        assert compute_reference(event_time, historical_samples) == \
            ReferenceCalculator().compute_reference(event_time, historical_samples)

    def test_custom_tolerance(self, event_time, historical_samples):
        narrow = ReferenceCalculator({'reference': {'hour_tolerance': 0, 'weekday_tolerance': 0}})
        periods = narrow.comparable_periods(event_time, historical_samples)
        assert set(periods['timestamp'].dt.hour) == {20}
        assert set(periods['timestamp'].dt.dayofweek) == {3}

    def test_empty_reference(self):
        reference = empty_reference()
        assert reference['long_term']['sessions'].confidence == 0
