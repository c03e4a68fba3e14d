"""
Unit Tests for Predictive Analysis, Historical Patterns and Estimators
"""

import warnings
from datetime import datetime, timedelta

import numpy as np
import pandas as pd
import pytest

from spot_impact.config import resolve_config
from spot_impact.estimators import (
    AudienceFactor,
    ConstantFactor,
    ConstantScore,
    EstimatorSet,
    TemporalFactor,
    TimingQuality,
    default_estimators,
)
from spot_impact.exceptions import ConfigurationError
from spot_impact.historical_patterns import (
    HistoricalPatternAnalyzer,
    calculate_z_scores,
    detect_trend,
    seasonality_strength,
)
from spot_impact.predictive_analysis import (
    PredictiveProjector,
    overall_risk,
    prediction_confidence,
    risk_score,
    sort_recommendations,
)
from spot_impact.reference import ReferenceCalculator
from spot_impact.temporal_analysis import TemporalImpactAnalyzer
from spot_impact.types import FUNNEL_STAGES, WINDOW_KEYS, EventRecord, PredictionBundle


class TestHistoricalPatterns:
    """Test suite for HistoricalPatternAnalyzer class"""

    @pytest.fixture(scope="class")
    def patterns(self, historical_samples):
        return HistoricalPatternAnalyzer().analyze(historical_samples)

    def test_pattern_tables(self, patterns):
        tables = patterns['patterns']
        assert set(tables['hourly']) == set(range(24))
        assert set(tables['daily']) == set(range(7))
        assert tables['hourly'][6] > tables['hourly'][18]

    def test_day_hour_table(self, patterns):
        assert len(patterns['day_hour']) == 7
        assert all(len(hours) == 24 for hours in patterns['day_hour'].values())

    def test_summary_values(self, patterns):
        assert patterns['data_points'] == 720
        assert patterns['average_performance'] == pytest.approx(100, abs=2)
        assert 0 <= patterns['variability'] <= 1
        assert 0 <= patterns['consistency'] <= 1
        assert patterns['sample_interval_seconds'] == 3600
        assert patterns['time_range_days'] == pytest.approx(30 - 1 / 24)

    def test_ratios(self, patterns):
        ratios = patterns['ratios']
        assert ratios['sessions_per_user'] == pytest.approx(1.2)
        assert ratios['engagement_rate'] == pytest.approx(0.6)
        assert ratios['conversion_rate'] == pytest.approx(0.02)

    def test_daily_seasonality_detected(self, patterns):
        seasonality = patterns['seasonality']
        assert seasonality['cycle'] == 'daily'
        assert seasonality['period'] == 24
        assert seasonality['detected']

    def test_no_anomalies_in_regular_history(self, patterns):
        assert patterns['anomalies'] == []

    def test_empty_history(self):
        patterns = HistoricalPatternAnalyzer().analyze([])
        assert patterns['data_points'] == 0
        assert patterns['patterns'] == {}

    def test_data_quality(self, patterns):
        quality = HistoricalPatternAnalyzer.assess_data_quality(patterns)
        assert quality['completeness'] == pytest.approx(1.0)
        assert quality['anomaly_rate'] == 0
        assert 0 <= quality['score'] <= 1

    def test_data_quality_empty(self):
        quality = HistoricalPatternAnalyzer.assess_data_quality({'data_points': 0})
        assert quality == {'completeness': 0.0, 'consistency': 0.0, 'anomaly_rate': 0.0, 'score': 0.0}

    def test_anomaly_detection(self):
        start = datetime(2024, 1, 1)
        values = [100.0] * 50 + [1000.0] + [100.0] * 49
        frame = pd.DataFrame({
            'timestamp': [start + timedelta(hours=i) for i in range(100)],
            'active_users': values,
        })
        anomalies = HistoricalPatternAnalyzer().analyze(frame)['anomalies']
        assert len(anomalies) == 1
        assert anomalies[0]['value'] == 1000.0
        assert anomalies[0]['timestamp'] == (start + timedelta(hours=50)).isoformat()


class TestPatternHelpers:
    """Trend, z-score and seasonality helpers"""

    def test_increasing_trend(self):
        trend = detect_trend(np.arange(20, dtype=float) * 5 + 100)
        assert trend['direction'] == 'increasing'
        assert trend['slope'] == pytest.approx(5.0)

    def test_decreasing_trend(self):
        assert detect_trend(np.linspace(200, 100, 15))['direction'] == 'decreasing'

    def test_flat_and_short_series_are_stable(self):
        assert detect_trend(np.full(10, 3.0))['direction'] == 'stable'
        assert detect_trend(np.array([1.0, 2.0]))['direction'] == 'stable'

    def test_z_scores(self):
        z = calculate_z_scores(np.array([1.0, 2.0, 3.0]))
        assert z.mean() == pytest.approx(0.0)
        assert calculate_z_scores(np.full(4, 7.0)).tolist() == [0, 0, 0, 0]

    def test_seasonality_needs_two_cycles(self):
        series = pd.Series(np.arange(30, dtype=float), index=pd.date_range('2024-01-01', periods=30, freq='h'))
        assert seasonality_strength(series, 24) is None

    def test_pure_cycle_is_strongly_seasonal(self):
        hours = np.arange(24 * 7)
        series = pd.Series(np.sin(2 * np.pi * hours / 24) * 10 + 50,
                           index=pd.date_range('2024-01-01', periods=len(hours), freq='h'))
        assert seasonality_strength(series, 24) > 0.9

    def test_decomposition_extrapolates_trend_without_warnings(self):
        hours = np.arange(24 * 7)
        series = pd.Series(np.sin(2 * np.pi * hours / 24) * 10 + hours * 0.5,
                           index=pd.date_range('2024-01-01', periods=len(hours), freq='h'))
        with warnings.catch_warnings():
            warnings.simplefilter('error', FutureWarning)
            strength = seasonality_strength(series, 24)
        assert strength > 0.9


class TestEstimators:
    """Adjustment factors and quality scores"""

    @pytest.fixture
    def patterns(self):
        return {
            'patterns': {
                'hourly': {20: 150.0, 3: 50.0},
                'daily': {3: 120.0, 6: 80.0},
            },
        }

    def test_temporal_factor(self, spot_event, patterns):
        factors = TemporalFactor().estimate(spot_event, patterns, {})
        assert factors['immediate'] == pytest.approx(1.5 * 1.2)
        assert factors['medium_term'] == pytest.approx(1.2)
        assert factors['long_term'] == 1.0

    def test_temporal_factor_without_history(self, spot_event):
        factors = TemporalFactor().estimate(spot_event, {}, {})
        assert all(value == 1.0 for value in factors.values())

    def test_audience_factor(self, spot_event):
        factors = AudienceFactor().estimate(spot_event, {}, {'audience_index': 1.3})
        assert set(factors) == set(WINDOW_KEYS)
        assert factors['short_term'] == 1.3

    def test_timing_quality(self, spot_event, patterns):
        assert TimingQuality().score(spot_event, patterns, {}) == 1.0
        assert TimingQuality(default=0.7).score(spot_event, {}, {}) == 0.7

    def test_default_estimators(self):
        estimators = default_estimators(resolve_config(None))
        assert set(estimators.factors) == {'temporal', 'audience', 'content', 'market'}
        assert estimators.content_quality.score(None, {}, {}) == 0.8
        assert estimators.audience_match.score(None, {}, {}) == 0.85


class TestRiskHelpers:
    """Risk aggregation and recommendation ordering"""

    def test_overall_risk(self):
        assert overall_risk([]) == 'low'
        assert overall_risk([{'severity': 'medium'}, {'severity': 'critical'}]) == 'critical'

    def test_risk_score(self):
        assert risk_score([]) == 0
        assert risk_score([{'severity': 'critical'}, {'severity': 'medium'}]) == 2.0

    def test_sort_recommendations(self):
        ordered = sort_recommendations([
            {'priority': 'low'}, {'priority': 'critical'}, {'priority': 'medium'}, {'priority': 'high'},
        ])
        assert [r['priority'] for r in ordered] == ['critical', 'high', 'medium', 'low']

    def test_prediction_confidence(self):
        assert prediction_confidence(200, 1.0, 0.0, 0.9) == pytest.approx(0.95)
        assert prediction_confidence(5, 0.0, 1.0, 0.0) == pytest.approx(0.2)
        assert prediction_confidence(0, 0.0, 5.0, 0.0) == 0.1


class TestPredictiveProjector:
    """Test suite for PredictiveProjector class"""

    @pytest.fixture
    def projector(self):
        return PredictiveProjector()

    @pytest.fixture
    def bundle(self, projector, spot_event, historical_samples):
        return projector.generate_predictive_analysis(spot_event, historical_samples)

    def test_bundle_structure(self, bundle, spot_event):
        assert isinstance(bundle, PredictionBundle)
        assert bundle.event_id == spot_event.id
        assert set(bundle.performance['windows']) == set(WINDOW_KEYS)
        assert set(bundle.conversions['funnel']) == set(FUNNEL_STAGES)
        assert 0.1 <= bundle.confidence <= 0.95

    def test_default_lift(self, bundle):
        immediate = bundle.performance['windows']['immediate']
        assert immediate['lift'] == pytest.approx(0.10)
        assert immediate['lift_source'] == 'default'

    def test_long_term_projection(self, bundle):
        long_term = bundle.performance['windows']['long_term']
        base = bundle.performance['average_performance']
        assert long_term['projected'] == pytest.approx(base * 1.1)
        assert long_term['volume'] == pytest.approx(base * 1.1 * 23 * 24)
        assert long_term['incremental'] == pytest.approx(base * 0.1 * 23 * 24)

    def test_temporal_factor_applied(self, bundle):
        factors = bundle.performance['windows']['immediate']['factors']
        # Evening hours are below the daily average
        assert factors['temporal'] < 1.0
        assert factors['content'] == 1.0

    def test_roi_projection(self, bundle):
        roi = bundle.roi
        assert roi['total']['investment'] == 1000.0
        assert roi['total']['revenue'] == pytest.approx(sum(w['revenue'] for w in roi['by_window'].values()))
        assert roi['confidence'] == 0.85
        assert roi['break_even_window'] in (None,) + WINDOW_KEYS

    def test_conversion_projection(self, bundle):
        funnel = bundle.conversions['funnel']
        assert funnel['impressions']['conversion_rate'] == 100.0
        assert funnel['clicks']['conversion_rate'] == pytest.approx(2.0)
        assert funnel['landing']['conversion_rate'] == pytest.approx(90.0)
        assert funnel['engagement']['conversion_rate'] == pytest.approx(60.0)

    def test_optimal_timing(self, bundle):
        timing = bundle.optimal_timing
        best = timing['recommendations']['best_time']
        assert best is not None
        assert 3 <= best['hour'] <= 9
        assert len(timing['recommendations']['alternative_times']) == 3
        assert timing['confidence'] == pytest.approx(0.9)

    def test_recommendations_sorted(self, bundle):
        priorities = [r['priority'] for r in bundle.recommendations]
        order = {'critical': 0, 'high': 1, 'medium': 2, 'low': 3}
        assert priorities == sorted(priorities, key=order.get)
        assert bundle.recommendations[0]['type'] == 'timing' or bundle.recommendations[0]['priority'] == 'critical'

    def test_measured_lift_replaces_default(self, projector, spot_event, historical_samples, observed_samples):
        reference = ReferenceCalculator().compute_reference(spot_event.timestamp, historical_samples)
        impact = TemporalImpactAnalyzer().analyze_temporal_impact(spot_event, observed_samples, reference)

        bundle = projector.generate_predictive_analysis(spot_event, historical_samples, None, impact)
        immediate = bundle.performance['windows']['immediate']

        assert immediate['lift_source'] == 'measured'
        expected = impact['immediate'].impacts['active_users'].percentage_change / 100
        assert immediate['lift'] == pytest.approx(expected)

    def test_market_inputs(self, projector, historical_samples):
        event = EventRecord(id='m', timestamp=datetime(2024, 3, 14, 20), duration_seconds=20)
        market = {'cost_per_second': 50.0, 'expected_lift': 0.25, 'impressions': 1_000_000}
        bundle = projector.generate_predictive_analysis(event, historical_samples, market)

        assert bundle.roi['total']['investment'] == 1000.0
        assert bundle.performance['windows']['long_term']['lift_source'] == 'market'
        assert bundle.conversions['funnel']['impressions']['predicted'] == 1_000_000

    def test_no_investment(self, projector, historical_samples):
        event = EventRecord(id='n', timestamp=datetime(2024, 3, 14, 20))
        bundle = projector.generate_predictive_analysis(event, historical_samples)
        assert bundle.roi['total']['roi'] == 0
        assert bundle.roi['confidence'] == 0.3
        assert bundle.roi['break_even_window'] == 'immediate'

    def test_negative_roi_risk(self, projector, spot_event, historical_samples):
        expensive = EventRecord(id='x', timestamp=spot_event.timestamp, investment=1e9)
        bundle = projector.generate_predictive_analysis(expensive, historical_samples)
        risk_types = [risk['type'] for risk in bundle.risk_analysis['risks']]

        assert 'negative_roi' in risk_types
        assert bundle.risk_analysis['overall_risk'] == 'critical'
        assert bundle.recommendations[0]['priority'] == 'critical'

    def test_empty_history(self, projector, spot_event):
        bundle = projector.generate_predictive_analysis(spot_event, [])

        assert bundle.performance['confidence'] == 0.1
        assert bundle.optimal_timing['recommendations']['best_time'] is None
        assert bundle.optimal_timing['confidence'] == pytest.approx(0.1)
        assert bundle.data_quality['score'] == 0
        assert 0.1 <= bundle.confidence <= 0.95

    def test_string_timestamp(self, projector, historical_samples):
        event = EventRecord(id='s', timestamp='2024-03-14T20:00:00')
        bundle = projector.project(event, historical_samples)
        assert bundle.event_id == 's'

    def test_missing_timestamp(self, projector):
        with pytest.raises(ConfigurationError):
            projector.generate_predictive_analysis(EventRecord(id='z', timestamp=None), [])

    def test_custom_estimators(self, spot_event, historical_samples):
        estimators = EstimatorSet(
            temporal=ConstantFactor(1.0),
            audience=ConstantFactor(1.0),
            content=ConstantFactor(1.2),
            market=ConstantFactor(1.0),
            content_quality=ConstantScore(1.0),
            timing_quality=ConstantScore(1.0),
            audience_match=ConstantScore(1.0),
        )
        projector = PredictiveProjector(estimators=estimators)
        bundle = projector.generate_predictive_analysis(spot_event, historical_samples)
        immediate = bundle.performance['windows']['immediate']

        assert immediate['factors']['content'] == 1.2
        assert immediate['projected'] == pytest.approx(bundle.performance['average_performance'] * 1.1 * 1.2)
        assert bundle.engagement['quality']['timing_quality'] == 1.0
