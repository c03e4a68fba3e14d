"""
Unit Tests for Conversion Funnel Analysis
"""

import pandas as pd
import pytest

from spot_impact.conversion_analysis import (
    ConversionAnalyzer,
    conversion_rows,
    percentage_delta,
    stage_metrics_from_reference,
    stage_metrics_from_rows,
)
from spot_impact.types import FUNNEL_STAGES, METRIC_NAMES, WINDOW_KEYS, EventRecord, ReferenceStatistic, StageMetrics


class TestStageMetrics:
    """Per-stage metric extraction"""

    def test_counts_summed_per_stage(self, conversion_rows):
        metrics = stage_metrics_from_rows(conversion_rows)

        assert metrics['impressions'].count == 10000
        assert metrics['clicks'].count == 400
        assert metrics['landing'].count == 360
        assert metrics['engagement'].count == 216
        assert metrics['conversion'].count == 18

    def test_rate_and_revenue(self, conversion_rows):
        metrics = stage_metrics_from_rows(conversion_rows)
        assert metrics['conversion'].rate == pytest.approx(4.5)
        assert metrics['conversion'].revenue == pytest.approx(900.0)

    def test_no_rows(self):
        metrics = stage_metrics_from_rows([])
        assert all(m == StageMetrics() for m in metrics.values())

    def test_non_numeric_values_count_as_zero(self):
        metrics = stage_metrics_from_rows([{'impressions': 'n/a', 'clicks': None, 'conversions': float('nan')}])
        assert metrics['impressions'].count == 0
        assert metrics['clicks'].count == 0
        assert metrics['conversion'].count == 0

    def test_conversion_rows_containers(self, conversion_rows):
        assert conversion_rows_count(pd.DataFrame(conversion_rows)) == 2
        assert conversion_rows_count({'rows': conversion_rows}) == 2
        assert conversion_rows_count(None) == 0

    def test_from_reference_map(self):
        stats = {metric: ReferenceStatistic(mean=0, median=0, std_dev=0, confidence=80, sample_size=10)
                 for metric in METRIC_NAMES}
        stats['sessions'] = ReferenceStatistic(mean=200, median=200, std_dev=5, confidence=80, sample_size=10)
        stats['bounce_rate'] = ReferenceStatistic(mean=40, median=40, std_dev=1, confidence=80, sample_size=10)
        stats['conversion_rate'] = ReferenceStatistic(mean=2, median=2, std_dev=0.1, confidence=80, sample_size=10)
        reference = {window: stats for window in WINDOW_KEYS}

        metrics = stage_metrics_from_reference(reference)
        assert metrics['impressions'].count == 0
        assert metrics['clicks'].count == 0
        assert metrics['landing'].count == 200
        assert metrics['engagement'].count == pytest.approx(120)
        assert metrics['conversion'].count == pytest.approx(4)
        assert metrics['conversion'].rate == 2

    def test_percentage_delta(self):
        assert percentage_delta(150, 100) == 50
        assert percentage_delta(150, 0) == 0


def conversion_rows_count(data):
    return len(conversion_rows(data))


class TestConversionAnalyzer:
    """Test suite for ConversionAnalyzer class"""

    @pytest.fixture
    def analyzer(self):
        return ConversionAnalyzer()

    @pytest.fixture
    def funnel(self, analyzer, spot_event, conversion_rows):
        return analyzer.analyze_funnel(spot_event, conversion_rows)

    def test_stages_in_order(self, funnel):
        assert list(funnel.stages) == list(FUNNEL_STAGES)

    def test_first_stage_has_no_drop_off(self, funnel):
        assert funnel.stages['impressions'].drop_off_rate == 0

    def test_drop_off_rates(self, funnel):
        assert funnel.stages['clicks'].drop_off_rate == pytest.approx(96.0)
        assert funnel.stages['landing'].drop_off_rate == pytest.approx(10.0)
        assert funnel.stages['engagement'].drop_off_rate == pytest.approx(40.0)
        assert funnel.stages['conversion'].drop_off_rate == pytest.approx(100 * 198 / 216)

    def test_conversion_rates(self, funnel):
        assert funnel.conversion_rates['impressions_to_clicks'] == pytest.approx(4.0)
        assert funnel.conversion_rates['clicks_to_landing'] == pytest.approx(90.0)
        assert funnel.conversion_rates['landing_to_engagement'] == pytest.approx(60.0)
        assert funnel.conversion_rates['engagement_to_conversion'] == pytest.approx(100 * 18 / 216)

    def test_drop_off_analysis(self, funnel):
        analysis = funnel.drop_off_analysis
        assert analysis['biggest_drop']['stage'] == 'clicks'
        assert analysis['total_drop_off'] == pytest.approx(99.82)
        assert len(analysis['recommendations']) == 2

    def test_funnel_roi(self, funnel):
        assert funnel.roi['revenue'] == pytest.approx(900.0)
        assert funnel.roi['cost'] == 1000.0
        assert funnel.roi['roi'] == pytest.approx(-10.0)
        assert funnel.roi['roas'] == pytest.approx(0.9)

    def test_without_reference(self, funnel):
        stage = funnel.stages['clicks']
        assert stage.reference_metrics == StageMetrics()
        assert stage.impact.count_change == 0
        assert stage.impact.absolute_count_change == 400
        assert stage.recommendations[0].startswith('No reference data')

    def test_confidence_bounds(self, funnel):
        for stage in funnel.stages.values():
            assert 10 <= stage.confidence <= 95

    def test_stage_confidence_formula(self, analyzer):
        spot = StageMetrics(count=80, rate=5.0)
        reference = StageMetrics(count=50, rate=4.0)
        # 0.5 * 40 + 0.9 * 40 + 20
        assert analyzer.stage_confidence(spot, reference) == 76

    def test_no_investment_means_zero_roi(self, analyzer, conversion_rows):
        funnel = analyzer.analyze_funnel(EventRecord(id='free', timestamp=None), conversion_rows)
        assert funnel.roi['roi'] == 0
        assert funnel.roi['roas'] == 0

    def test_empty_conversion_data(self, analyzer, spot_event):
        funnel = analyzer.analyze_funnel(spot_event, None)
        assert all(stage.metrics.count == 0 for stage in funnel.stages.values())
        assert all(stage.drop_off_rate == 0 for stage in funnel.stages.values())
        assert funnel.drop_off_analysis['total_drop_off'] == 0
        assert funnel.flags == ()

    def test_with_reference_rows(self, analyzer, spot_event, conversion_rows, control_rows):
        funnel = analyzer.analyze_funnel(spot_event, conversion_rows, control_rows)
        impressions = funnel.stages['impressions']
        assert impressions.impact.count_change == pytest.approx(25.0)
        assert impressions.impact.revenue_change == pytest.approx(200.0)
        assert impressions.reference_metrics.count == 8000

    def test_alias(self, analyzer):
        assert analyzer.analyze_conversion_funnel is analyzer.analyze_funnel

    def test_impossible_funnel_is_flagged(self, analyzer, spot_event):
        rows = [{'impressions': 100, 'clicks': 150, 'landingPageViews': 100,
                 'engagedSessions': 50, 'conversions': 5, 'conversionRate': 3.0}]
        funnel = analyzer.analyze_funnel(spot_event, rows)

        fields = [flag.field for flag in funnel.flags]
        assert 'stages.clicks.drop_off_rate' in fields
        assert 'conversion_rates.impressions_to_clicks' in fields
        assert funnel.stages['clicks'].drop_off_rate == 0
        assert funnel.conversion_rates['impressions_to_clicks'] == 0


class TestControlGroups:
    """Spot funnel against a control group"""

    @pytest.fixture
    def analyzer(self):
        return ConversionAnalyzer()

    @pytest.fixture
    def analysis(self, analyzer, spot_event, conversion_rows, control_rows):
        return analyzer.analyze_control_groups(spot_event, conversion_rows, control_rows)

    def test_lift_per_stage(self, analysis):
        assert analysis.comparison['impressions'].lift == pytest.approx(25.0)
        assert analysis.comparison['clicks'].lift == pytest.approx(100.0)
        assert analysis.comparison['conversion'].lift == pytest.approx(200.0)
        assert analysis.comparison['conversion'].revenue_lift == pytest.approx(200.0)

    def test_both_funnels_present(self, analysis):
        assert analysis.spot.stages['clicks'].metrics.count == 400
        assert analysis.control.stages['clicks'].metrics.count == 200
        assert analysis.control.stages['impressions'].drop_off_rate == 0

    def test_recommendations(self, analysis):
        assert any('Strong lift in clicks' in rec for rec in analysis.recommendations)

    def test_significance_applied(self, analysis):
        significance = analysis.comparison['conversion'].significance
        assert 0 <= significance.p_value <= 1
        assert significance.effect_size in ('trivial', 'small', 'medium', 'large')

    def test_compare_control_groups(self, analyzer, spot_event, conversion_rows, control_rows):
        spot = analyzer.analyze_funnel(spot_event, conversion_rows)
        control = analyzer.analyze_funnel(spot_event, control_rows)
        comparison = analyzer.compare_control_groups(spot, control)
        assert set(comparison) == set(FUNNEL_STAGES)
        assert comparison['landing'].lift == pytest.approx(100 * 190 / 170)

    def test_empty_control_group(self, analyzer, spot_event, conversion_rows):
        analysis = analyzer.analyze_control_groups(spot_event, conversion_rows, [])
        assert all(data.lift == 0 for data in analysis.comparison.values())
        assert analysis.recommendations[0].startswith('Configure a control group')
