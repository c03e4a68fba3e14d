"""
Predictive Analysis
Projects an event's measured effect forward into performance, ROI,
engagement, conversions, timing and risk

Pipeline (per event):
1. Extract historical patterns
2. Base performance per window from the patterns
3. Apply the temporal / audience / content / market adjustment factors
4. Project ROI per window and in total against the investment
5. Project engagement per window category
6. Project the conversion funnel from predicted counts
7. Recommend optimal timing and broadcast frequency
8. Analyse downside risks
9. Emit recommendations sorted by priority
"""

import dataclasses
from typing import Any, Dict, List, Mapping, Optional

from .config import resolve_config
from .data_pipeline import TelemetryInput, normalize_timestamp
from .estimators import EstimatorSet, default_estimators
from .exceptions import ConfigurationError
from .financial_analysis import break_even_window, calculate_roi, payback_ratio
from .historical_patterns import WEEKDAY_NAMES, HistoricalPatternAnalyzer
from .logging_config import get_logger
from .types import (
    FUNNEL_STAGES,
    TIME_WINDOWS,
    VALIDATION_ACCEPTED,
    VALIDATION_INSUFFICIENT,
    WINDOW_KEYS,
    EventRecord,
    ImpactMap,
    PredictionBundle,
    Recommendation,
    Risk,
    RiskAnalysis,
)
from .validation import AnomalyGate, validated_by

logger = get_logger("spot_impact.predictive_analysis")


PRIORITY_ORDER = {'critical': 0, 'high': 1, 'medium': 2, 'low': 3}
SEVERITY_SCORES = {'critical': 3, 'high': 2, 'medium': 1, 'low': 0}


def overall_risk(risks: List[Risk]) -> str:
    """Highest severity present, ``low`` when there are no risks"""
    for severity in ('critical', 'high', 'medium'):
        if any(risk['severity'] == severity for risk in risks):
            return severity
    return 'low'


def risk_score(risks: List[Risk]) -> float:
    """Mean severity score (critical=3 ... low=0); 0 without risks"""
    if not risks:
        return 0.0
    return sum(SEVERITY_SCORES[risk['severity']] for risk in risks) / len(risks)


def sort_recommendations(recommendations: List[Recommendation]) -> List[Recommendation]:
    return sorted(recommendations, key=lambda r: PRIORITY_ORDER.get(r.get('priority', 'low'), 3))


def prediction_confidence(
    data_points: int,
    consistency: float,
    variability: float,
    roi_confidence: float,
) -> float:
    """
    Overall confidence in [0.1, 0.95]

    Starts at 0.5 and adjusts for history size, consistency of daily
    totals, variability of the primary metric and ROI confidence.
    """
    confidence = 0.5

    if data_points > 100:
        confidence += 0.2
    elif data_points > 50:
        confidence += 0.1
    elif data_points < 10:
        confidence -= 0.2

    confidence += consistency * 0.15
    confidence -= variability * 0.1

    if roi_confidence > 0.8:
        confidence += 0.1

    return max(0.1, min(0.95, confidence))


def _clamp(value: float, bounds) -> float:
    low, high = bounds
    return min(high, max(low, value))


def _timing_label(day: int, hour: int) -> str:
    return f"{WEEKDAY_NAMES[day]} {hour:02d}:00"


class PredictiveProjector:
    """
    Predictive Projector

    ``generate_predictive_analysis`` (alias ``project``) is the pure
    projection composed with the gate's prediction validator.
    """

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        gate: Optional[AnomalyGate] = None,
        estimators: Optional[EstimatorSet] = None,
        pattern_analyzer: Optional[HistoricalPatternAnalyzer] = None,
    ):
        self.config = resolve_config(config)
        self.prediction_cfg = self.config['prediction']
        self.conversion_cfg = self.config['conversion']
        self.primary_metric = self.prediction_cfg['primary_metric']

        self.gate = gate or AnomalyGate(self.config)
        self.estimators = estimators or default_estimators(self.config)
        self.pattern_analyzer = pattern_analyzer or HistoricalPatternAnalyzer(self.config)

        self.generate_predictive_analysis = validated_by(self.gate.validate_prediction)(self._project_core)
        self.project = self.generate_predictive_analysis

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def resolve_investment(self, event: EventRecord, market_data: Mapping[str, Any]) -> float:
        """Event investment, else market investment, else cost per second x duration, else 0"""
        if event.investment is not None:
            return float(event.investment)
        if market_data.get('investment') is not None:
            return float(market_data['investment'])
        if market_data.get('cost_per_second') is not None:
            return float(market_data['cost_per_second']) * float(event.duration_seconds or 0)
        return 0.0

    def resolve_lift(
        self,
        window: str,
        market_data: Mapping[str, Any],
        temporal_impact: Optional[ImpactMap],
    ) -> Dict[str, Any]:
        """Per-window lift: measured impact, else expected market lift, else default"""
        if temporal_impact and window in temporal_impact:
            analysis = temporal_impact[window]
            impact = analysis.impacts.get(self.primary_metric)
            if (
                impact is not None
                and impact.validation == VALIDATION_ACCEPTED
                and analysis.validation != VALIDATION_INSUFFICIENT
            ):
                return {'lift': impact.percentage_change / 100, 'source': 'measured'}

        if market_data.get('expected_lift') is not None:
            return {'lift': float(market_data['expected_lift']), 'source': 'market'}

        return {'lift': float(self.prediction_cfg['default_expected_lift']), 'source': 'default'}

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------

    def predict_performance(
        self,
        event: EventRecord,
        patterns: Mapping[str, Any],
        market_data: Mapping[str, Any],
        temporal_impact: Optional[ImpactMap] = None,
    ) -> Dict[str, Any]:
        """
        Projected primary-metric performance per window

        ``projected`` is per sample, ``volume`` the total over the
        window's disjoint segment and ``incremental`` the volume above
        the no-spot baseline.
        """
        base = float(patterns['average_performance'])
        interval = patterns['sample_interval_seconds'] or 3600.0
        bounds = self.prediction_cfg['factor_bounds']

        estimates = {
            name: estimator.estimate(event, patterns, market_data)
            for name, estimator in self.estimators.factors.items()
        }

        windows = {}
        for key, spec in TIME_WINDOWS.items():
            factors = {name: _clamp(estimates[name].get(key, 1.0), bounds[name]) for name in estimates}
            combined = 1.0
            for value in factors.values():
                combined *= value

            lift = self.resolve_lift(key, market_data, temporal_impact)
            projected = base * (1 + lift['lift']) * combined
            buckets = (spec.duration - spec.segment_start).total_seconds() / interval

            windows[key] = {
                'baseline': base,
                'projected': max(0.0, projected),
                'volume': max(0.0, projected) * buckets,
                'incremental': max(0.0, projected) * buckets - base * buckets,
                'lift': lift['lift'],
                'lift_source': lift['source'],
                'factors': factors,
            }

        points = patterns['data_points']
        if points:
            confidence = 0.5 + 0.3 * patterns['consistency'] + 0.15 * min(1.0, points / 100)
        else:
            confidence = 0.1

        return {
            'windows': windows,
            'average_performance': base,
            'confidence': max(0.1, min(0.95, confidence)),
        }

    def predict_roi(
        self,
        event: EventRecord,
        performance: Mapping[str, Any],
        patterns: Mapping[str, Any],
        market_data: Mapping[str, Any],
    ) -> Dict[str, Any]:
        """
        Projected revenue and ROI per window and in total

        Incremental users become sessions; sessions are valued through
        the historical conversion rate, or per session when the history
        has no conversions.
        """
        investment = self.resolve_investment(event, market_data)
        ratios = patterns['ratios']
        sessions_per_user = ratios['sessions_per_user'] or 1.0

        by_window = {}
        revenue_by_window = {}
        for key, projection in performance['windows'].items():
            sessions = max(0.0, projection['incremental']) * sessions_per_user
            if ratios['conversion_rate'] > 0:
                revenue = sessions * ratios['conversion_rate'] * self.conversion_cfg['value_per_conversion']
            else:
                revenue = sessions * self.conversion_cfg['value_per_session']

            revenue_by_window[key] = revenue
            by_window[key] = {
                'revenue': revenue,
                'investment': investment,
                'roi': calculate_roi(revenue, investment)['roi'],
                'payback_ratio': payback_ratio(revenue, investment),
            }

        total = calculate_roi(sum(revenue_by_window.values()), investment)

        if investment <= 0:
            confidence = 0.3
        elif ratios['conversion_rate'] > 0:
            confidence = 0.85
        else:
            confidence = 0.6

        return {
            'by_window': by_window,
            'total': {
                'revenue': total['revenue'],
                'investment': investment,
                'roi': total['roi'],
                'roas': total['roas'],
                'profit': total['profit'],
            },
            'break_even_window': break_even_window(revenue_by_window, investment, WINDOW_KEYS),
            'confidence': confidence,
        }

    def predict_engagement(
        self,
        event: EventRecord,
        performance: Mapping[str, Any],
        patterns: Mapping[str, Any],
        market_data: Mapping[str, Any],
        data_quality: Mapping[str, float],
    ) -> Dict[str, Any]:
        """Engaged users per window category scaled by the quality scores"""
        content_quality = self.estimators.content_quality.score(event, patterns, market_data)
        timing_quality = self.estimators.timing_quality.score(event, patterns, market_data)
        audience_match = self.estimators.audience_match.score(event, patterns, market_data)
        engagement_rate = patterns['ratios']['engagement_rate']

        by_category = {}
        for key, projection in performance['windows'].items():
            base = projection['volume'] * engagement_rate
            by_category[key] = {
                'base': base,
                'predicted': base * content_quality * timing_quality * audience_match,
            }

        return {
            'by_category': by_category,
            'total': sum(block['predicted'] for block in by_category.values()),
            'quality': {
                'content_quality': content_quality,
                'timing_quality': timing_quality,
                'audience_match': audience_match,
            },
            'confidence': (performance['confidence'] + data_quality.get('score', 0.0)) / 2,
        }

    def predict_conversions(
        self,
        performance: Mapping[str, Any],
        patterns: Mapping[str, Any],
        market_data: Mapping[str, Any],
    ) -> Dict[str, Any]:
        """Funnel counts implied by the projected audience"""
        ratios = patterns['ratios']
        users = sum(projection['volume'] for projection in performance['windows'].values())

        landing = users * (ratios['sessions_per_user'] or 1.0)
        clicks = landing / self.conversion_cfg['default_landing_rate']
        if market_data.get('impressions') is not None:
            impressions = float(market_data['impressions'])
        else:
            impressions = clicks / self.conversion_cfg['default_ctr']

        counts = {
            'impressions': impressions,
            'clicks': clicks,
            'landing': landing,
            'engagement': landing * ratios['engagement_rate'],
            'conversion': landing * ratios['conversion_rate'],
        }

        stage_confidence = self.conversion_cfg['stage_confidence']
        funnel = {}
        rates = {}
        previous = None
        for stage in FUNNEL_STAGES:
            count = counts[stage]
            if previous is None:
                rate = 100.0 if count > 0 else 0.0
            else:
                rate = count / counts[previous] * 100 if counts[previous] > 0 else 0.0
                rates[f'{previous}_to_{stage}'] = rate
            funnel[stage] = {
                'predicted': count,
                'conversion_rate': rate,
                'confidence': float(stage_confidence[stage]),
            }
            previous = stage

        mean_confidence = sum(block['confidence'] for block in funnel.values()) / len(funnel)
        history_weight = 1.0 if patterns['data_points'] else 0.5

        return {
            'funnel': funnel,
            'rates': rates,
            'total_conversions': counts['conversion'],
            'conversion_value': counts['conversion'] * self.conversion_cfg['value_per_conversion'],
            'confidence': mean_confidence * history_weight,
        }

    def predict_optimal_timing(self, patterns: Mapping[str, Any]) -> Dict[str, Any]:
        """Best, alternative and worst weekday/hour slots from the history"""
        tables = patterns.get('patterns') or {}
        slots = [
            {'day': day, 'hour': hour, 'label': _timing_label(day, hour), 'score': score}
            for day, hours in (patterns.get('day_hour') or {}).items()
            for hour, score in hours.items()
        ]
        ranked = sorted(slots, key=lambda s: (-s['score'], s['day'], s['hour']))

        frequency = int(self.prediction_cfg['default_frequency_per_week'])
        if (patterns.get('trend') or {}).get('direction') == 'decreasing':
            frequency += 1

        return {
            'predictions': {
                'hourly': dict(tables.get('hourly') or {}),
                'daily': dict(tables.get('daily') or {}),
                'weekly': dict(tables.get('weekly') or {}),
                'seasonal': dict(tables.get('monthly') or {}),
            },
            'recommendations': {
                'best_time': ranked[0] if ranked else None,
                'alternative_times': ranked[1:4],
                'worst_time': ranked[-1] if len(ranked) > 1 else None,
                'frequency': {'per_week': frequency, 'label': f"{frequency} times per week"},
            },
            'confidence': 0.1 + 0.8 * min(1.0, len(slots) / 168),
        }

    def analyze_risks(
        self,
        performance: Mapping[str, Any],
        roi: Mapping[str, Any],
        patterns: Mapping[str, Any],
    ) -> RiskAnalysis:
        risks: List[Risk] = []
        average = patterns['average_performance']

        if average > 0 and performance['windows']['immediate']['projected'] < 0.7 * average:
            risks.append(Risk(
                type='low_performance',
                severity='high',
                description='Projected performance is below the historical average',
                mitigation='Consider adjusting content or timing',
            ))

        if roi['total']['roi'] < 0:
            risks.append(Risk(
                type='negative_roi',
                severity='critical',
                description='Projected ROI is negative',
                mitigation='Review investment strategy and targeting',
            ))

        variability = float(patterns['variability'])
        if variability > 0.5:
            risks.append(Risk(
                type='high_variability',
                severity='medium',
                description='Historical traffic is highly variable',
                mitigation='Consider diversifying the broadcast strategy',
            ))

        return RiskAnalysis(
            risks=risks,
            overall_risk=overall_risk(risks),
            risk_score=risk_score(risks),
            variability=variability,
        )

    def generate_recommendations(
        self,
        performance: Mapping[str, Any],
        roi: Mapping[str, Any],
        optimal_timing: Mapping[str, Any],
        risk_analysis: RiskAnalysis,
        data_quality: Mapping[str, float],
    ) -> List[Recommendation]:
        recommendations: List[Recommendation] = []

        best = optimal_timing['recommendations']['best_time']
        if best:
            recommendations.append(Recommendation(
                type='timing',
                priority='high',
                title='Optimal timing identified',
                description=f"The best slot to broadcast the spot is {best['label']}",
                impact='high',
                effort='low',
            ))

        if roi['total']['roi'] > 200:
            recommendations.append(Recommendation(
                type='roi',
                priority='high',
                title='Exceptional ROI projected',
                description=f"Projected ROI of {roi['total']['roi']:.1f}%",
                impact='high',
                effort='low',
            ))

        for risk in risk_analysis['risks']:
            recommendations.append(Recommendation(
                type='risk_mitigation',
                priority=risk['severity'],
                title=f"Risk: {risk['type']}",
                description=risk['description'],
                mitigation=risk['mitigation'],
                impact='high' if risk['severity'] == 'critical' else 'medium',
                effort='medium',
            ))

        if performance['confidence'] < 0.7:
            recommendations.append(Recommendation(
                type='optimization',
                priority='medium',
                title='Improve data quality',
                description='Prediction confidence is low. Collect more historical data.',
                impact='medium',
                effort='high',
            ))

        if data_quality.get('score', 0.0) < 0.5:
            recommendations.append(Recommendation(
                type='data_quality',
                priority='low',
                title='Incomplete history',
                description='The historical series has gaps or anomalies; treat projections with caution.',
                impact='medium',
                effort='medium',
            ))

        return sort_recommendations(recommendations)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _project_core(
        self,
        event: EventRecord,
        historical_data: TelemetryInput,
        market_data: Optional[Mapping[str, Any]] = None,
        temporal_impact: Optional[ImpactMap] = None,
    ) -> PredictionBundle:
        """
        Full forward projection for one event

        Args:
            event: The broadcast spot
            historical_data: Historical telemetry
            market_data: Optional market inputs (investment,
                cost_per_second, expected_lift, audience_index, impressions)
            temporal_impact: Optional measured impact map whose accepted
                primary-metric changes replace the expected lift

        Raises:
            ConfigurationError: If the event has no usable timestamp
        """
        ts = normalize_timestamp(event.timestamp)
        if ts is None:
            raise ConfigurationError(f"Event {event.id} has no timestamp", field='timestamp')
        event = dataclasses.replace(event, timestamp=ts)

        market_data = market_data or {}
        patterns = self.pattern_analyzer.analyze(historical_data)
        data_quality = self.pattern_analyzer.assess_data_quality(patterns)

        performance = self.predict_performance(event, patterns, market_data, temporal_impact)
        roi = self.predict_roi(event, performance, patterns, market_data)
        engagement = self.predict_engagement(event, performance, patterns, market_data, data_quality)
        conversions = self.predict_conversions(performance, patterns, market_data)
        optimal_timing = self.predict_optimal_timing(patterns)
        risk_analysis = self.analyze_risks(performance, roi, patterns)
        recommendations = self.generate_recommendations(
            performance, roi, optimal_timing, risk_analysis, data_quality
        )

        confidence = prediction_confidence(
            data_points=patterns['data_points'],
            consistency=patterns['consistency'],
            variability=risk_analysis['variability'],
            roi_confidence=roi['confidence'],
        )

        logger.info(
            f"{event.id}: projected ROI {roi['total']['roi']:.1f}%, "
            f"risk {risk_analysis['overall_risk']}, confidence {confidence:.2f}"
        )

        return PredictionBundle(
            event_id=event.id,
            performance=performance,
            roi=roi,
            engagement=engagement,
            conversions=conversions,
            optimal_timing=optimal_timing,
            risk_analysis=risk_analysis,
            recommendations=recommendations,
            confidence=confidence,
            historical_patterns=patterns,
            data_quality=data_quality,
        )
