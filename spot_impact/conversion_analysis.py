"""
Conversion Funnel Analysis
Runs an event's conversions through the five-stage funnel

Stages: impressions -> clicks -> landing -> engagement -> conversion

This module:
- Computes spot and reference metrics (count, rate, revenue) per stage
- Measures per-stage impact and runs the two-proportion Z-test
- Computes drop-off, inter-stage conversion rates and funnel ROI / ROAS
- Compares a spot funnel against a control group
"""

import math
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

import pandas as pd

from .config import resolve_config
from .financial_analysis import calculate_roi
from .logging_config import get_logger
from .significance import SignificanceEngine
from .types import (
    FUNNEL_STAGES,
    ControlGroupAnalysis,
    EventRecord,
    FunnelAnalysis,
    FunnelStage,
    ReferenceMap,
    ReferenceStatistic,
    StageComparison,
    StageImpact,
    StageMetrics,
)
from .validation import AnomalyGate, round_half_up, validated_by

logger = get_logger("spot_impact.conversion_analysis")


# Conversion row key holding each stage's count
STAGE_COUNT_KEYS = {
    'impressions': 'impressions',
    'clicks': 'clicks',
    'landing': 'landingPageViews',
    'engagement': 'engagedSessions',
    'conversion': 'conversions',
}

ConversionInput = Union[None, pd.DataFrame, Mapping[str, Any], Sequence[Mapping[str, Any]]]


def _number(value: Any) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


def conversion_rows(conversion_data: ConversionInput) -> List[Mapping[str, Any]]:
    """Rows of a conversion report as plain mappings"""
    if conversion_data is None:
        return []
    if isinstance(conversion_data, pd.DataFrame):
        return conversion_data.to_dict('records')
    if isinstance(conversion_data, Mapping):
        return list(conversion_data.get('rows') or [])
    return list(conversion_data)


def stage_metrics_from_rows(rows: Sequence[Mapping[str, Any]]) -> Dict[str, StageMetrics]:
    """
    Per-stage metrics from conversion rows

    Counts are summed per stage key, the rate is the mean reported
    ``conversionRate`` and revenue is the summed ``purchaseRevenue``.
    Missing keys count as 0.
    """
    if not rows:
        return {stage: StageMetrics() for stage in FUNNEL_STAGES}

    rate = sum(_number(row.get('conversionRate')) for row in rows) / len(rows)
    revenue = sum(_number(row.get('purchaseRevenue')) for row in rows)

    return {
        stage: StageMetrics(
            count=sum(_number(row.get(key)) for row in rows),
            rate=rate,
            revenue=revenue,
        )
        for stage, key in STAGE_COUNT_KEYS.items()
    }


def stage_metrics_from_reference(reference: ReferenceMap, window: str = 'immediate') -> Dict[str, StageMetrics]:
    """
    Reference stage metrics derived from a temporal reference map

    Only on-site stages can be derived from web telemetry; impressions
    and clicks stay at 0.
    """
    stats = reference.get(window) or {}
    empty = ReferenceStatistic.empty()
    sessions = stats.get('sessions', empty).mean
    bounce_rate = stats.get('bounce_rate', empty).mean
    conversion_rate = stats.get('conversion_rate', empty).mean

    metrics = {stage: StageMetrics(rate=conversion_rate) for stage in FUNNEL_STAGES}
    metrics['impressions'] = StageMetrics()
    metrics['clicks'] = StageMetrics()
    metrics['landing'] = StageMetrics(count=sessions, rate=conversion_rate)
    metrics['engagement'] = StageMetrics(count=sessions * (1 - bounce_rate / 100), rate=conversion_rate)
    metrics['conversion'] = StageMetrics(count=sessions * conversion_rate / 100, rate=conversion_rate)
    return metrics


def _is_reference_map(data: Any) -> bool:
    if not isinstance(data, Mapping) or not data:
        return False
    first = next(iter(data.values()))
    return isinstance(first, Mapping) and any(isinstance(v, ReferenceStatistic) for v in first.values())


def percentage_delta(current: float, reference: float) -> float:
    """Percentage change against ``reference`` (0 when it is not positive)"""
    return (current - reference) / reference * 100 if reference > 0 else 0.0


class ConversionAnalyzer:
    """Funnel/Conversion Analyzer"""

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        gate: Optional[AnomalyGate] = None,
        significance: Optional[SignificanceEngine] = None,
    ):
        self.config = resolve_config(config)
        self.gate = gate or AnomalyGate(self.config)
        self.significance = significance or SignificanceEngine(self.config)

        self.analyze_funnel = validated_by(self.gate.validate_funnel)(self._analyze_funnel_core)
        self.analyze_conversion_funnel = self.analyze_funnel
        self.analyze_control_groups = validated_by(self.gate.validate_control_groups)(
            self._analyze_control_groups_core
        )

    def reference_stage_metrics(self, reference: Any) -> Dict[str, StageMetrics]:
        """Reference metrics from conversion rows or a temporal reference map"""
        if reference is None:
            return {stage: StageMetrics() for stage in FUNNEL_STAGES}
        if _is_reference_map(reference):
            return stage_metrics_from_reference(reference)
        return stage_metrics_from_rows(conversion_rows(reference))

    def stage_impact(self, spot: StageMetrics, reference: StageMetrics) -> StageImpact:
        return StageImpact(
            count_change=percentage_delta(spot.count, reference.count),
            revenue_change=percentage_delta(spot.revenue, reference.revenue),
            absolute_count_change=spot.count - reference.count,
            absolute_revenue_change=spot.revenue - reference.revenue,
        )

    def stage_confidence(self, spot: StageMetrics, reference: StageMetrics) -> float:
        """Confidence (10-95) from shared sample size and rate stability"""
        sample_size = min(spot.count, reference.count)
        variability = abs(spot.rate - reference.rate)

        confidence = (
            (sample_size / 100) * 40
            + (1 - variability / 10) * 40
            + (20 if spot.count > reference.count else 10)
        )
        return float(round_half_up(min(95.0, max(10.0, confidence))))

    @staticmethod
    def drop_off_rate(previous_count: Optional[float], count: float) -> float:
        """Share of the previous stage lost at this stage; 0 for the first stage"""
        if not previous_count:
            return 0.0
        return (previous_count - count) / previous_count * 100

    def stage_recommendations(self, stage: str, impact: StageImpact, significance) -> List[str]:
        if impact.count_change == 0 and impact.revenue_change == 0:
            return [f"No reference data for {stage}; connect an analytics source for tailored recommendations."]

        recommendations = []
        if impact.count_change > 20:
            recommendations.append(f"Strong performance in {stage}. Consider replicating this strategy.")
        elif impact.count_change < -10:
            recommendations.append(f"Weak performance in {stage}. Review targeting and creatives.")

        if significance.is_significant:
            recommendations.append(f"Statistically significant impact (p={significance.p_value:.3f}).")
        else:
            recommendations.append("Impact not significant. Consider increasing the sample size.")

        if stage == 'conversion' and impact.revenue_change > 15:
            recommendations.append("High conversion revenue. Consider increasing investment in this channel.")

        return recommendations

    def calculate_conversion_rates(self, stages: Mapping[str, FunnelStage]) -> Dict[str, float]:
        """``<previous>_to_<current>`` conversion rates in percent"""
        rates = {}
        for previous, current in zip(FUNNEL_STAGES, FUNNEL_STAGES[1:]):
            previous_count = stages[previous].metrics.count
            current_count = stages[current].metrics.count
            rates[f'{previous}_to_{current}'] = current_count / previous_count * 100 if previous_count > 0 else 0.0
        return rates

    def analyze_drop_off(self, stages: Mapping[str, FunnelStage]) -> Dict[str, Any]:
        biggest_stage, biggest_rate = '', 0.0
        for stage in FUNNEL_STAGES[1:]:
            rate = stages[stage].drop_off_rate
            if rate > biggest_rate:
                biggest_stage, biggest_rate = stage, rate

        initial = stages[FUNNEL_STAGES[0]].metrics.count
        final = stages[FUNNEL_STAGES[-1]].metrics.count
        total = (initial - final) / initial * 100 if initial > 0 else 0.0

        recommendations = []
        if biggest_rate > 50:
            recommendations.append(f"High drop-off at {biggest_stage}. Optimise this funnel stage.")
        if total > 80:
            recommendations.append("Very high total drop-off. Review the end-to-end user experience.")

        return {
            'biggest_drop': {'stage': biggest_stage, 'rate': biggest_rate},
            'total_drop_off': total,
            'recommendations': recommendations,
        }

    def calculate_funnel_roi(self, stages: Mapping[str, FunnelStage], cost: float) -> Dict[str, float]:
        return calculate_roi(stages['conversion'].metrics.revenue, cost)

    def _analyze_funnel_core(
        self,
        event: Optional[EventRecord],
        conversion_data: ConversionInput,
        reference: Any = None,
    ) -> FunnelAnalysis:
        """
        Five-stage funnel of one event

        Args:
            event: The broadcast spot (its investment is the funnel cost)
            conversion_data: Conversion rows observed after the spot
            reference: Reference conversion rows, a temporal reference
                map, or None

        Returns:
            FunnelAnalysis with stages in funnel order
        """
        spot_metrics = stage_metrics_from_rows(conversion_rows(conversion_data))
        reference_metrics = self.reference_stage_metrics(reference)

        stages: Dict[str, FunnelStage] = {}
        previous_count = None
        for stage in FUNNEL_STAGES:
            spot = spot_metrics[stage]
            ref = reference_metrics[stage]
            impact = self.stage_impact(spot, ref)
            significance = self.significance.two_proportion_test(spot, ref)

            stages[stage] = FunnelStage(
                stage=stage,
                metrics=spot,
                reference_metrics=ref,
                impact=impact,
                significance=significance,
                confidence=self.stage_confidence(spot, ref),
                drop_off_rate=self.drop_off_rate(previous_count, spot.count),
                recommendations=tuple(self.stage_recommendations(stage, impact, significance)),
            )
            previous_count = spot.count

        cost = (event.investment if event is not None else None) or 0.0
        funnel = FunnelAnalysis(
            stages=stages,
            conversion_rates=self.calculate_conversion_rates(stages),
            roi=self.calculate_funnel_roi(stages, cost),
            drop_off_analysis=self.analyze_drop_off(stages),
        )

        event_id = event.id if event is not None else '-'
        logger.debug(f"{event_id}: funnel conversions={stages['conversion'].metrics.count:g}")
        return funnel

    def compare_control_groups(
        self, spot_funnel: FunnelAnalysis, control_funnel: FunnelAnalysis
    ) -> Dict[str, StageComparison]:
        """Per-stage lift of the spot funnel over the control funnel"""
        comparison = {}
        for stage in FUNNEL_STAGES:
            spot = spot_funnel.stages[stage].metrics
            control = control_funnel.stages[stage].metrics
            comparison[stage] = StageComparison(
                spot=spot,
                control=control,
                lift=percentage_delta(spot.count, control.count),
                revenue_lift=percentage_delta(spot.revenue, control.revenue),
                significance=self.significance.two_proportion_test(spot, control),
            )
        return comparison

    def control_group_recommendations(self, comparison: Mapping[str, StageComparison]) -> List[str]:
        if not any(data.lift != 0 for data in comparison.values()):
            return ["Configure a control group with real data to obtain comparative recommendations."]

        recommendations = []
        for stage, data in comparison.items():
            if data.lift > 20:
                recommendations.append(f"Strong lift in {stage}: +{data.lift:.1f}% vs control.")
            elif data.lift < -10:
                recommendations.append(f"Underperformance in {stage}: {data.lift:.1f}% vs control.")
            if data.significance.is_significant:
                recommendations.append(f"Statistically significant difference in {stage}.")
        return recommendations

    def _analyze_control_groups_core(
        self,
        event: Optional[EventRecord],
        conversion_data: ConversionInput,
        control_data: ConversionInput,
    ) -> ControlGroupAnalysis:
        """Spot funnel measured against a control group's funnel"""
        spot = self._analyze_funnel_core(event, conversion_data, control_data)
        control = self._analyze_funnel_core(event, control_data, None)
        comparison = self.compare_control_groups(spot, control)

        return ControlGroupAnalysis(
            spot=spot,
            control=control,
            comparison=comparison,
            recommendations=tuple(self.control_group_recommendations(comparison)),
        )
