"""
Temporal Impact Analysis
Compares an event's observed traffic against its baseline in four windows

This module:
- Compares observed window metrics with the reference (per metric)
- Scores significance and confidence per window
- Passes every reported value through the anomaly validation gate
- Derives temporal insights and a session-value ROI
"""

import math
from typing import Any, Dict, List, Mapping, Optional

from .config import resolve_config
from .data_pipeline import TelemetryInput, metrics_per_window, normalize_timestamp
from .exceptions import ConfigurationError
from .financial_analysis import calculate_roi
from .logging_config import get_logger
from .significance import SignificanceEngine
from .types import (
    METRIC_NAMES,
    TIME_WINDOWS,
    VALIDATION_ACCEPTED,
    VALIDATION_INSUFFICIENT,
    EventRecord,
    ImpactMap,
    ReferenceMap,
    ReferenceStatistic,
    WindowAnalysis,
    WindowImpact,
)
from .validation import AnomalyGate, validated_by

logger = get_logger("spot_impact.temporal_analysis")


METRIC_LABELS = {
    'active_users': 'active users',
    'sessions': 'sessions',
    'pageviews': 'pageviews',
    'bounce_rate': 'bounce rate',
    'avg_session_duration': 'average session duration',
    'conversion_rate': 'conversion rate',
}


def compare_to_reference(
    actual: float,
    reference: ReferenceStatistic,
    threshold_pct: float = 10.0,
) -> WindowImpact:
    """
    Compare one observed value with its baseline

    percentage_change is 0 whenever the baseline mean is not positive;
    effect_size (Cohen's d style) is 0 when the baseline has no spread.
    """
    absolute_change = actual - reference.mean
    percentage_change = absolute_change / reference.mean * 100 if reference.mean > 0 else 0.0
    effect_size = absolute_change / reference.std_dev if reference.std_dev > 0 else 0.0

    return WindowImpact(
        window_value=float(actual),
        reference_value=float(reference.mean),
        absolute_change=float(absolute_change),
        percentage_change=float(percentage_change),
        is_significant=abs(percentage_change) > threshold_pct,
        effect_size=float(effect_size),
    )


def _observed_windows(event_ts, actual_metrics_per_window) -> Dict[str, Dict[str, Any]]:
    """
    Normalise observed data into window -> {metrics, totals, sample_count}

    Accepts that shape directly, a window -> metric dict mapping, or raw
    telemetry that is sliced into the windows here.
    """
    if isinstance(actual_metrics_per_window, Mapping) and any(k in TIME_WINDOWS for k in actual_metrics_per_window):
        observed = {}
        for key in TIME_WINDOWS:
            block = actual_metrics_per_window.get(key) or {}
            if 'metrics' in block:
                observed[key] = {
                    'metrics': dict(block['metrics']),
                    'totals': dict(block.get('totals', {})),
                    'sample_count': int(block.get('sample_count', 1 if block['metrics'] else 0)),
                }
            else:
                observed[key] = {'metrics': dict(block), 'totals': {}, 'sample_count': 1 if block else 0}
        return observed

    return metrics_per_window(event_ts, actual_metrics_per_window)


class TemporalImpactAnalyzer:
    """
    Window Impact Analyzer

    ``analyze_temporal_impact`` is the pure comparison core composed with
    the gate's impact-map validator when the analyzer is constructed.
    """

    def __init__(
        self,
        config: Optional[Mapping[str, Any]] = None,
        gate: Optional[AnomalyGate] = None,
        significance: Optional[SignificanceEngine] = None,
    ):
        self.config = resolve_config(config)
        self.threshold_pct = float(self.config['significance']['threshold_pct'])
        self.value_per_session = float(self.config['conversion']['value_per_session'])
        self.gate = gate or AnomalyGate(self.config)
        self.significance = significance or SignificanceEngine(self.config)

        self.analyze_temporal_impact = validated_by(self.gate.validate_impact_map)(self._analyze_core)

    def compare_to_reference(self, actual: float, reference: ReferenceStatistic) -> WindowImpact:
        return compare_to_reference(actual, reference, self.threshold_pct)

    def _analyze_core(
        self,
        event: EventRecord,
        actual_metrics_per_window: TelemetryInput,
        reference_map: ReferenceMap,
    ) -> ImpactMap:
        """
        Compare observed metrics with the reference in every window

        Args:
            event: The broadcast spot
            actual_metrics_per_window: Observed telemetry after the event,
                or pre-aggregated window metrics
            reference_map: Output of ``ReferenceCalculator.compute_reference``

        Returns:
            window key -> WindowAnalysis

        Raises:
            ConfigurationError: If the event has no usable timestamp
        """
        event_ts = normalize_timestamp(event.timestamp)
        if event_ts is None:
            raise ConfigurationError(f"Event {event.id} has no timestamp", field='timestamp')

        observed = _observed_windows(event_ts, actual_metrics_per_window)
        impact_map: ImpactMap = {}

        for key, spec in TIME_WINDOWS.items():
            window = observed[key]
            reference = reference_map.get(key) or {}

            impacts = {}
            for metric in METRIC_NAMES:
                stat = reference.get(metric, ReferenceStatistic.empty())
                impacts[metric] = self.compare_to_reference(float(window['metrics'].get(metric, 0.0)), stat)

            primary = reference.get(self.significance.primary_metric)
            insufficient = window['sample_count'] == 0 or primary is None or primary.sample_size == 0

            impact_map[key] = WindowAnalysis(
                window=spec,
                metrics={m: float(window['metrics'].get(m, 0.0)) for m in METRIC_NAMES},
                totals=window['totals'],
                sample_count=window['sample_count'],
                impacts=impacts,
                significance=self.significance.score_significance(impacts),
                confidence=self.significance.confidence_for(window['metrics'], reference or None),
                validation=VALIDATION_INSUFFICIENT if insufficient else VALIDATION_ACCEPTED,
            )

            logger.debug(
                f"{event.id} {key}: {window['sample_count']} samples, "
                f"ratio={impact_map[key].significance.overall_ratio:.2f}"
            )

        return impact_map

    def generate_temporal_insights(self, impact_map: ImpactMap) -> List[Dict[str, Any]]:
        """Human-readable findings about when the spot had an effect"""
        insights = []

        for key, analysis in impact_map.items():
            name = analysis.window.name
            significant = [m for m, impact in analysis.impacts.items() if impact.is_significant]

            if significant:
                labels = ', '.join(METRIC_LABELS.get(m, m) for m in significant)
                insights.append({
                    'type': 'temporal_impact',
                    'window': key,
                    'message': f"Significant impact in the {name.lower()} window on: {labels}",
                    'confidence': analysis.confidence,
                    'metrics': significant,
                })

            if key == 'short_term' and analysis.significance.overall_ratio > 0.5:
                insights.append({
                    'type': 'sustainability',
                    'window': key,
                    'message': f"The effect held through the {name.lower()} window, indicating good brand recall.",
                    'confidence': analysis.confidence,
                })

            conversion = analysis.impacts.get('conversion_rate')
            if key == 'long_term' and conversion is not None and conversion.percentage_change > 20:
                insights.append({
                    'type': 'delayed_conversion',
                    'window': key,
                    'message': f"Delayed conversions detected in the {name.lower()} window.",
                    'confidence': analysis.confidence,
                })

        return insights

    def calculate_temporal_roi(self, impact_map: ImpactMap, spot_cost: float) -> Dict[str, Any]:
        """ROI of the incremental sessions valued at ``value_per_session``"""
        incremental_value = 0.0
        for analysis in impact_map.values():
            sessions = analysis.impacts.get('sessions')
            if sessions is not None and math.isfinite(sessions.absolute_change):
                incremental_value += sessions.absolute_change * self.value_per_session

        result = calculate_roi(incremental_value, spot_cost or 0.0)
        return {
            'total_incremental_value': incremental_value,
            'spot_cost': float(spot_cost or 0.0),
            'roi': result['roi'],
            'is_profitable': result['roi'] > 0,
        }
