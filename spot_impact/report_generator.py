"""
Report Generator
Plain-text summaries of engine results

Creates structured text for downstream consumers (generative text
services, logs, exports) with:
- Temporal impact per window
- Funnel and ROI highlights
- Predictions, risks and recommendations

Values rejected by the anomaly validation gate are printed as
"rejected", never as the 0 that replaced them.
"""

from typing import Any, Iterable, List, Optional, Set

from .financial_analysis import FinancialAnalyzer
from .types import FUNNEL_STAGES, WINDOW_KEYS, EventReport, PredictionBundle, ValidationFlag


REJECTED = 'rejected'


def _rejected_set(flags: Iterable[ValidationFlag]) -> Set[str]:
    return {flag.field for flag in flags}


def _fmt(value: Any, field: str, rejected: Set[str], spec: str = ',.1f', suffix: str = '') -> str:
    if field in rejected:
        return REJECTED
    if value is None:
        return 'n/a'
    return f"{value:{spec}}{suffix}"


def build_prediction_prompt(bundle: PredictionBundle) -> str:
    """Structured text summary of a prediction bundle"""
    rejected = _rejected_set(bundle.flags)
    lines: List[str] = []

    lines.append(f"PREDICTIVE ANALYSIS FOR SPOT {bundle.event_id}")
    lines.append(f"Model {bundle.model_version}, horizon {bundle.prediction_horizon}")
    lines.append(f"Overall confidence: {_fmt(bundle.confidence, 'confidence', rejected, '.0%')}")
    lines.append("")

    lines.append("Projected performance (per window):")
    for window in WINDOW_KEYS:
        projection = bundle.performance.get('windows', {}).get(window)
        if projection is None:
            continue
        lines.append(
            f"  - {window}: projected {_fmt(projection['projected'], f'performance.{window}.projected', rejected)}"
            f" per sample, incremental {_fmt(projection['incremental'], f'performance.{window}.incremental', rejected)}"
            f" (lift source: {projection.get('lift_source', 'n/a')})"
        )
    lines.append("")

    total = bundle.roi.get('total', {})
    lines.append("ROI:")
    lines.append(f"  - Revenue: ${_fmt(total.get('revenue'), 'roi.total.revenue', rejected, ',.2f')}")
    lines.append(f"  - Investment: ${_fmt(total.get('investment'), 'roi.total.investment', rejected, ',.2f')}")
    lines.append(f"  - ROI: {_fmt(total.get('roi'), 'roi.total.roi', rejected, '.1f', '%')}")
    lines.append(f"  - Break-even window: {bundle.roi.get('break_even_window') or 'not reached'}")
    lines.append("")

    funnel = bundle.conversions.get('funnel', {})
    if funnel:
        lines.append("Projected funnel:")
        for stage in FUNNEL_STAGES:
            block = funnel.get(stage)
            if block is None:
                continue
            lines.append(
                f"  - {stage}: {_fmt(block['predicted'], f'conversions.{stage}.predicted', rejected, ',.0f')}"
                f" ({_fmt(block['conversion_rate'], f'conversions.{stage}.conversion_rate', rejected, '.1f', '%')})"
            )
        lines.append("")

    best = bundle.optimal_timing.get('recommendations', {}).get('best_time')
    if best:
        lines.append(f"Best broadcast slot: {best['label']}")

    risk = bundle.risk_analysis
    lines.append(f"Overall risk: {risk['overall_risk']} (score {risk['risk_score']:.2f})")
    for item in risk['risks']:
        lines.append(f"  - [{item['severity']}] {item['type']}: {item['description']}")
    lines.append("")

    if bundle.recommendations:
        lines.append("Recommendations:")
        for rec in bundle.recommendations:
            lines.append(f"  - [{rec.get('priority', 'low')}] {rec.get('title', '')}: {rec.get('description', '')}")

    if rejected:
        lines.append("")
        lines.append(f"Rejected values ({len(rejected)}): {', '.join(sorted(rejected))}")

    return "\n".join(lines)


def summarize_report(report: EventReport, spot_cost: Optional[float] = None) -> str:
    """Structured text summary of a full event report"""
    lines: List[str] = [f"SPOT {report.event_id}: status {report.status}"]

    if report.errors:
        lines.append("Errors:")
        lines.extend(f"  - {error}" for error in report.errors)

    if report.temporal_impact:
        lines.append("")
        lines.append("Temporal impact:")
        for key, analysis in report.temporal_impact.items():
            rejected = _rejected_set(analysis.flags)
            users = analysis.impacts.get('active_users')
            change = _fmt(
                users.percentage_change if users else None,
                f'{key}.active_users.percentage_change', rejected, '+.1f', '%',
            )
            confidence = _fmt(analysis.confidence, f'{key}.confidence', rejected, '.0f', '%')
            lines.append(
                f"  - {analysis.window.name} ({analysis.window.label}): active users {change}, "
                f"significance {analysis.significance.overall_ratio:.0%}, confidence {confidence} "
                f"[{analysis.validation}]"
            )

    for insight in report.insights:
        lines.append(f"  * {insight['message']}")

    if report.funnel is not None:
        rejected = _rejected_set(report.funnel.flags)
        lines.append("")
        lines.append("Conversion funnel:")
        for stage in FUNNEL_STAGES:
            data = report.funnel.stages[stage]
            lines.append(
                f"  - {stage}: {_fmt(data.metrics.count, f'stages.{stage}.metrics.count', rejected, ',.0f')}"
                f" (drop-off {_fmt(data.drop_off_rate, f'stages.{stage}.drop_off_rate', rejected, '.1f', '%')})"
            )

    cost = spot_cost
    if cost is None and report.funnel is not None:
        cost = report.funnel.roi.get('cost', 0.0)
    if report.temporal_roi is not None:
        analyzer = FinancialAnalyzer(report.temporal_roi['total_incremental_value'], cost or 0.0)
        lines.append("")
        lines.append(analyzer.generate_business_narrative())

    if report.prediction is not None:
        lines.append("")
        lines.append(build_prediction_prompt(report.prediction))

    return "\n".join(lines)
