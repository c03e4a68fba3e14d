"""
Anomaly Validation Gate
Rejects implausible metric values before they are reported

Every reported count, percentage and confidence passes through
``AnomalyGate.check``. A rejected value is replaced with 0 and recorded
as a ``ValidationFlag`` so consumers can surface it instead of trusting
the zero. Services attach the gate to their pure core functions at
construction time with ``validated_by``.
"""

import copy
import dataclasses
import functools
import math
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from .config import resolve_config
from .exceptions import ValidationRejection
from .logging_config import get_logger
from .significance import score_significance
from .types import (
    VALIDATION_ACCEPTED,
    VALIDATION_REJECTED,
    VALIDATION_SUSPICIOUS,
    ControlGroupAnalysis,
    FunnelAnalysis,
    FunnelStage,
    PredictionBundle,
    ReferenceMap,
    StageComparison,
    StageMetrics,
    ValidationFlag,
    WindowAnalysis,
    WindowImpact,
)

logger = get_logger("spot_impact.validation")


# Value kinds understood by the gate
KIND_METRIC = 'metric'                    # generic metric value
KIND_COUNT = 'count'                      # raw telemetry count
KIND_PERCENTAGE_CHANGE = 'percentage_change'
KIND_GROWTH = 'growth'                    # % change without upper bound
KIND_RATE = 'rate'                        # percentage in [0, 100]
KIND_CONFIDENCE = 'confidence'            # score in [0, 100]
KIND_RATIO = 'ratio'                      # score in [0, 1]
KIND_SIGNED = 'signed'                    # any finite number

_WINDOW_METRIC_KINDS = {
    'bounce_rate': KIND_RATE,
    'conversion_rate': KIND_RATE,
    'avg_session_duration': KIND_COUNT,
}


def round_half_up(value: float) -> int:
    """Nearest integer with halves rounded up (2.5 -> 3, -2.5 -> -2)"""
    return int(math.floor(value + 0.5))


@dataclasses.dataclass(frozen=True)
class GatedValue:
    value: float
    validation: str = VALIDATION_ACCEPTED
    reason: Optional[str] = None

    @property
    def rejected(self) -> bool:
        return self.validation == VALIDATION_REJECTED


class AnomalyGate:
    """
    Validation gate for reported metric values

    Rules, by value kind:
    - every kind: NaN, infinite and non-numeric values are rejected
    - metric / count / rate / confidence / ratio: negatives are rejected
    - count / metric: values above ``max_count`` are rejected
    - percentage_change: magnitudes above ``max_abs_percentage_change``
    - growth: values below -100
    - rate / confidence: values above 100; ratio: values above 1
    - kinds listed in ``canned_value_kinds``: values whose rounded
      magnitude is one of ``rejected_values``
    """

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        cfg = resolve_config(config)['validation']
        self.rejected_values = frozenset(int(v) for v in cfg['rejected_values'])
        self.max_abs_percentage_change = float(cfg['max_abs_percentage_change'])
        self.max_count = float(cfg['max_count'])
        self.canned_value_kinds = frozenset(cfg['canned_value_kinds'])

    def check(self, value: Any, kind: str = KIND_METRIC) -> GatedValue:
        """Validate a single value; rejected values come back as 0"""
        reason = self._rejection_reason(value, kind)
        if reason is None:
            return GatedValue(float(value))
        return GatedValue(0.0, VALIDATION_REJECTED, reason)

    def _rejection_reason(self, value: Any, kind: str) -> Optional[str]:
        if isinstance(value, bool):
            return 'not a number'
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 'not a number'

        if math.isnan(number):
            return 'NaN'
        if math.isinf(number):
            return 'infinite'

        if kind in (KIND_METRIC, KIND_COUNT, KIND_RATE, KIND_CONFIDENCE, KIND_RATIO) and number < 0:
            return 'negative'
        if kind in (KIND_METRIC, KIND_COUNT) and number > self.max_count:
            return f'exceeds sanity bound {self.max_count:g}'
        if kind == KIND_PERCENTAGE_CHANGE and abs(number) > self.max_abs_percentage_change:
            return f'|change| exceeds {self.max_abs_percentage_change:g}%'
        if kind == KIND_GROWTH and number < -100:
            return 'change below -100%'
        if kind in (KIND_RATE, KIND_CONFIDENCE) and number > 100:
            return 'exceeds 100'
        if kind == KIND_RATIO and number > 1:
            return 'exceeds 1'

        if kind in self.canned_value_kinds:
            nearest = round_half_up(abs(number))
            if nearest in self.rejected_values:
                return f'matches known placeholder value {nearest}'

        return None

    def require(self, value: Any, kind: str, field: str) -> float:
        """
        Validated value of ``field``

        Raises:
            ValidationRejection: If the gate rejects the value
        """
        result = self.check(value, kind)
        if result.rejected:
            raise ValidationRejection(field, value, result.reason)
        return result.value

    def gate(self, value: Any, kind: str, field: str, flags: List[ValidationFlag]) -> float:
        """Check ``value``, record a flag on rejection and return the gated value"""
        try:
            return self.require(value, kind, field)
        except ValidationRejection as e:
            logger.warning(f"{e} ({kind})")
            flags.append(ValidationFlag(field=e.field, value=e.value, kind=kind, reason=e.reason))
            return 0.0

    # ------------------------------------------------------------------
    # Result validators
    # ------------------------------------------------------------------

    def validate_impact_map(self, impact_map: Mapping[str, WindowAnalysis]) -> Dict[str, WindowAnalysis]:
        """Gate every reported value of a temporal impact map"""
        return {key: self._validate_window(key, analysis) for key, analysis in impact_map.items()}

    def _validate_window(self, key: str, analysis: WindowAnalysis) -> WindowAnalysis:
        flags: List[ValidationFlag] = []

        metrics = {
            name: self.gate(value, _WINDOW_METRIC_KINDS.get(name, KIND_COUNT), f'{key}.metrics.{name}', flags)
            for name, value in analysis.metrics.items()
        }

        impacts = {}
        for name, impact in analysis.impacts.items():
            impacts[name] = self._validate_impact(f'{key}.{name}', name, impact, flags)

        confidence = self.gate(analysis.confidence, KIND_CONFIDENCE, f'{key}.confidence', flags)

        validation = analysis.validation
        if flags and validation == VALIDATION_ACCEPTED:
            validation = VALIDATION_SUSPICIOUS

        return dataclasses.replace(
            analysis,
            metrics=metrics,
            impacts=impacts,
            significance=score_significance(impacts),
            confidence=confidence,
            validation=validation,
            flags=analysis.flags + tuple(flags),
        )

    def _validate_impact(
        self, path: str, metric: str, impact: WindowImpact, flags: List[ValidationFlag]
    ) -> WindowImpact:
        local: List[ValidationFlag] = []
        value_kind = _WINDOW_METRIC_KINDS.get(metric, KIND_COUNT)

        window_value = self.gate(impact.window_value, value_kind, f'{path}.window_value', local)
        percentage = self.gate(impact.percentage_change, KIND_PERCENTAGE_CHANGE, f'{path}.percentage_change', local)
        effect_size = self.gate(impact.effect_size, KIND_SIGNED, f'{path}.effect_size', local)

        flags.extend(local)
        if not local:
            return impact

        return dataclasses.replace(
            impact,
            window_value=window_value,
            percentage_change=percentage,
            effect_size=effect_size,
            is_significant=impact.is_significant and percentage != 0.0,
            validation=VALIDATION_REJECTED,
            rejection_reason='; '.join(f.reason for f in local),
        )

    def validate_funnel(self, funnel: FunnelAnalysis) -> FunnelAnalysis:
        """Gate every reported value of a funnel analysis"""
        flags: List[ValidationFlag] = []

        stages = {name: self._validate_stage(stage, flags) for name, stage in funnel.stages.items()}
        conversion_rates = {
            name: self.gate(rate, KIND_RATE, f'conversion_rates.{name}', flags)
            for name, rate in funnel.conversion_rates.items()
        }
        roi = dict(funnel.roi)
        for name in ('roi', 'roas', 'revenue', 'cost', 'profit'):
            if name in roi:
                roi[name] = self.gate(roi[name], KIND_SIGNED, f'roi.{name}', flags)

        drop_off = dict(funnel.drop_off_analysis)
        if 'total_drop_off' in drop_off:
            drop_off['total_drop_off'] = self.gate(
                drop_off['total_drop_off'], KIND_SIGNED, 'drop_off_analysis.total_drop_off', flags
            )

        return dataclasses.replace(
            funnel,
            stages=stages,
            conversion_rates=conversion_rates,
            roi=roi,
            drop_off_analysis=drop_off,
            flags=funnel.flags + tuple(flags),
        )

    def _validate_stage_metrics(self, path: str, metrics: StageMetrics, flags: List[ValidationFlag]) -> StageMetrics:
        return StageMetrics(
            count=self.gate(metrics.count, KIND_COUNT, f'{path}.count', flags),
            rate=self.gate(metrics.rate, KIND_RATE, f'{path}.rate', flags),
            revenue=self.gate(metrics.revenue, KIND_SIGNED, f'{path}.revenue', flags),
        )

    def _validate_stage(self, stage: FunnelStage, flags: List[ValidationFlag]) -> FunnelStage:
        path = f'stages.{stage.stage}'
        impact = dataclasses.replace(
            stage.impact,
            count_change=self.gate(stage.impact.count_change, KIND_GROWTH, f'{path}.impact.count_change', flags),
            revenue_change=self.gate(stage.impact.revenue_change, KIND_GROWTH, f'{path}.impact.revenue_change', flags),
        )
        return dataclasses.replace(
            stage,
            metrics=self._validate_stage_metrics(f'{path}.metrics', stage.metrics, flags),
            reference_metrics=self._validate_stage_metrics(f'{path}.reference_metrics', stage.reference_metrics, flags),
            impact=impact,
            confidence=self.gate(stage.confidence, KIND_CONFIDENCE, f'{path}.confidence', flags),
            drop_off_rate=self.gate(stage.drop_off_rate, KIND_RATE, f'{path}.drop_off_rate', flags),
        )

    def validate_control_groups(self, analysis: ControlGroupAnalysis) -> ControlGroupAnalysis:
        """Gate both funnels and the per-stage lifts of a control comparison"""
        flags: List[ValidationFlag] = []
        comparison: Dict[str, StageComparison] = {}
        for stage, data in analysis.comparison.items():
            comparison[stage] = dataclasses.replace(
                data,
                lift=self.gate(data.lift, KIND_GROWTH, f'comparison.{stage}.lift', flags),
                revenue_lift=self.gate(data.revenue_lift, KIND_GROWTH, f'comparison.{stage}.revenue_lift', flags),
            )
        return dataclasses.replace(
            analysis,
            spot=self.validate_funnel(analysis.spot),
            control=self.validate_funnel(analysis.control),
            comparison=comparison,
            flags=analysis.flags + tuple(flags),
        )

    def validate_prediction(self, bundle: PredictionBundle) -> PredictionBundle:
        """Gate projected counts, rates, ROI figures and confidences"""
        flags: List[ValidationFlag] = []

        performance = copy.deepcopy(bundle.performance)
        for window, projection in performance.get('windows', {}).items():
            for name in ('baseline', 'projected', 'volume', 'incremental'):
                if name in projection:
                    kind = KIND_SIGNED if name == 'incremental' else KIND_COUNT
                    projection[name] = self.gate(projection[name], kind, f'performance.{window}.{name}', flags)
        if 'confidence' in performance:
            performance['confidence'] = self.gate(performance['confidence'], KIND_RATIO, 'performance.confidence', flags)

        roi = copy.deepcopy(bundle.roi)
        total = roi.get('total', {})
        for name in ('revenue', 'investment', 'roi', 'profit'):
            if name in total:
                total[name] = self.gate(total[name], KIND_SIGNED, f'roi.total.{name}', flags)
        roi['total'] = total
        for window, block in roi.get('by_window', {}).items():
            block['roi'] = self.gate(block['roi'], KIND_SIGNED, f'roi.{window}.roi', flags)
        if 'confidence' in roi:
            roi['confidence'] = self.gate(roi['confidence'], KIND_RATIO, 'roi.confidence', flags)

        engagement = copy.deepcopy(bundle.engagement)
        for category, block in engagement.get('by_category', {}).items():
            block['predicted'] = self.gate(block['predicted'], KIND_COUNT, f'engagement.{category}.predicted', flags)
        if 'confidence' in engagement:
            engagement['confidence'] = self.gate(engagement['confidence'], KIND_RATIO, 'engagement.confidence', flags)

        conversions = copy.deepcopy(bundle.conversions)
        for stage, block in conversions.get('funnel', {}).items():
            block['predicted'] = self.gate(block['predicted'], KIND_COUNT, f'conversions.{stage}.predicted', flags)
            block['conversion_rate'] = self.gate(
                block['conversion_rate'], KIND_RATE, f'conversions.{stage}.conversion_rate', flags
            )
        if 'confidence' in conversions:
            conversions['confidence'] = self.gate(conversions['confidence'], KIND_RATIO, 'conversions.confidence', flags)

        data_quality = {
            name: self.gate(value, KIND_RATIO, f'data_quality.{name}', flags)
            for name, value in bundle.data_quality.items()
        }

        confidence = self.gate(bundle.confidence, KIND_RATIO, 'confidence', flags)

        return dataclasses.replace(
            bundle,
            performance=performance,
            roi=roi,
            engagement=engagement,
            conversions=conversions,
            data_quality=data_quality,
            confidence=confidence,
            flags=list(bundle.flags) + flags,
        )

    def validate_reference(self, reference: ReferenceMap) -> Tuple[ReferenceMap, List[ValidationFlag]]:
        """
        Gate the baseline statistics of a reference map

        Mean, median and standard deviation are measured telemetry and are
        checked as counts; confidence as a [0, 100] score. Statistics that
        pass are returned unchanged.

        Returns:
            (gated reference map, flags raised)
        """
        flags: List[ValidationFlag] = []
        gated: ReferenceMap = {}
        for window, stats in reference.items():
            gated[window] = {}
            for metric, stat in stats.items():
                path = f'reference.{window}.{metric}'
                local: List[ValidationFlag] = []
                values = {
                    name: self.gate(getattr(stat, name), KIND_COUNT, f'{path}.{name}', local)
                    for name in ('mean', 'median', 'std_dev')
                }
                values['confidence'] = self.gate(stat.confidence, KIND_CONFIDENCE, f'{path}.confidence', local)
                gated[window][metric] = dataclasses.replace(stat, **values) if local else stat
                flags.extend(local)
        return gated, flags


def validated_by(validator: Callable[[Any], Any]) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """
    Compose a pure analysis function with a result validator

    >>> gate = AnomalyGate()
    >>> analyze = validated_by(gate.validate_impact_map)(analyze_core)
    """
    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return validator(func(*args, **kwargs))
        return wrapper
    return decorator


def rejected_fields(flags: Tuple[ValidationFlag, ...]) -> List[str]:
    """Field paths of every rejected value"""
    return [flag.field for flag in flags]
