"""
Significance Engine
Scores statistical significance and confidence of impact comparisons

This module:
- Aggregates per-metric significance into a window-level ratio
- Scores window confidence from the baseline's size and stability
- Runs the two-proportion Z-test with Cohen's h used by the funnel
"""

import math
from typing import Any, Mapping, Optional, Sequence, Union

from statsmodels.stats.proportion import proportion_effectsize, proportions_ztest

from .config import resolve_config
from .types import (
    ProportionTest,
    ReferenceStatistic,
    SignificanceResult,
    StageMetrics,
    WindowImpact,
)


NEUTRAL_CONFIDENCE = 50.0


def score_significance(impacts: Mapping[str, WindowImpact]) -> SignificanceResult:
    """Share of metrics whose change crossed the significance threshold"""
    total = len(impacts)
    significant = sum(1 for impact in impacts.values() if impact.is_significant)

    return SignificanceResult(
        overall_ratio=significant / total if total else 0.0,
        significant_metric_count=significant,
        total_metric_count=total,
        effect_sizes=tuple(impact.effect_size for impact in impacts.values()),
    )


def interpret_effect_size(h: float, thresholds: Sequence[float] = (0.2, 0.5, 0.8)) -> str:
    """Label Cohen's h as trivial / small / medium / large"""
    small, medium, large = thresholds
    abs_h = abs(h)
    if abs_h < small:
        return 'trivial'
    if abs_h < medium:
        return 'small'
    if abs_h < large:
        return 'medium'
    return 'large'


def _proportion(rate: float) -> float:
    """Percentage rate -> proportion clipped to [0, 1]"""
    if rate is None or not math.isfinite(rate):
        return 0.0
    return min(1.0, max(0.0, rate / 100.0))


class SignificanceEngine:
    """Significance and confidence scoring"""

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        self.config = resolve_config(config)
        sig = self.config['significance']
        self.alpha = float(sig['alpha'])
        self.effect_size_thresholds = tuple(sig['effect_size_thresholds'])
        self.primary_metric = self.config['prediction']['primary_metric']

    def score_significance(self, impacts: Mapping[str, WindowImpact]) -> SignificanceResult:
        return score_significance(impacts)

    def confidence_for(
        self,
        window_metrics: Optional[Mapping[str, float]],
        reference: Optional[Union[ReferenceStatistic, Mapping[str, ReferenceStatistic]]],
    ) -> float:
        """
        Confidence (0-95) in a window comparison

        Starts from the baseline confidence, rewards larger and more
        stable baselines and clamps to [50, 95]. Without a baseline the
        neutral value 50 is returned.

        Args:
            window_metrics: Observed metrics of the window (unused by the
                score itself, kept for the comparison signature)
            reference: Baseline statistic, or a metric -> statistic map in
                which case the primary metric's statistic is scored
        """
        stat = self._pick_statistic(reference)
        if stat is None:
            return NEUTRAL_CONFIDENCE

        confidence = float(stat.confidence)

        if stat.sample_size >= 30:
            confidence += 10
        elif stat.sample_size >= 15:
            confidence += 5

        coefficient_of_variation = stat.std_dev / (stat.mean or 1)
        if coefficient_of_variation < 0.3:
            confidence += 5

        return min(95.0, max(50.0, confidence))

    def _pick_statistic(self, reference) -> Optional[ReferenceStatistic]:
        if reference is None:
            return None
        if isinstance(reference, ReferenceStatistic):
            return reference
        if not reference:
            return None
        if self.primary_metric in reference:
            return reference[self.primary_metric]
        return next(iter(reference.values()))

    def two_proportion_test(self, spot: StageMetrics, reference: StageMetrics) -> ProportionTest:
        """
        Two-proportion Z-test between spot and reference stage rates

        Counts act as sample sizes (0 is treated as 1); rates are
        percentages. Cohen's h is reported as an absolute value.
        """
        n1 = spot.count or 1
        n2 = reference.count or 1
        p1 = _proportion(spot.rate)
        p2 = _proportion(reference.rate)

        # Pooled variance vanishes when both rates are 0% or both 100%
        pooled_p = (n1 * p1 + n2 * p2) / (n1 + n2)
        if 0 < pooled_p < 1:
            z, p_value = proportions_ztest([n1 * p1, n2 * p2], [n1, n2])
            z = abs(z)
        else:
            z, p_value = 0.0, 1.0

        cohens_h = abs(float(proportion_effectsize(p1, p2)))

        return ProportionTest(
            z_score=float(z),
            p_value=float(p_value),
            cohens_h=cohens_h,
            is_significant=bool(p_value < self.alpha),
            effect_size=interpret_effect_size(cohens_h, self.effect_size_thresholds),
        )
