"""
Adjustment Factor Estimators
Pluggable estimators used by the predictive projector

Adjustment factors scale the projected performance per window; quality
scores scale projected engagement. Each estimator is independently
replaceable: pass a custom ``EstimatorSet`` to ``PredictiveProjector``
to substitute a calibrated model without changing the pipeline.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from .types import WINDOW_KEYS, EventRecord


class AdjustmentFactor(ABC):
    """Multiplicative adjustment of projected performance, per window"""

    @abstractmethod
    def estimate(
        self,
        event: EventRecord,
        patterns: Mapping[str, Any],
        market_data: Mapping[str, Any],
    ) -> Dict[str, float]:
        """Return window key -> factor (1.0 is neutral)"""


class QualityScore(ABC):
    """Score in [0, 1] applied to projected engagement"""

    @abstractmethod
    def score(
        self,
        event: EventRecord,
        patterns: Mapping[str, Any],
        market_data: Mapping[str, Any],
    ) -> float:
        pass


def _ratio(value: Optional[float], average: float) -> float:
    if value is None or average <= 0:
        return 1.0
    return value / average


def _mean(values) -> float:
    values = list(values)
    return sum(values) / len(values) if values else 0.0


class TemporalFactor(AdjustmentFactor):
    """
    Performance of the event's hour and weekday relative to the average

    Hour-of-day matters for the first hours after the spot; weekday for
    the first week. The 30-day window spans every hour and day, so its
    factor is neutral.
    """

    def estimate(self, event, patterns, market_data):
        tables = patterns.get('patterns') or {}
        hourly = tables.get('hourly') or {}
        daily = tables.get('daily') or {}
        ts = event.timestamp

        hour_factor = _ratio(hourly.get(ts.hour), _mean(hourly.values())) if hourly else 1.0
        day_factor = _ratio(daily.get(ts.weekday()), _mean(daily.values())) if daily else 1.0

        return {
            'immediate': hour_factor * day_factor,
            'short_term': hour_factor * day_factor,
            'medium_term': day_factor,
            'long_term': 1.0,
        }


class AudienceFactor(AdjustmentFactor):
    """Audience size of the slot relative to average (``audience_index`` in market data)"""

    def estimate(self, event, patterns, market_data):
        index = float(market_data.get('audience_index', 1.0))
        return {window: index for window in WINDOW_KEYS}


class ConstantFactor(AdjustmentFactor):
    """Same factor for every window; the placeholder for uncalibrated models"""

    def __init__(self, value: float = 1.0):
        self.value = value

    def estimate(self, event, patterns, market_data):
        return {window: self.value for window in WINDOW_KEYS}


class ConstantScore(QualityScore):
    def __init__(self, value: float):
        self.value = value

    def score(self, event, patterns, market_data):
        return self.value


class TimingQuality(QualityScore):
    """Event-hour performance relative to the best hour in the history"""

    def __init__(self, default: float = 0.9):
        self.default = default

    def score(self, event, patterns, market_data):
        hourly = (patterns.get('patterns') or {}).get('hourly') or {}
        best = max(hourly.values(), default=0.0)
        if best <= 0:
            return self.default
        return min(1.0, max(0.0, hourly.get(event.timestamp.hour, 0.0) / best))


@dataclass
class EstimatorSet:
    temporal: AdjustmentFactor
    audience: AdjustmentFactor
    content: AdjustmentFactor
    market: AdjustmentFactor
    content_quality: QualityScore
    timing_quality: QualityScore
    audience_match: QualityScore

    @property
    def factors(self) -> Dict[str, AdjustmentFactor]:
        return {
            'temporal': self.temporal,
            'audience': self.audience,
            'content': self.content,
            'market': self.market,
        }


def default_estimators(config: Mapping[str, Any]) -> EstimatorSet:
    """Estimators backed by historical patterns and configured constants"""
    prediction = config['prediction']
    return EstimatorSet(
        temporal=TemporalFactor(),
        audience=AudienceFactor(),
        content=ConstantFactor(1.0),
        market=ConstantFactor(1.0),
        content_quality=ConstantScore(float(prediction['content_quality'])),
        timing_quality=TimingQuality(),
        audience_match=ConstantScore(float(prediction['audience_match'])),
    )
