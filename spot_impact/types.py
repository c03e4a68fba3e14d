"""
Data Model and Common Types
Entities shared by the reference, impact, funnel and prediction stages
"""

import dataclasses
import math
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple, TypedDict

import numpy as np


# Metric names reported per window. The first three are counts, the rest rates.
COUNT_METRICS: Tuple[str, ...] = ('active_users', 'sessions', 'pageviews')
RATE_METRICS: Tuple[str, ...] = ('bounce_rate', 'avg_session_duration', 'conversion_rate')
METRIC_NAMES: Tuple[str, ...] = COUNT_METRICS + RATE_METRICS

FUNNEL_STAGES: Tuple[str, ...] = ('impressions', 'clicks', 'landing', 'engagement', 'conversion')

VALIDATION_ACCEPTED = 'accepted'
VALIDATION_REJECTED = 'rejected'
VALIDATION_SUSPICIOUS = 'suspicious_value_rejected'
VALIDATION_INSUFFICIENT = 'insufficient_data'


@dataclass(frozen=True)
class MetricSample:
    """One telemetry bucket from the analytics provider."""
    timestamp: datetime
    active_users: float = 0.0
    sessions: float = 0.0
    pageviews: float = 0.0
    bounces: Optional[float] = None
    session_duration: Optional[float] = None
    conversions: Optional[float] = None


@dataclass(frozen=True)
class EventRecord:
    """One broadcast spot."""
    id: str
    timestamp: Optional[datetime]
    duration_seconds: float = 0.0
    channel: str = ''
    program_title: str = ''
    commercial_type: str = ''
    version: str = ''
    investment: Optional[float] = None


@dataclass(frozen=True)
class TimeWindowSpec:
    """
    Fixed observation horizon after an event.

    ``duration`` is measured from the event timestamp; ``segment_start``
    marks where the window's disjoint projection segment begins.
    """
    key: str
    name: str
    duration: timedelta
    label: str
    segment_start: timedelta


TIME_WINDOWS: Dict[str, TimeWindowSpec] = {
    'immediate': TimeWindowSpec(
        key='immediate', name='Immediate', duration=timedelta(minutes=30),
        label='0-30 min', segment_start=timedelta(0),
    ),
    'short_term': TimeWindowSpec(
        key='short_term', name='Short Term', duration=timedelta(hours=4),
        label='1-4 h', segment_start=timedelta(minutes=30),
    ),
    'medium_term': TimeWindowSpec(
        key='medium_term', name='Medium Term', duration=timedelta(days=7),
        label='1-7 d', segment_start=timedelta(hours=4),
    ),
    'long_term': TimeWindowSpec(
        key='long_term', name='Long Term', duration=timedelta(days=30),
        label='1-30 d', segment_start=timedelta(days=7),
    ),
}

WINDOW_KEYS: Tuple[str, ...] = tuple(TIME_WINDOWS)


@dataclass(frozen=True)
class ReferenceStatistic:
    """Baseline statistic for one metric in one window."""
    mean: float
    median: float
    std_dev: float
    confidence: float
    sample_size: int

    @classmethod
    def empty(cls) -> 'ReferenceStatistic':
        """Zero-sample baseline used when no comparable periods exist"""
        return cls(mean=0.0, median=0.0, std_dev=0.0, confidence=0.0, sample_size=0)


# window key -> metric name -> statistic
ReferenceMap = Dict[str, Dict[str, ReferenceStatistic]]


@dataclass(frozen=True)
class WindowImpact:
    """Observed value of one metric compared against its baseline."""
    window_value: float
    reference_value: float
    absolute_change: float
    percentage_change: float
    is_significant: bool
    effect_size: float
    validation: str = VALIDATION_ACCEPTED
    rejection_reason: Optional[str] = None


@dataclass(frozen=True)
class SignificanceResult:
    """Share of significant metrics in a window comparison."""
    overall_ratio: float
    significant_metric_count: int
    total_metric_count: int
    effect_sizes: Tuple[float, ...] = ()


@dataclass(frozen=True)
class ValidationFlag:
    """Record of a value replaced by the anomaly validation gate."""
    field: str
    value: Any
    kind: str
    reason: str
    validation: str = VALIDATION_REJECTED


@dataclass(frozen=True)
class WindowAnalysis:
    """Full result for one time window of one event."""
    window: TimeWindowSpec
    metrics: Dict[str, float]
    totals: Dict[str, float]
    sample_count: int
    impacts: Dict[str, WindowImpact]
    significance: SignificanceResult
    confidence: float
    validation: str = VALIDATION_ACCEPTED
    flags: Tuple[ValidationFlag, ...] = ()


# window key -> analysis
ImpactMap = Dict[str, WindowAnalysis]


@dataclass(frozen=True)
class StageMetrics:
    count: float = 0.0
    rate: float = 0.0
    revenue: float = 0.0


@dataclass(frozen=True)
class StageImpact:
    count_change: float
    revenue_change: float
    absolute_count_change: float
    absolute_revenue_change: float


@dataclass(frozen=True)
class ProportionTest:
    """Two-proportion Z-test with Cohen's h."""
    z_score: float
    p_value: float
    cohens_h: float
    is_significant: bool
    effect_size: str


@dataclass(frozen=True)
class FunnelStage:
    stage: str
    metrics: StageMetrics
    reference_metrics: StageMetrics
    impact: StageImpact
    significance: ProportionTest
    confidence: float
    drop_off_rate: float
    recommendations: Tuple[str, ...] = ()


@dataclass(frozen=True)
class FunnelAnalysis:
    """Five-stage funnel for one event."""
    stages: Dict[str, FunnelStage]
    conversion_rates: Dict[str, float]
    roi: Dict[str, float]
    drop_off_analysis: Dict[str, Any]
    flags: Tuple[ValidationFlag, ...] = ()


@dataclass(frozen=True)
class StageComparison:
    spot: StageMetrics
    control: StageMetrics
    lift: float
    revenue_lift: float
    significance: ProportionTest


@dataclass(frozen=True)
class ControlGroupAnalysis:
    spot: FunnelAnalysis
    control: FunnelAnalysis
    comparison: Dict[str, StageComparison]
    recommendations: Tuple[str, ...] = ()
    flags: Tuple[ValidationFlag, ...] = ()


class Risk(TypedDict):
    """Single downside scenario of a prediction"""
    type: str
    severity: str
    description: str
    mitigation: str


class RiskAnalysis(TypedDict):
    risks: List[Risk]
    overall_risk: str
    risk_score: float
    variability: float


class Recommendation(TypedDict, total=False):
    type: str
    priority: str
    title: str
    description: str
    mitigation: str
    impact: str
    effort: str


@dataclass
class PredictionBundle:
    """Forward-looking projection for one event."""
    event_id: str
    performance: Dict[str, Any]
    roi: Dict[str, Any]
    engagement: Dict[str, Any]
    conversions: Dict[str, Any]
    optimal_timing: Dict[str, Any]
    risk_analysis: RiskAnalysis
    recommendations: List[Recommendation]
    confidence: float
    historical_patterns: Dict[str, Any] = field(default_factory=dict)
    data_quality: Dict[str, float] = field(default_factory=dict)
    model_version: str = '1.0.0'
    prediction_horizon: str = '30days'
    flags: List[ValidationFlag] = field(default_factory=list)


REPORT_OK = 'ok'
REPORT_DEGRADED = 'degraded'
REPORT_UNAVAILABLE = 'unavailable'


@dataclass
class EventReport:
    """Everything the engine produced for one event."""
    event_id: str
    status: str = REPORT_OK
    reference: Optional[ReferenceMap] = None
    temporal_impact: Optional[ImpactMap] = None
    insights: List[Dict[str, Any]] = field(default_factory=list)
    temporal_roi: Optional[Dict[str, Any]] = None
    funnel: Optional[FunnelAnalysis] = None
    control_groups: Optional[ControlGroupAnalysis] = None
    prediction: Optional[PredictionBundle] = None
    flags: List[ValidationFlag] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


def to_serializable(obj: Any) -> Any:
    """
    Convert engine results into JSON-safe builtins

    Dataclasses become dicts, datetimes ISO strings, timedeltas seconds,
    numpy scalars Python numbers and non-finite floats ``None``.
    """
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_serializable(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, dict):
        return {str(k): to_serializable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_serializable(v) for v in obj]
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, timedelta):
        return obj.total_seconds()
    if isinstance(obj, np.generic):
        obj = obj.item()
    if isinstance(obj, float) and not math.isfinite(obj):
        return None
    return obj
