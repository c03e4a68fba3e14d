"""
Reference Calculator
Builds the historical baseline an event's traffic is compared against

For every time window the baseline is drawn from "comparable periods":
historical samples on the same weekday (+/- 1 day) and at the same hour
of day (+/- 2 hours) as the event, strictly before the event.
"""

from datetime import datetime
from typing import Any, Mapping, Optional

import numpy as np
import pandas as pd

from .config import resolve_config
from .data_pipeline import TelemetryInput, normalize_timestamp, to_frame
from .exceptions import ConfigurationError, InsufficientDataError
from .logging_config import get_logger
from .types import METRIC_NAMES, WINDOW_KEYS, ReferenceMap, ReferenceStatistic

logger = get_logger("spot_impact.reference")


def _circular_distance(a: pd.Series, b: int, period: int) -> pd.Series:
    diff = (a - b).abs()
    return np.minimum(diff, period - diff)


class ReferenceCalculator:
    """Robust per-window baselines from comparable historical periods"""

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        self.config = resolve_config(config)
        ref = self.config['reference']
        self.weekday_tolerance = int(ref['weekday_tolerance'])
        self.hour_tolerance = int(ref['hour_tolerance'])
        self.base_confidence = float(ref['base_confidence'])
        self.confidence_per_sample = float(ref['confidence_per_sample'])
        self.max_confidence = float(ref['max_confidence'])

    def comparable_periods(self, event_timestamp: datetime, historical_samples: TelemetryInput) -> pd.DataFrame:
        """Samples before the event on a nearby weekday and hour"""
        frame = to_frame(historical_samples)
        if frame.empty:
            return frame

        before = frame[frame['timestamp'] < pd.Timestamp(event_timestamp)]
        weekday_gap = _circular_distance(before['timestamp'].dt.dayofweek, event_timestamp.weekday(), 7)
        hour_gap = _circular_distance(before['timestamp'].dt.hour, event_timestamp.hour, 24)

        mask = (weekday_gap <= self.weekday_tolerance) & (hour_gap <= self.hour_tolerance)
        return before.loc[mask]

    def statistic(self, values: np.ndarray) -> ReferenceStatistic:
        """
        Baseline statistic of one metric

        Raises:
            InsufficientDataError: If ``values`` is empty
        """
        n = len(values)
        if n == 0:
            raise InsufficientDataError("No comparable historical periods")

        ordered = np.sort(values)
        return ReferenceStatistic(
            mean=float(np.mean(values)),
            median=float(ordered[n // 2]),
            std_dev=float(np.std(values)),
            confidence=min(self.max_confidence, self.base_confidence + self.confidence_per_sample * n),
            sample_size=n,
        )

    def compute_reference(self, event_timestamp: Any, historical_samples: TelemetryInput) -> ReferenceMap:
        """
        Compute the baseline for every window and reported metric

        Args:
            event_timestamp: Broadcast time of the event
            historical_samples: Historical telemetry (any container
                accepted by ``data_pipeline.to_frame``)

        Returns:
            window key -> metric name -> ReferenceStatistic. Without
            comparable periods every statistic is the zero-sample
            baseline (confidence 0).

        Raises:
            ConfigurationError: If the event timestamp is missing or
                unparseable
        """
        ts = normalize_timestamp(event_timestamp)
        if ts is None:
            raise ConfigurationError("Event timestamp is required for a reference", field='timestamp')

        periods = self.comparable_periods(ts, historical_samples)

        try:
            per_metric = {
                metric: self.statistic(periods[metric].to_numpy(dtype=float)) for metric in METRIC_NAMES
            }
        except InsufficientDataError:
            logger.info(f"No comparable periods for {ts.isoformat()}; using zero-sample reference")
            per_metric = {metric: ReferenceStatistic.empty() for metric in METRIC_NAMES}

        logger.debug(f"Reference for {ts.isoformat()} built from {len(periods)} comparable samples")
        return {window: dict(per_metric) for window in WINDOW_KEYS}


def compute_reference(
    event_timestamp: Any,
    historical_samples: TelemetryInput,
    config: Optional[Mapping[str, Any]] = None,
) -> ReferenceMap:
    """Function form of ``ReferenceCalculator.compute_reference``"""
    return ReferenceCalculator(config).compute_reference(event_timestamp, historical_samples)


def empty_reference() -> ReferenceMap:
    """Zero-sample reference for every window"""
    return {window: {metric: ReferenceStatistic.empty() for metric in METRIC_NAMES} for window in WINDOW_KEYS}
