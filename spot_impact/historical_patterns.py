"""
Historical Pattern Extraction
Summarises historical telemetry for the predictive projector

This module:
- Aggregates the primary metric by hour, weekday, week of month and month
- Fits a linear trend over daily totals
- Measures seasonality strength with a seasonal decomposition
- Flags z-score anomalies
- Assesses data quality (completeness, consistency, anomaly rate)
"""

from typing import Any, Dict, List, Mapping, Optional

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.tsa.seasonal import seasonal_decompose

from .config import resolve_config
from .data_pipeline import TelemetryInput, infer_sample_interval, to_frame
from .logging_config import get_logger

logger = get_logger("spot_impact.historical_patterns")


WEEKDAY_NAMES = ['Monday', 'Tuesday', 'Wednesday', 'Thursday', 'Friday', 'Saturday', 'Sunday']


def calculate_z_scores(values: np.ndarray) -> np.ndarray:
    """Z-scores of ``values`` (all 0 when there is no spread)"""
    arr = np.asarray(values, dtype=float)
    std = np.std(arr)
    if arr.size == 0 or std == 0:
        return np.zeros_like(arr)
    return (arr - np.mean(arr)) / std


def detect_trend(values: np.ndarray, p_threshold: float = 0.05, r_threshold: float = 0.3) -> Dict[str, Any]:
    """
    Linear trend of ordered values

    The direction is increasing / decreasing only when the slope is
    significant and the correlation is meaningful; otherwise stable.
    """
    if len(values) < 3 or np.all(values == values[0]):
        return {'slope': 0.0, 'r_value': 0.0, 'p_value': 1.0, 'direction': 'stable'}

    x = np.arange(len(values))
    slope, _, r_value, p_value, _ = stats.linregress(x, values)

    direction = 'stable'
    if p_value < p_threshold and abs(r_value) > r_threshold:
        direction = 'increasing' if slope > 0 else 'decreasing'

    return {
        'slope': float(slope),
        'r_value': float(r_value),
        'p_value': float(p_value),
        'direction': direction,
    }


def seasonality_strength(series: pd.Series, period: int) -> Optional[float]:
    """
    Strength of the seasonal component, Var(S) / (Var(S) + Var(R))

    Returns None when the series holds fewer than two full cycles.
    """
    if len(series) < 2 * period or period < 2:
        return None

    clean = series.ffill().bfill()
    if clean.isna().any():
        return None

    decomposition = seasonal_decompose(clean, model='additive', period=period, extrapolate_trend=period - 1)
    seasonal_var = float(np.nanvar(decomposition.seasonal))
    resid_var = float(np.nanvar(decomposition.resid))

    if seasonal_var + resid_var == 0:
        return 0.0
    return max(0.0, min(1.0, seasonal_var / (seasonal_var + resid_var)))


def _mean_by(values: pd.Series, keys: pd.Series) -> Dict[int, float]:
    grouped = values.groupby(keys).mean()
    return {int(k): float(v) for k, v in grouped.items()}


class HistoricalPatternAnalyzer:
    """Pattern, trend, seasonality and anomaly extraction"""

    def __init__(self, config: Optional[Mapping[str, Any]] = None):
        self.config = resolve_config(config)
        prediction = self.config['prediction']
        self.primary_metric = prediction['primary_metric']
        self.anomaly_z_threshold = float(prediction['anomaly_z_threshold'])

    def empty_patterns(self) -> Dict[str, Any]:
        return {
            'patterns': {},
            'day_hour': {},
            'trend': {},
            'seasonality': {},
            'anomalies': [],
            'average_performance': 0.0,
            'variability': 0.0,
            'consistency': 0.0,
            'data_points': 0,
            'time_range_days': 0.0,
            'sample_interval_seconds': 3600.0,
            'ratios': {'sessions_per_user': 0.0, 'engagement_rate': 0.0, 'conversion_rate': 0.0},
        }

    def analyze(self, historical_data: TelemetryInput) -> Dict[str, Any]:
        """
        Extract the patterns the projector works from

        Returns:
            Dictionary of plain Python values; an empty history yields
            zero data points and empty pattern tables.
        """
        frame = to_frame(historical_data)
        if frame.empty:
            return self.empty_patterns()

        ts = frame['timestamp']
        values = frame[self.primary_metric]

        patterns = {
            'hourly': _mean_by(values, ts.dt.hour),
            'daily': _mean_by(values, ts.dt.dayofweek),
            'weekly': _mean_by(values, (ts.dt.day - 1) // 7 + 1),
            'monthly': _mean_by(values, ts.dt.month),
        }

        day_hour: Dict[int, Dict[int, float]] = {}
        grouped = values.groupby([ts.dt.dayofweek.rename('day'), ts.dt.hour.rename('hour')]).mean()
        for (day, hour), value in grouped.items():
            day_hour.setdefault(int(day), {})[int(hour)] = float(value)

        daily_totals = frame.set_index('timestamp')[self.primary_metric].resample('D').sum()
        interval = infer_sample_interval(frame)

        average = float(values.mean())
        variability = min(1.0, float(values.std(ddof=0)) / average) if average > 0 else 0.0

        totals = frame[['active_users', 'sessions', 'bounces', 'conversions']].sum()
        sessions = float(totals['sessions'])
        ratios = {
            'sessions_per_user': sessions / float(totals['active_users']) if totals['active_users'] > 0 else 0.0,
            'engagement_rate': 1 - float(totals['bounces']) / sessions if sessions > 0 else 0.0,
            'conversion_rate': float(totals['conversions']) / sessions if sessions > 0 else 0.0,
        }

        result = {
            'patterns': patterns,
            'day_hour': day_hour,
            'trend': detect_trend(daily_totals.to_numpy(dtype=float)),
            'seasonality': self.detect_seasonality(frame, interval),
            'anomalies': self.detect_anomalies(frame),
            'average_performance': average,
            'variability': variability,
            'consistency': self.data_consistency(daily_totals),
            'data_points': int(len(frame)),
            'time_range_days': float((ts.max() - ts.min()).total_seconds() / 86400),
            'sample_interval_seconds': float(interval.total_seconds()),
            'ratios': ratios,
        }

        logger.debug(
            f"Patterns from {result['data_points']} samples over {result['time_range_days']:.1f} days; "
            f"trend {result['trend']['direction']}"
        )
        return result

    def detect_seasonality(self, frame: pd.DataFrame, interval) -> Dict[str, Any]:
        """Daily cycle on hourly data, falling back to a weekly cycle on daily totals"""
        series = frame.set_index('timestamp')[self.primary_metric]

        candidates = []
        if interval <= pd.Timedelta(hours=1):
            candidates.append(('daily', series.resample('h').mean(), 24))
        candidates.append(('weekly', series.resample('D').sum(), 7))

        for name, resampled, period in candidates:
            strength = seasonality_strength(resampled, period)
            if strength is not None:
                return {'detected': strength > 0.3, 'cycle': name, 'period': period, 'strength': strength}

        return {'detected': False, 'cycle': None, 'period': None, 'strength': 0.0}

    def detect_anomalies(self, frame: pd.DataFrame) -> List[Dict[str, Any]]:
        values = frame[self.primary_metric].to_numpy(dtype=float)
        z_scores = calculate_z_scores(values)

        anomalies = []
        for idx in np.flatnonzero(np.abs(z_scores) > self.anomaly_z_threshold):
            anomalies.append({
                'timestamp': frame['timestamp'].iloc[idx].isoformat(),
                'value': float(values[idx]),
                'z_score': float(z_scores[idx]),
            })
        return anomalies

    @staticmethod
    def data_consistency(daily_totals: pd.Series) -> float:
        """1 - coefficient of variation of daily totals, floored at 0"""
        if len(daily_totals) == 0:
            return 0.0
        mean = float(daily_totals.mean())
        if mean <= 0:
            return 0.0
        return max(0.0, 1 - float(daily_totals.std(ddof=0)) / mean)

    @staticmethod
    def assess_data_quality(patterns: Mapping[str, Any]) -> Dict[str, float]:
        """
        Completeness, consistency and anomaly rate of the history

        All scores are in [0, 1]; ``score`` is their mean with the anomaly
        rate inverted.
        """
        points = patterns.get('data_points', 0)
        if not points:
            return {'completeness': 0.0, 'consistency': 0.0, 'anomaly_rate': 0.0, 'score': 0.0}

        interval_days = patterns['sample_interval_seconds'] / 86400
        expected = patterns['time_range_days'] / interval_days + 1 if interval_days > 0 else points
        completeness = min(1.0, points / expected)
        consistency = float(patterns.get('consistency', 0.0))
        anomaly_rate = min(1.0, len(patterns.get('anomalies', [])) / points)

        return {
            'completeness': completeness,
            'consistency': consistency,
            'anomaly_rate': anomaly_rate,
            'score': (completeness + consistency + (1 - anomaly_rate)) / 3,
        }
