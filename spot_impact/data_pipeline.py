"""
Data Pipeline for Spot Impact Analysis
Normalises analytics telemetry into a clean time-indexed frame

This module handles:
- Loading telemetry from samples, dict rows, DataFrames or API payloads
- Data cleaning (unparseable timestamps, non-numeric values, duplicates)
- Per-sample derived rates (bounce rate, session duration, conversion rate)
- Window slicing and window metric aggregation
- In-memory historical data sources
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

from .logging_config import get_logger
from .types import COUNT_METRICS, METRIC_NAMES, TIME_WINDOWS, MetricSample

logger = get_logger("spot_impact.data_pipeline")


RAW_COLUMNS = ['active_users', 'sessions', 'pageviews', 'bounces', 'session_duration', 'conversions']
FRAME_COLUMNS = ['timestamp'] + RAW_COLUMNS + ['bounce_rate', 'avg_session_duration', 'conversion_rate']

# Field names used by the analytics provider -> engine column names
COLUMN_ALIASES = {
    'date': 'timestamp',
    'dateTime': 'timestamp',
    'datetime': 'timestamp',
    'activeUsers': 'active_users',
    'users': 'active_users',
    'pageViews': 'pageviews',
    'screenPageViews': 'pageviews',
    'sessionDuration': 'session_duration',
}

# Metric order of analytics API rows: users, sessions, pageviews
API_METRIC_ORDER = ['active_users', 'sessions', 'pageviews']

TelemetryInput = Union[None, pd.DataFrame, Mapping[str, Any], Sequence[Any]]


def normalize_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a timestamp into a naive wall-clock ``datetime``

    Timezone-aware values keep their local wall-clock time; hour-of-day
    and weekday comparisons are made in the broadcaster's local time.
    Returns None when the value cannot be parsed.
    """
    if value is None:
        return None
    ts = pd.to_datetime(value, errors='coerce')
    if ts is None or pd.isna(ts):
        return None
    if ts.tzinfo is not None:
        ts = ts.tz_localize(None)
    return ts.to_pydatetime()


def _rows_from_api_payload(payload: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Flatten an analytics API report (dimensionValues / metricValues rows)"""
    rows = []
    for row in payload.get('rows') or []:
        if not isinstance(row, Mapping) or 'dimensionValues' not in row:
            rows.append(row)
            continue
        dims = row.get('dimensionValues') or []
        values = row.get('metricValues') or []
        record: Dict[str, Any] = {'timestamp': dims[0].get('value') if dims else None}
        for name, value in zip(API_METRIC_ORDER, values):
            record[name] = value.get('value') if isinstance(value, Mapping) else value
        rows.append(record)
    return rows


def _sample_to_row(sample: Any) -> Dict[str, Any]:
    if isinstance(sample, MetricSample):
        return {
            'timestamp': sample.timestamp,
            'active_users': sample.active_users,
            'sessions': sample.sessions,
            'pageviews': sample.pageviews,
            'bounces': sample.bounces,
            'session_duration': sample.session_duration,
            'conversions': sample.conversions,
        }
    if isinstance(sample, Mapping):
        return {COLUMN_ALIASES.get(key, key): value for key, value in sample.items()}
    raise TypeError(f"Unsupported telemetry row type: {type(sample).__name__}")


def empty_frame() -> pd.DataFrame:
    """Telemetry frame with the engine's columns and no rows"""
    frame = pd.DataFrame({column: pd.Series(dtype='float64') for column in FRAME_COLUMNS})
    frame['timestamp'] = pd.Series(dtype='datetime64[ns]')
    return frame


class DataPipeline:
    """Telemetry cleaning and transformation pipeline"""

    def __init__(self, samples: TelemetryInput = None):
        self.raw_data: Optional[pd.DataFrame] = None
        self.cleaned_data: Optional[pd.DataFrame] = None
        self.dropped_rows = 0
        if samples is not None:
            self.load_samples(samples)

    def load_samples(self, samples: TelemetryInput):
        """Load telemetry from any supported container"""
        if samples is None:
            self.raw_data = pd.DataFrame(columns=['timestamp'])
        elif isinstance(samples, pd.DataFrame):
            self.raw_data = samples.rename(columns=COLUMN_ALIASES).copy()
        elif isinstance(samples, Mapping):
            self.raw_data = pd.DataFrame([_sample_to_row(r) for r in _rows_from_api_payload(samples)])
        else:
            self.raw_data = pd.DataFrame([_sample_to_row(s) for s in samples])

        if 'timestamp' not in self.raw_data.columns:
            self.raw_data['timestamp'] = pd.NaT

        logger.debug(f"Loaded {len(self.raw_data)} telemetry rows")
        return self

    def clean_data(self):
        """Coerce types, drop unusable rows and derive per-sample rates"""
        if self.raw_data is None:
            self.load_samples(None)

        df = self.raw_data.copy()
        if df.empty:
            self.cleaned_data = empty_frame()
            return self

        df['timestamp'] = [normalize_timestamp(v) for v in df['timestamp']]
        df['timestamp'] = pd.to_datetime(df['timestamp'], errors='coerce')

        original_len = len(df)
        df = df.dropna(subset=['timestamp'])
        self.dropped_rows = original_len - len(df)
        if self.dropped_rows:
            logger.warning(f"Dropped {self.dropped_rows} telemetry rows with unparseable timestamps")

        for column in RAW_COLUMNS:
            if column not in df.columns:
                df[column] = 0.0
            df[column] = pd.to_numeric(df[column], errors='coerce').fillna(0.0).astype('float64')

        df = df.drop_duplicates(subset=['timestamp'], keep='last')
        df = df.sort_values('timestamp').reset_index(drop=True)

        sessions = df['sessions'].replace(0, np.nan)
        df['bounce_rate'] = (df['bounces'] / sessions * 100).fillna(0.0)
        df['avg_session_duration'] = (df['session_duration'] / sessions).fillna(0.0)
        df['conversion_rate'] = (df['conversions'] / sessions * 100).fillna(0.0)

        self.cleaned_data = df[FRAME_COLUMNS]
        return self

    @property
    def frame(self) -> pd.DataFrame:
        if self.cleaned_data is None:
            self.clean_data()
        return self.cleaned_data


def to_frame(samples: TelemetryInput) -> pd.DataFrame:
    """Clean telemetry frame from any supported container"""
    if isinstance(samples, pd.DataFrame) and list(samples.columns) == FRAME_COLUMNS:
        return samples
    return DataPipeline(samples).clean_data().frame


def slice_window(frame: pd.DataFrame, start: datetime, end: datetime) -> pd.DataFrame:
    """Rows with ``start <= timestamp <= end``"""
    if frame.empty:
        return frame
    mask = (frame['timestamp'] >= pd.Timestamp(start)) & (frame['timestamp'] <= pd.Timestamp(end))
    return frame.loc[mask]


def calculate_window_metrics(window_frame: pd.DataFrame) -> Tuple[Dict[str, float], Dict[str, float], int]:
    """
    Aggregate a window's samples

    Returns:
        (metrics, totals, sample_count). Count metrics in ``metrics`` are
        per-sample means so they are comparable with the per-sample
        reference; rates are computed from the window totals.
    """
    count = int(len(window_frame))
    totals = {column: float(window_frame[column].sum()) if count else 0.0 for column in RAW_COLUMNS}

    if count == 0:
        return {name: 0.0 for name in METRIC_NAMES}, totals, 0

    metrics = {name: totals[name] / count for name in COUNT_METRICS}
    sessions = totals['sessions']
    metrics['bounce_rate'] = totals['bounces'] / sessions * 100 if sessions > 0 else 0.0
    metrics['avg_session_duration'] = totals['session_duration'] / sessions if sessions > 0 else 0.0
    metrics['conversion_rate'] = totals['conversions'] / sessions * 100 if sessions > 0 else 0.0

    return metrics, totals, count


def metrics_per_window(
    event_timestamp: datetime,
    samples: TelemetryInput,
) -> Dict[str, Dict[str, Any]]:
    """
    Observed metrics for each of the four windows after an event

    Returns:
        window key -> {'metrics', 'totals', 'sample_count'}
    """
    frame = to_frame(samples)
    result = {}
    for key, spec in TIME_WINDOWS.items():
        window = slice_window(frame, event_timestamp, event_timestamp + spec.duration)
        metrics, totals, count = calculate_window_metrics(window)
        result[key] = {'metrics': metrics, 'totals': totals, 'sample_count': count}
    return result


def infer_sample_interval(frame: pd.DataFrame, default: timedelta = timedelta(hours=1)) -> timedelta:
    """Median spacing between consecutive samples"""
    if len(frame) < 2:
        return default
    diffs = frame['timestamp'].diff().dropna()
    diffs = diffs[diffs > pd.Timedelta(0)]
    if diffs.empty:
        return default
    return diffs.median().to_pytimedelta()


class HistoricalDataSource(ABC):
    """Source of telemetry samples (an analytics provider client)"""

    @abstractmethod
    def fetch(self, start: datetime, end: datetime) -> Iterable[Any]:
        """
        Return telemetry samples with ``start <= timestamp <= end``

        Implementations may block on I/O and raise on failure; the
        orchestrator retries and degrades per window.
        """


class InMemoryDataSource(HistoricalDataSource):
    """Data source backed by an already-loaded telemetry frame"""

    def __init__(self, samples: TelemetryInput):
        self.frame = to_frame(samples)

    def fetch(self, start: datetime, end: datetime) -> pd.DataFrame:
        return slice_window(self.frame, start, end)
