"""
Pytest configuration and fixtures for testing
"""

import threading
from datetime import datetime, timedelta

import numpy as np
import pytest

from spot_impact.config import resolve_config
from spot_impact.data_pipeline import HistoricalDataSource, InMemoryDataSource
from spot_impact.types import EventRecord, MetricSample


# Thursday evening slot
EVENT_TIME = datetime(2024, 3, 14, 20, 0)
SPIKE_HOURS = 4
SPIKE_FACTOR = 1.6


def make_sample(timestamp, users):
    """Telemetry bucket with fixed ratios: 40% bounce, 120s sessions, 2% conversion"""
    sessions = users * 1.2
    return MetricSample(
        timestamp=timestamp,
        active_users=users,
        sessions=sessions,
        pageviews=sessions * 2.5,
        bounces=sessions * 0.4,
        session_duration=sessions * 120,
        conversions=sessions * 0.02,
    )


def daily_curve(hour):
    """Expected active users per hour of day"""
    return 100 + 20 * np.sin(2 * np.pi * hour / 24)


@pytest.fixture(scope="session")
def event_time():
    return EVENT_TIME


@pytest.fixture(scope="session")
def historical_samples():
    """30 days of hourly telemetry before the event with a daily cycle and noise"""
    np.random.seed(42)  # For reproducibility

    start = EVENT_TIME - timedelta(days=30)
    samples = []
    for i in range(30 * 24):
        ts = start + timedelta(hours=i)
        users = max(1.0, daily_curve(ts.hour) + np.random.normal(0, 3))
        samples.append(make_sample(ts, float(users)))
    return samples


@pytest.fixture(scope="session")
def observed_samples():
    """30 days of noise-free hourly telemetry from the event onwards, spiking for 4 hours"""
    samples = []
    for i in range(30 * 24 + 1):
        ts = EVENT_TIME + timedelta(hours=i)
        users = daily_curve(ts.hour)
        if i < SPIKE_HOURS:
            users *= SPIKE_FACTOR
        samples.append(make_sample(ts, float(users)))
    return samples


@pytest.fixture(scope="session")
def all_samples(historical_samples, observed_samples):
    return historical_samples + observed_samples


@pytest.fixture
def spot_event():
    return EventRecord(
        id='spot-1',
        timestamp=EVENT_TIME,
        duration_seconds=30,
        channel='Channel One',
        program_title='Evening News',
        commercial_type='brand',
        version='A',
        investment=1000.0,
    )


@pytest.fixture
def conversion_rows():
    """Conversion report rows for the spot (totals: 10000 / 400 / 360 / 216 / 18)"""
    return [
        {
            'impressions': 6000, 'clicks': 240, 'landingPageViews': 216,
            'engagedSessions': 130, 'conversions': 10,
            'conversionRate': 4.0, 'purchaseRevenue': 500.0,
        },
        {
            'impressions': 4000, 'clicks': 160, 'landingPageViews': 144,
            'engagedSessions': 86, 'conversions': 8,
            'conversionRate': 5.0, 'purchaseRevenue': 400.0,
        },
    ]


@pytest.fixture
def control_rows():
    """Conversion report rows for the control group"""
    return [
        {
            'impressions': 8000, 'clicks': 200, 'landingPageViews': 170,
            'engagedSessions': 100, 'conversions': 6,
            'conversionRate': 3.0, 'purchaseRevenue': 300.0,
        },
    ]


@pytest.fixture
def fast_config():
    """Configuration with no retry backoff and a short event timeout"""
    return resolve_config({
        'orchestrator': {
            'max_workers': 2,
            'event_timeout_seconds': 5,
            'fetch_retries': 2,
            'retry_backoff_seconds': 0,
        },
    })


class FlakyDataSource(HistoricalDataSource):
    """Fails the first ``failures`` fetches, then serves from memory"""

    def __init__(self, samples, failures=0):
        self.inner = InMemoryDataSource(samples)
        self.failures = failures
        self.calls = 0
        self._lock = threading.Lock()

    def fetch(self, start, end):
        with self._lock:
            self.calls += 1
            failing = self.calls <= self.failures
        if failing:
            raise ConnectionError("analytics provider unavailable")
        return self.inner.fetch(start, end)


class HistoryOutageSource(HistoricalDataSource):
    """Serves observations after an event but fails every history request"""

    def __init__(self, samples):
        self.inner = InMemoryDataSource(samples)

    def fetch(self, start, end):
        if end - start >= timedelta(days=30) and end <= EVENT_TIME:
            raise TimeoutError("history request timed out")
        return self.inner.fetch(start, end)


class BlockingDataSource(HistoricalDataSource):
    """Blocks every fetch until ``release`` is set"""

    def __init__(self, samples):
        self.inner = InMemoryDataSource(samples)
        self.release = threading.Event()

    def fetch(self, start, end):
        self.release.wait(timeout=10)
        return self.inner.fetch(start, end)


class SlowDataSource(HistoricalDataSource):
    """Takes ``delay`` seconds per fetch until ``release`` is set"""

    def __init__(self, samples, delay=1.0):
        self.inner = InMemoryDataSource(samples)
        self.delay = delay
        self.release = threading.Event()

    def fetch(self, start, end):
        self.release.wait(timeout=self.delay)
        return self.inner.fetch(start, end)


@pytest.fixture
def flaky_source_factory(all_samples):
    def factory(failures=0):
        return FlakyDataSource(all_samples, failures=failures)
    return factory


@pytest.fixture
def history_outage_source(all_samples):
    return HistoryOutageSource(all_samples)


@pytest.fixture
def blocking_source(all_samples):
    source = BlockingDataSource(all_samples)
    yield source
    source.release.set()


@pytest.fixture
def slow_source(all_samples):
    source = SlowDataSource(all_samples, delay=1.0)
    yield source
    source.release.set()
