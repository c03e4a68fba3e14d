"""
Spot Impact Orchestrator
Sequences the engine for one event and runs batches in parallel

For each event:
1. Fetch a 30-day history before the event and the observations after it
2. Compute the reference (cached per event and window) and gate it
3. Temporal impact, insights and temporal ROI
4. Conversion funnel (and control group comparison when supplied)
5. Predictive projection

Fetch failures degrade the affected window (or, for the history, every
window) to the zero-sample reference. Nothing raised inside an event's
analysis crosses ``analyze_event``; batches never abort on one event.
"""

import math
import threading
import time
from collections import OrderedDict
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .config import resolve_config
from .conversion_analysis import ConversionAnalyzer
from .data_pipeline import HistoricalDataSource, calculate_window_metrics, empty_frame, normalize_timestamp, to_frame
from .exceptions import ConfigurationError, ExternalFetchError, SpotImpactError
from .logging_config import get_logger
from .predictive_analysis import PredictiveProjector
from .reference import ReferenceCalculator
from .significance import SignificanceEngine
from .temporal_analysis import TemporalImpactAnalyzer
from .types import (
    METRIC_NAMES,
    REPORT_DEGRADED,
    REPORT_OK,
    REPORT_UNAVAILABLE,
    TIME_WINDOWS,
    VALIDATION_INSUFFICIENT,
    EventRecord,
    EventReport,
    ReferenceMap,
    ReferenceStatistic,
    ValidationFlag,
)
from .validation import AnomalyGate

logger = get_logger("spot_impact.orchestrator")


POLL_INTERVAL_SECONDS = 0.05


def _empty_window() -> Dict[str, Any]:
    metrics, totals, count = calculate_window_metrics(empty_frame())
    return {'metrics': metrics, 'totals': totals, 'sample_count': count}


class SpotImpactOrchestrator:
    """Composes the engine's services around a historical data source"""

    def __init__(
        self,
        data_source: HistoricalDataSource,
        config: Optional[Mapping[str, Any]] = None,
        gate: Optional[AnomalyGate] = None,
    ):
        self.data_source = data_source
        self.config = resolve_config(config)
        self.gate = gate or AnomalyGate(self.config)

        significance = SignificanceEngine(self.config)
        self.reference_calculator = ReferenceCalculator(self.config)
        self.temporal = TemporalImpactAnalyzer(self.config, gate=self.gate, significance=significance)
        self.conversion = ConversionAnalyzer(self.config, gate=self.gate, significance=significance)
        self.projector = PredictiveProjector(self.config, gate=self.gate)

        orchestrator = self.config['orchestrator']
        self.max_workers = int(orchestrator['max_workers'])
        self.event_timeout = float(orchestrator['event_timeout_seconds'])
        self.fetch_retries = int(orchestrator['fetch_retries'])
        self.retry_backoff = float(orchestrator['retry_backoff_seconds'])
        self.lookback = timedelta(days=int(self.config['reference']['lookback_days']))
        self.reference_cache_size = int(orchestrator['reference_cache_size'])

        self._reference_cache: "OrderedDict[Tuple[str, str], Dict[str, ReferenceStatistic]]" = OrderedDict()
        self._cache_lock = threading.Lock()

    # ------------------------------------------------------------------
    # Data access
    # ------------------------------------------------------------------

    def fetch_with_retry(
        self,
        start: datetime,
        end: datetime,
        event_id: str,
        window: Optional[str] = None,
    ) -> pd.DataFrame:
        """
        Fetch telemetry, retrying with linear backoff

        Raises:
            ExternalFetchError: When every attempt failed
        """
        attempts = self.fetch_retries + 1
        last_error: Optional[Exception] = None
        scope = window or 'history'

        for attempt in range(1, attempts + 1):
            try:
                return to_frame(self.data_source.fetch(start, end))
            except Exception as e:
                last_error = e
                if attempt < attempts:
                    logger.warning(f"{event_id} {scope}: fetch attempt {attempt}/{attempts} failed ({e}); retrying")
                    time.sleep(self.retry_backoff * attempt)

        logger.error(f"{event_id} {scope}: fetch failed after {attempts} attempts: {last_error}")
        raise ExternalFetchError(
            f"Telemetry fetch failed for {scope}: {last_error}", event_id=event_id, window=window
        ) from last_error

    def reference_for(self, event_id: str, event_ts: datetime, history: pd.DataFrame) -> ReferenceMap:
        """
        Reference map, served from the (event_id, window) cache when present

        The cache is bounded by ``reference_cache_size``; least recently
        used entries are evicted first.
        """
        with self._cache_lock:
            cached = {w: self._reference_cache.get((event_id, w)) for w in TIME_WINDOWS}
            for window, stats in cached.items():
                if stats is not None:
                    self._reference_cache.move_to_end((event_id, window))
        if all(stats is not None for stats in cached.values()):
            logger.debug(f"{event_id}: reference cache hit")
            return dict(cached)

        reference = self.reference_calculator.compute_reference(event_ts, history)
        with self._cache_lock:
            for window, stats in reference.items():
                self._reference_cache[(event_id, window)] = stats
                self._reference_cache.move_to_end((event_id, window))
            while len(self._reference_cache) > self.reference_cache_size:
                self._reference_cache.popitem(last=False)
        return reference

    def clear_cache(self):
        with self._cache_lock:
            self._reference_cache.clear()

    # ------------------------------------------------------------------
    # Single event
    # ------------------------------------------------------------------

    def analyze_event(
        self,
        event: EventRecord,
        conversion_data: Any = None,
        control_data: Any = None,
        market_data: Optional[Mapping[str, Any]] = None,
    ) -> EventReport:
        """
        Full analysis of one event

        Returns:
            EventReport with status ``ok``, ``degraded`` (some data was
            missing) or ``unavailable`` (the event cannot be analysed)
        """
        logger.info(f"Analyzing event {event.id}")
        try:
            event_ts = self._require_timestamp(event)
            errors: List[str] = []
            degraded_windows = set()

            try:
                history = self.fetch_with_retry(event_ts - self.lookback, event_ts, event.id)
                history = history[history['timestamp'] < pd.Timestamp(event_ts)]
            except ExternalFetchError as e:
                errors.append(str(e))
                history = None
                degraded_windows.update(TIME_WINDOWS)

            observed = {}
            for key, spec in TIME_WINDOWS.items():
                try:
                    window_frame = self.fetch_with_retry(event_ts, event_ts + spec.duration, event.id, key)
                    metrics, totals, count = calculate_window_metrics(window_frame)
                    observed[key] = {'metrics': metrics, 'totals': totals, 'sample_count': count}
                except ExternalFetchError as e:
                    errors.append(str(e))
                    observed[key] = _empty_window()
                    degraded_windows.add(key)

            report = self._analyze_with_data(
                event, history, observed, degraded_windows, conversion_data, control_data, market_data
            )
            report.errors.extend(errors)
            if errors:
                report.status = REPORT_DEGRADED

        except ConfigurationError as e:
            logger.warning(f"Event {event.id} unavailable: {e}")
            return EventReport(event_id=event.id, status=REPORT_UNAVAILABLE, errors=[str(e)])
        except SpotImpactError as e:
            logger.error(f"Event {event.id} failed: {e}")
            return self.degraded_report(event, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error analyzing event {event.id}")
            return self.degraded_report(event, f"Unexpected error: {e}")

        logger.info(f"Event {event.id} analyzed: {report.status}")
        return report

    def degraded_report(self, event: EventRecord, reason: str) -> EventReport:
        """
        Insufficient-data report for an event whose data is unavailable

        Every window compares against the zero-sample reference; the
        prediction is made from an empty history.
        """
        try:
            self._require_timestamp(event)
        except ConfigurationError as e:
            return EventReport(event_id=event.id, status=REPORT_UNAVAILABLE, errors=[reason, str(e)])

        logger.warning(f"Event {event.id} degraded to insufficient data: {reason}")
        observed = {key: _empty_window() for key in TIME_WINDOWS}
        report = self._analyze_with_data(event, None, observed, set(TIME_WINDOWS), None, None, None)
        report.status = REPORT_DEGRADED
        report.errors.append(reason)
        return report

    def _require_timestamp(self, event: EventRecord) -> datetime:
        ts = normalize_timestamp(event.timestamp)
        if ts is None:
            raise ConfigurationError(f"Event {event.id} has no timestamp", field='timestamp')
        return ts

    def _analyze_with_data(
        self,
        event: EventRecord,
        history: Optional[pd.DataFrame],
        observed: Dict[str, Dict[str, Any]],
        degraded_windows: set,
        conversion_data: Any,
        control_data: Any,
        market_data: Optional[Mapping[str, Any]],
    ) -> EventReport:
        event_ts = self._require_timestamp(event)

        if history is None:
            history = empty_frame()
            reference = self.reference_calculator.compute_reference(event_ts, history)
        else:
            reference = self.reference_for(event.id, event_ts, history)
        for window in degraded_windows:
            reference[window] = {metric: ReferenceStatistic.empty() for metric in METRIC_NAMES}
        reference, reference_flags = self.gate.validate_reference(reference)

        temporal_impact = self.temporal.analyze_temporal_impact(event, observed, reference)
        funnel = self.conversion.analyze_funnel(event, conversion_data, reference)
        control_groups = None
        if control_data is not None:
            control_groups = self.conversion.analyze_control_groups(event, conversion_data, control_data)
        prediction = self.projector.generate_predictive_analysis(event, history, market_data, temporal_impact)

        flags: List[ValidationFlag] = list(reference_flags)
        for analysis in temporal_impact.values():
            flags.extend(analysis.flags)
        flags.extend(funnel.flags)
        if control_groups is not None:
            flags.extend(control_groups.flags)
        flags.extend(prediction.flags)

        insufficient = any(a.validation == VALIDATION_INSUFFICIENT for a in temporal_impact.values())

        return EventReport(
            event_id=event.id,
            status=REPORT_DEGRADED if insufficient else REPORT_OK,
            reference=reference,
            temporal_impact=temporal_impact,
            insights=self.temporal.generate_temporal_insights(temporal_impact),
            temporal_roi=self.temporal.calculate_temporal_roi(temporal_impact, event.investment or 0.0),
            funnel=funnel,
            control_groups=control_groups,
            prediction=prediction,
            flags=flags,
        )

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def analyze_batch(
        self,
        events: Sequence[EventRecord],
        conversion_data: Optional[Mapping[str, Any]] = None,
        control_data: Optional[Mapping[str, Any]] = None,
        market_data: Optional[Mapping[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> List[EventReport]:
        """
        Analyse events independently on a bounded worker pool

        Args:
            events: Events to analyse
            conversion_data: Optional event id -> conversion rows
            control_data: Optional event id -> control group rows
            market_data: Market inputs shared by every event
            cancel_event: When set, the batch stops waiting and returns

        Returns:
            One report per event, in input order. Events that time out or
            are still pending at cancellation get an insufficient-data
            report.

        An event times out ``event_timeout`` after it starts, and in any case
        once its worker slot's deadline from batch start has passed
        (``event_timeout * ceil((index + 1) / max_workers)``). Threads stuck
        in a fetch keep their slot, so queued events behind them are
        degraded at that deadline instead of waiting for the slot.
        """
        conversion_data = conversion_data or {}
        control_data = control_data or {}
        logger.info(f"Analyzing batch of {len(events)} events with {self.max_workers} workers")

        reports: Dict[int, EventReport] = {}
        started: Dict[int, float] = {}
        started_lock = threading.Lock()

        def run(index: int, event: EventRecord) -> EventReport:
            with started_lock:
                started[index] = time.monotonic()
            return self.analyze_event(
                event,
                conversion_data=conversion_data.get(event.id),
                control_data=control_data.get(event.id),
                market_data=market_data,
            )

        batch_start = time.monotonic()
        slot_deadlines = {
            index: batch_start + self.event_timeout * math.ceil((index + 1) / self.max_workers)
            for index in range(len(events))
        }

        def deadline(index: int) -> float:
            with started_lock:
                start = started.get(index)
            if start is None:
                return slot_deadlines[index]
            return min(start + self.event_timeout, slot_deadlines[index])

        executor = ThreadPoolExecutor(max_workers=self.max_workers)
        futures: Dict[Future, int] = {
            executor.submit(run, index, event): index for index, event in enumerate(events)
        }
        pending = set(futures)

        try:
            while pending:
                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"Batch cancelled with {len(pending)} events pending")
                    break

                done, pending = wait(pending, timeout=POLL_INTERVAL_SECONDS, return_when=FIRST_COMPLETED)
                for future in done:
                    reports[futures[future]] = future.result()

                now = time.monotonic()
                timed_out = {f for f in pending if not f.done() and now > deadline(futures[f])}
                for future in sorted(timed_out, key=futures.get):
                    index = futures[future]
                    future.cancel()
                    reports[index] = self.degraded_report(
                        events[index], f"Analysis timed out after {self.event_timeout:g}s"
                    )
                pending -= timed_out
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        for future in pending:
            index = futures[future]
            if future.done() and not future.cancelled():
                reports[index] = future.result()
            else:
                reports[index] = self.degraded_report(events[index], "Batch cancelled before completion")

        ordered = [reports[index] for index in range(len(events))]
        logger.info(
            f"Batch complete: {sum(r.status == REPORT_OK for r in ordered)} ok, "
            f"{sum(r.status == REPORT_DEGRADED for r in ordered)} degraded, "
            f"{sum(r.status == REPORT_UNAVAILABLE for r in ordered)} unavailable"
        )
        return ordered
