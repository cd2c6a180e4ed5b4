"""
Export pipeline: span processors and metric readers.

Traces:
    ``SimpleSpanProcessor`` exports every span synchronously as it ends.
    ``BatchSpanProcessor`` queues spans and exports them from a worker
    thread on a timer or when a full batch is waiting.

Metrics:
    ``MetricReader`` pulls cumulative state from a ``MeterProvider`` and
    converts it to the reader's temporality.  ``PeriodicExportingMetricReader``
    does that on its own timer thread and pushes the result to an exporter.

Every sink runs independently: a failing or hanging exporter only delays
its own processor or reader.  Failed exports are retried on the next
scheduled tick, never immediately.
"""

import collections
import threading
import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from ..constants import (
    DEFAULT_EXPORT_INTERVAL_SECONDS,
    DEFAULT_MAX_EXPORT_BATCH_SIZE,
    DEFAULT_MAX_QUEUE_SIZE,
    DEFAULT_SCHEDULE_DELAY_SECONDS,
)
from .exporters import ExportResult, MetricExporter, SpanExporter
from .logging import setup_structured_logger
from .metrics import (
    AttributesKey,
    HistogramDataPoint,
    InstrumentKind,
    MeterProvider,
    Metric,
    MetricsData,
    NumberDataPoint,
    Temporality,
    _attributes_key,
)
from .tracing import ReadableSpan, SpanProcessor

# ── Span processors ──────────────────────────────────────────────


class SimpleSpanProcessor(SpanProcessor):
    """Exports each span synchronously when it ends.

    Exporter failures are logged and dropped; they never reach the code
    that ended the span.
    """

    def __init__(self, exporter: SpanExporter) -> None:
        self.exporter = exporter
        self.logger = setup_structured_logger("telemetry", "telemetry.log")
        self._shutdown = False

    def on_end(self, span: ReadableSpan) -> None:
        if self._shutdown:
            return
        try:
            result = self.exporter.export((span,))
        except Exception:
            self.logger.exception("Span exporter %s raised", type(self.exporter).__name__)
            return
        if result is not ExportResult.SUCCESS:
            self.logger.warning(
                "Span exporter %s failed for span %s",
                type(self.exporter).__name__,
                span.name,
                extra={"exporter": type(self.exporter).__name__, "signal": "traces"},
            )

    def shutdown(self) -> None:
        self._shutdown = True
        self.exporter.shutdown()


class BatchSpanProcessor(SpanProcessor):
    """Queues finished spans and exports them in batches from a worker thread.

    Args:
        exporter: Destination for the batches.
        max_queue_size: Spans beyond this are dropped (and counted).
        schedule_delay: Seconds between export ticks.
        max_export_batch_size: Largest batch handed to the exporter; a full
            batch wakes the worker before the delay elapses.
    """

    def __init__(
        self,
        exporter: SpanExporter,
        *,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        schedule_delay: float = DEFAULT_SCHEDULE_DELAY_SECONDS,
        max_export_batch_size: int = DEFAULT_MAX_EXPORT_BATCH_SIZE,
    ) -> None:
        if schedule_delay <= 0:
            raise ValueError(f"schedule_delay must be positive, got {schedule_delay}")
        if max_export_batch_size > max_queue_size:
            raise ValueError("max_export_batch_size must not exceed max_queue_size")
        self.exporter = exporter
        self.max_queue_size = max_queue_size
        self.schedule_delay = schedule_delay
        self.max_export_batch_size = max_export_batch_size
        self.dropped_spans = 0
        self.logger = setup_structured_logger("telemetry", "telemetry.log")

        self._queue: Deque[ReadableSpan] = collections.deque()
        self._condition = threading.Condition()
        self._export_lock = threading.Lock()
        self._stopped = False
        self._retry_pending = False
        self._worker = threading.Thread(target=self._run, daemon=True, name="span-batcher")
        self._worker.start()

    @property
    def queued(self) -> int:
        with self._condition:
            return len(self._queue)

    def on_end(self, span: ReadableSpan) -> None:
        with self._condition:
            if self._stopped:
                return
            if len(self._queue) >= self.max_queue_size:
                self.dropped_spans += 1
                if self.dropped_spans == 1:
                    self.logger.warning("Span queue full (%d); dropping spans", self.max_queue_size)
                return
            self._queue.append(span)
            if len(self._queue) >= self.max_export_batch_size and not self._retry_pending:
                self._condition.notify()

    def _run(self) -> None:
        while True:
            with self._condition:
                if not self._stopped and (
                    self._retry_pending or len(self._queue) < self.max_export_batch_size
                ):
                    self._condition.wait(self.schedule_delay)
                if self._stopped:
                    return
            self._retry_pending = not self._export_queued()

    def _export_queued(self) -> bool:
        """Export everything queued, one batch at a time.

        On failure the batch goes back to the head of the queue (as far as
        capacity allows) and the method gives up until the next tick.
        """
        with self._export_lock:
            while True:
                with self._condition:
                    size = min(len(self._queue), self.max_export_batch_size)
                    batch = [self._queue.popleft() for _ in range(size)]
                if not batch:
                    return True
                if self._export(batch) is ExportResult.SUCCESS:
                    continue
                with self._condition:
                    room = max(self.max_queue_size - len(self._queue), 0)
                    keep = batch[:room]
                    self.dropped_spans += len(batch) - len(keep)
                    self._queue.extendleft(reversed(keep))
                self.logger.warning(
                    "Batch of %d span(s) not exported; retrying on next tick",
                    len(batch),
                    extra={"exporter": type(self.exporter).__name__, "batch_size": len(batch)},
                )
                return False

    def _export(self, batch: List[ReadableSpan]) -> ExportResult:
        try:
            return self.exporter.export(batch)
        except Exception:
            self.logger.exception("Span exporter %s raised", type(self.exporter).__name__)
            return ExportResult.FAILURE

    def force_flush(self, timeout: Optional[float] = None) -> bool:
        return self._export_queued()

    def shutdown(self) -> None:
        with self._condition:
            if self._stopped:
                return
            self._stopped = True
            self._condition.notify_all()
        self._worker.join(timeout=self.schedule_delay + 1)
        self._export_queued()
        self.exporter.shutdown()

    def status(self) -> Dict[str, Any]:
        return {
            "exporter": type(self.exporter).__name__,
            "queued": self.queued,
            "dropped": self.dropped_spans,
            "retry_pending": self._retry_pending,
        }


# ── Metric readers ───────────────────────────────────────────────

_StreamKey = Tuple[str, str, AttributesKey]


class MetricReader:
    """Pulls metrics from a ``MeterProvider`` in a fixed temporality.

    Cumulative readers report running totals and never reset.  Delta
    readers report the change since their last *committed* collection;
    the baseline only moves forward once the data was delivered.
    """

    def __init__(self, temporality: Temporality = Temporality.CUMULATIVE) -> None:
        self.temporality = temporality
        self._provider: Optional[MeterProvider] = None
        self._baseline: Dict[_StreamKey, Any] = {}
        self._collect_lock = threading.Lock()

    def _register(self, provider: MeterProvider) -> None:
        if self._provider is not None:
            raise ValueError(f"{type(self).__name__} is already registered with a MeterProvider")
        self._provider = provider

    def _collect(self) -> Tuple[MetricsData, Optional[Dict[_StreamKey, Any]]]:
        if self._provider is None:
            raise RuntimeError(f"{type(self).__name__} is not registered with a MeterProvider")
        data = self._provider.collect()
        if self.temporality is Temporality.CUMULATIVE:
            return data, None
        return self._to_delta(data)

    def _commit(self, pending: Optional[Dict[_StreamKey, Any]]) -> None:
        if pending is not None:
            self._baseline = pending

    def collect(self) -> MetricsData:
        """Collect and immediately commit (pull-style readers)."""
        with self._collect_lock:
            data, pending = self._collect()
            self._commit(pending)
            return data

    def _to_delta(self, data: MetricsData) -> Tuple[MetricsData, Dict[_StreamKey, Any]]:
        pending = dict(self._baseline)
        metrics: List[Metric] = []
        for metric in data.metrics:
            if metric.kind is InstrumentKind.OBSERVABLE_GAUGE:
                metrics.append(metric)
                continue
            points = []
            for point in metric.points:
                key = (metric.scope, metric.name, _attributes_key(point.attributes))
                previous = self._baseline.get(key)
                pending[key] = point
                delta = _delta_point(point, previous)
                if delta is not None:
                    points.append(delta)
            if points:
                metrics.append(
                    replace(metric, temporality=Temporality.DELTA, points=tuple(points))
                )
        return MetricsData(data.resource, tuple(metrics)), pending

    def force_flush(self, timeout: Optional[float] = None) -> bool:
        return True

    def shutdown(self) -> None:
        pass


def _delta_point(point, previous):
    """Difference between two cumulative points; ``None`` when nothing changed."""
    if isinstance(point, HistogramDataPoint):
        if previous is None:
            return point if point.count else None
        count = point.count - previous.count
        if count == 0:
            return None
        return HistogramDataPoint(
            attributes=point.attributes,
            start_time_unix_nano=previous.time_unix_nano,
            time_unix_nano=point.time_unix_nano,
            count=count,
            sum=point.sum - previous.sum,
            bucket_counts=tuple(a - b for a, b in zip(point.bucket_counts, previous.bucket_counts)),
            explicit_bounds=point.explicit_bounds,
        )

    base = previous.value if previous is not None else 0
    value = point.value - base
    if value == 0:
        return None
    start = previous.time_unix_nano if previous is not None else point.start_time_unix_nano
    return NumberDataPoint(point.attributes, start, point.time_unix_nano, value)


class InMemoryMetricReader(MetricReader):
    """Reader collected on demand; used by tests and the health endpoint."""


class PeriodicExportingMetricReader(MetricReader):
    """Collects and exports on its own timer thread.

    Args:
        exporter: Destination for each collection.
        interval: Seconds between ticks.
        temporality: Cumulative or delta view for this reader only.
    """

    def __init__(
        self,
        exporter: MetricExporter,
        *,
        interval: float = DEFAULT_EXPORT_INTERVAL_SECONDS,
        temporality: Temporality = Temporality.CUMULATIVE,
    ) -> None:
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        super().__init__(temporality)
        self.exporter = exporter
        self.interval = interval
        self.exports = 0
        self.consecutive_failures = 0
        self.last_success: Optional[float] = None
        self.logger = setup_structured_logger("telemetry", "telemetry.log")
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def _register(self, provider: MeterProvider) -> None:
        super()._register(provider)
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"metric-reader-{type(self.exporter).__name__}",
        )
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            self._collect_and_export()

    def _collect_and_export(self) -> bool:
        exporter_name = type(self.exporter).__name__
        with self._collect_lock:
            try:
                data, pending = self._collect()
            except Exception:
                self.logger.exception("Metric collection for %s failed", exporter_name)
                return False
            try:
                result = self.exporter.export(data)
            except Exception:
                self.logger.exception("Metric exporter %s raised", exporter_name)
                result = ExportResult.FAILURE

            if result is ExportResult.SUCCESS:
                self._commit(pending)
                self.exports += 1
                self.consecutive_failures = 0
                self.last_success = time.time()
                return True

            self.consecutive_failures += 1
            self.logger.warning(
                "Metric export via %s failed (%d in a row); retrying on next tick",
                exporter_name,
                self.consecutive_failures,
                extra={"exporter": exporter_name, "signal": "metrics"},
            )
            return False

    def force_flush(self, timeout: Optional[float] = None) -> bool:
        return self._collect_and_export()

    def shutdown(self) -> None:
        if self._stop.is_set():
            return
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.interval + 1)
            self._collect_and_export()
        self.exporter.shutdown()

    def status(self) -> Dict[str, Any]:
        last = (
            datetime.fromtimestamp(self.last_success, tz=timezone.utc).isoformat()
            if self.last_success
            else None
        )
        return {
            "exporter": type(self.exporter).__name__,
            "temporality": self.temporality.value,
            "interval_seconds": self.interval,
            "exports": self.exports,
            "consecutive_failures": self.consecutive_failures,
            "last_success": last,
        }


def span_processor_status(processors: Sequence[SpanProcessor]) -> List[Dict[str, Any]]:
    """Health summary for the span processors that report one."""
    return [p.status() for p in processors if hasattr(p, "status")]
