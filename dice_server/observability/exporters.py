"""
Built-in span and metric exporters.

Exporters receive immutable snapshots (``ReadableSpan`` / ``MetricsData``)
and report an ``ExportResult``.  They never raise to their caller; the
pipeline decides what a failure means (drop, or retry on the next tick).
"""

import enum
import json
import sys
import threading
from typing import IO, List, Optional, Sequence

from .metrics import MetricsData
from .tracing import ReadableSpan


class ExportResult(enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class SpanExporter:
    """Destination for finished spans."""

    def export(self, spans: Sequence[ReadableSpan]) -> ExportResult:
        raise NotImplementedError

    def shutdown(self) -> None:
        pass


class MetricExporter:
    """Destination for collected metrics."""

    def export(self, data: MetricsData) -> ExportResult:
        raise NotImplementedError

    def shutdown(self) -> None:
        pass


# ── Console (human-readable) ─────────────────────────────────────


class ConsoleSpanExporter(SpanExporter):
    """Writes each span as a JSON document to a text stream (stdout by default)."""

    def __init__(self, out: Optional[IO[str]] = None, *, pretty: bool = True) -> None:
        self._out = out
        self._indent = 2 if pretty else None
        self._lock = threading.Lock()

    def export(self, spans: Sequence[ReadableSpan]) -> ExportResult:
        out = self._out or sys.stdout
        try:
            with self._lock:
                for span in spans:
                    out.write(json.dumps(span.to_dict(), indent=self._indent, default=str))
                    out.write("\n")
                out.flush()
        except (OSError, ValueError):
            # Closed or broken stream
            return ExportResult.FAILURE
        return ExportResult.SUCCESS


class ConsoleMetricExporter(MetricExporter):
    """Writes each collection as a JSON document to a text stream."""

    def __init__(self, out: Optional[IO[str]] = None, *, pretty: bool = True) -> None:
        self._out = out
        self._indent = 2 if pretty else None
        self._lock = threading.Lock()

    def export(self, data: MetricsData) -> ExportResult:
        out = self._out or sys.stdout
        try:
            with self._lock:
                out.write(json.dumps(data.to_dict(), indent=self._indent, default=str))
                out.write("\n")
                out.flush()
        except (OSError, ValueError):
            return ExportResult.FAILURE
        return ExportResult.SUCCESS


# ── In-memory (tests / debugging) ────────────────────────────────


class InMemorySpanExporter(SpanExporter):
    """Stores exported spans; provides ``get_finished_spans()`` and ``clear()``."""

    def __init__(self) -> None:
        self._spans: List[ReadableSpan] = []
        self._lock = threading.Lock()

    def export(self, spans: Sequence[ReadableSpan]) -> ExportResult:
        with self._lock:
            self._spans.extend(spans)
        return ExportResult.SUCCESS

    def get_finished_spans(self) -> List[ReadableSpan]:
        with self._lock:
            return list(self._spans)

    def clear(self) -> None:
        with self._lock:
            self._spans.clear()


class InMemoryMetricExporter(MetricExporter):
    """Stores every exported ``MetricsData`` batch."""

    def __init__(self) -> None:
        self._batches: List[MetricsData] = []
        self._lock = threading.Lock()

    def export(self, data: MetricsData) -> ExportResult:
        with self._lock:
            self._batches.append(data)
        return ExportResult.SUCCESS

    def get_exported(self) -> List[MetricsData]:
        with self._lock:
            return list(self._batches)

    def clear(self) -> None:
        with self._lock:
            self._batches.clear()
