"""
Observability package: tracing, metrics, export pipelines and error tracking.

Provides:
- ``TracerProvider`` / ``Span``: spans with explicit ``Context`` passing
- ``MeterProvider`` / ``Counter`` / ``Histogram`` / ``ObservableGauge``
- ``SimpleSpanProcessor`` / ``BatchSpanProcessor`` / ``PeriodicExportingMetricReader``
- Console exporters, and OTLP (HTTP or gRPC) through the OpenTelemetry SDK exporters
- ``registry``: process-wide, init-once provider registration
- ``RequestTracer``: Flask middleware for trace propagation & request spans
- ``ErrorTracker``: Centralised error tracking and the 500 boundary
- ``setup_structured_logger``: JSON-formatted logging
"""

from .context import EMPTY_CONTEXT, Context, SpanContext
from .errors import ErrorTracker
from .exporters import (
    ConsoleMetricExporter,
    ConsoleSpanExporter,
    ExportResult,
    InMemoryMetricExporter,
    InMemorySpanExporter,
)
from .logging import setup_structured_logger
from .metrics import InstrumentError, MeterProvider, Observation, Temporality
from .middleware import RequestTracer, current_context, current_span
from .otlp import OTLPMetricExporter, OTLPSpanExporter
from .pipeline import (
    BatchSpanProcessor,
    InMemoryMetricReader,
    PeriodicExportingMetricReader,
    SimpleSpanProcessor,
)
from .propagation import default_propagator
from .resource import build_resource
from .tracing import Span, SpanKind, StatusCode, TracerProvider

__all__ = [
    "EMPTY_CONTEXT",
    "Context",
    "SpanContext",
    "ErrorTracker",
    "ConsoleMetricExporter",
    "ConsoleSpanExporter",
    "ExportResult",
    "InMemoryMetricExporter",
    "InMemorySpanExporter",
    "setup_structured_logger",
    "InstrumentError",
    "MeterProvider",
    "Observation",
    "Temporality",
    "RequestTracer",
    "current_context",
    "current_span",
    "OTLPMetricExporter",
    "OTLPSpanExporter",
    "BatchSpanProcessor",
    "InMemoryMetricReader",
    "PeriodicExportingMetricReader",
    "SimpleSpanProcessor",
    "default_propagator",
    "build_resource",
    "Span",
    "SpanKind",
    "StatusCode",
    "TracerProvider",
]
