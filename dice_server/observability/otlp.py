"""
OTLP exporters for spans and metrics.

Bridges dice-server's span and metric snapshots to the OpenTelemetry SDK
data types and hands them to the OTLP exporters from
``opentelemetry-exporter-otlp``.  The wire encoding and transport belong
to those packages; this module only converts and reports the outcome.

Supported protocols:
    ``http/protobuf``  POST to ``<endpoint>/v1/traces`` and ``/v1/metrics``
    ``grpc``           the collector's gRPC service at ``<endpoint>``

Transport failures are logged and reported as ``ExportResult.FAILURE``;
the pipeline retries on its next scheduled tick.
"""

from typing import Any, Dict, List, Optional, Sequence

import requests
from opentelemetry import trace as trace_api
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
    OTLPMetricExporter as _GrpcMetricExporter,
)
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
    OTLPSpanExporter as _GrpcSpanExporter,
)
from opentelemetry.exporter.otlp.proto.http.metric_exporter import (
    OTLPMetricExporter as _HttpMetricExporter,
)
from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
    OTLPSpanExporter as _HttpSpanExporter,
)
from opentelemetry.sdk import trace as sdk_trace
from opentelemetry.sdk.metrics import export as sdk_metrics
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace.export import SpanExportResult
from opentelemetry.sdk.util.instrumentation import InstrumentationScope

from ..config import otlp_url
from ..constants import (
    DEFAULT_OTLP_ENDPOINT,
    DEFAULT_OTLP_PROTOCOL,
    DEFAULT_OTLP_TIMEOUT_SECONDS,
    OTLP_PROTOCOL_GRPC,
    OTLP_PROTOCOLS,
)
from .context import SpanContext
from .exporters import ExportResult, MetricExporter, SpanExporter
from .logging import setup_structured_logger
from .metrics import HistogramDataPoint, InstrumentKind, Metric, MetricsData, Temporality
from .tracing import ReadableSpan, Status, StatusCode

_TEMPORALITY = {
    Temporality.DELTA: sdk_metrics.AggregationTemporality.DELTA,
    Temporality.CUMULATIVE: sdk_metrics.AggregationTemporality.CUMULATIVE,
}

logger = setup_structured_logger("telemetry", "telemetry.log")


# ── Conversion to SDK types ──────────────────────────────────────


def _to_span_context(ctx: SpanContext) -> trace_api.SpanContext:
    flags = trace_api.TraceFlags.SAMPLED if ctx.sampled else trace_api.TraceFlags.DEFAULT
    return trace_api.SpanContext(
        trace_id=int(ctx.trace_id, 16),
        span_id=int(ctx.span_id, 16),
        is_remote=ctx.is_remote,
        trace_flags=trace_api.TraceFlags(flags),
        trace_state=trace_api.TraceState.from_header([ctx.trace_state]) if ctx.trace_state else None,
    )


def _to_status(status: Status) -> trace_api.Status:
    code = trace_api.StatusCode[status.code.name]
    # The API only keeps a description on error statuses
    description = status.description if status.code is StatusCode.ERROR else None
    return trace_api.Status(code, description)


def to_sdk_span(span: ReadableSpan, resource: Optional[Resource] = None) -> sdk_trace.ReadableSpan:
    """Convert an ended span into the SDK's ``ReadableSpan``."""
    return sdk_trace.ReadableSpan(
        name=span.name,
        context=_to_span_context(span.context),
        parent=_to_span_context(span.parent) if span.parent is not None else None,
        resource=resource or Resource(dict(span.resource)),
        attributes=dict(span.attributes),
        events=[
            sdk_trace.Event(e.name, attributes=dict(e.attributes), timestamp=e.timestamp)
            for e in span.events
        ],
        kind=trace_api.SpanKind[span.kind.name],
        status=_to_status(span.status),
        start_time=span.start_time,
        end_time=span.end_time,
        instrumentation_scope=InstrumentationScope(span.scope),
    )


def to_sdk_spans(spans: Sequence[ReadableSpan]) -> List[sdk_trace.ReadableSpan]:
    # Spans from one provider share a resource dict; build one Resource per dict
    resources: Dict[int, Resource] = {}
    converted = []
    for span in spans:
        resource = resources.get(id(span.resource))
        if resource is None:
            resource = resources[id(span.resource)] = Resource(dict(span.resource))
        converted.append(to_sdk_span(span, resource))
    return converted


def _to_sdk_point(point) -> Any:
    if isinstance(point, HistogramDataPoint):
        return sdk_metrics.HistogramDataPoint(
            attributes=dict(point.attributes),
            start_time_unix_nano=point.start_time_unix_nano,
            time_unix_nano=point.time_unix_nano,
            count=point.count,
            sum=point.sum,
            bucket_counts=list(point.bucket_counts),
            explicit_bounds=list(point.explicit_bounds),
            min=point.min,
            max=point.max,
        )
    return sdk_metrics.NumberDataPoint(
        attributes=dict(point.attributes),
        start_time_unix_nano=point.start_time_unix_nano,
        time_unix_nano=point.time_unix_nano,
        value=point.value,
    )


def _to_sdk_metric(metric: Metric) -> sdk_metrics.Metric:
    points = [_to_sdk_point(p) for p in metric.points]
    if metric.kind is InstrumentKind.COUNTER:
        data = sdk_metrics.Sum(
            data_points=points,
            aggregation_temporality=_TEMPORALITY[metric.temporality],
            is_monotonic=metric.is_monotonic,
        )
    elif metric.kind is InstrumentKind.HISTOGRAM:
        data = sdk_metrics.Histogram(
            data_points=points,
            aggregation_temporality=_TEMPORALITY[metric.temporality],
        )
    else:
        data = sdk_metrics.Gauge(data_points=points)
    return sdk_metrics.Metric(
        name=metric.name, description=metric.description, unit=metric.unit, data=data
    )


def to_sdk_metrics(data: MetricsData) -> sdk_metrics.MetricsData:
    """Convert one collection into the SDK's ``MetricsData``, grouped by scope."""
    scopes: Dict[str, List[sdk_metrics.Metric]] = {}
    for metric in data.metrics:
        scopes.setdefault(metric.scope, []).append(_to_sdk_metric(metric))
    return sdk_metrics.MetricsData(
        resource_metrics=[
            sdk_metrics.ResourceMetrics(
                resource=Resource(dict(data.resource)),
                scope_metrics=[
                    sdk_metrics.ScopeMetrics(
                        scope=InstrumentationScope(scope), metrics=metrics, schema_url=""
                    )
                    for scope, metrics in scopes.items()
                ],
                schema_url="",
            )
        ]
    )


# ── Exporters ────────────────────────────────────────────────────


def _grpc_headers(headers: Dict[str, str]) -> Dict[str, str]:
    # gRPC metadata keys must be lowercase
    return {k.lower(): v for k, v in headers.items()}


class _OTLPExporterBase:
    signal = ""

    def __init__(self, endpoint: str, headers: Optional[Dict[str, str]], protocol: str) -> None:
        if protocol not in OTLP_PROTOCOLS:
            raise ValueError(f"Unsupported OTLP protocol: {protocol!r}")
        self.url = endpoint
        self.protocol = protocol
        self.headers = dict(headers or {})

    def _log_failure(self, reason: Any) -> None:
        logger.warning(
            "OTLP %s export to %s failed: %s",
            self.signal,
            self.url,
            reason,
            extra={"exporter": "otlp", "signal": self.signal, "endpoint": self.url},
        )

    def _log_success(self, count: int) -> None:
        logger.debug(
            "Exported %d %s item(s) via OTLP",
            count,
            self.signal,
            extra={"exporter": "otlp", "signal": self.signal, "batch_size": count},
        )


class OTLPSpanExporter(_OTLPExporterBase, SpanExporter):
    """Export spans to an OpenTelemetry collector.

    Args:
        endpoint: Full target (``http://host:4318/v1/traces`` for HTTP,
            ``http://host:4317`` for gRPC); see ``otlp_url``.
        headers: Extra request headers or gRPC metadata (e.g. an auth token).
        timeout: Per-export timeout in seconds.
        protocol: ``http/protobuf`` or ``grpc``.
        session: ``requests.Session`` for the HTTP protocol (injected by tests).
    """

    signal = "traces"

    def __init__(
        self,
        endpoint: str = otlp_url(DEFAULT_OTLP_ENDPOINT, "traces"),
        headers: Optional[Dict[str, str]] = None,
        timeout: float = DEFAULT_OTLP_TIMEOUT_SECONDS,
        protocol: str = DEFAULT_OTLP_PROTOCOL,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(endpoint, headers, protocol)
        if protocol == OTLP_PROTOCOL_GRPC:
            self._exporter = _GrpcSpanExporter(
                endpoint=endpoint,
                insecure=endpoint.startswith("http://"),
                headers=_grpc_headers(self.headers),
                timeout=timeout,
            )
        else:
            self._exporter = _HttpSpanExporter(
                endpoint=endpoint,
                headers=self.headers,
                timeout=timeout,
                session=session or requests.Session(),
            )

    def export(self, spans: Sequence[ReadableSpan]) -> ExportResult:
        if not spans:
            return ExportResult.SUCCESS
        try:
            result = self._exporter.export(to_sdk_spans(spans))
        except requests.RequestException as e:
            self._log_failure(e)
            return ExportResult.FAILURE
        if result is not SpanExportResult.SUCCESS:
            self._log_failure(result.name)
            return ExportResult.FAILURE
        self._log_success(len(spans))
        return ExportResult.SUCCESS

    def shutdown(self) -> None:
        self._exporter.shutdown()


class OTLPMetricExporter(_OTLPExporterBase, MetricExporter):
    """Export metrics to an OpenTelemetry collector.

    Temporality is decided by the reader; each ``Sum`` and ``Histogram``
    carries it, so the library's preferred-temporality setting is unused.
    """

    signal = "metrics"

    def __init__(
        self,
        endpoint: str = otlp_url(DEFAULT_OTLP_ENDPOINT, "metrics"),
        headers: Optional[Dict[str, str]] = None,
        timeout: float = DEFAULT_OTLP_TIMEOUT_SECONDS,
        protocol: str = DEFAULT_OTLP_PROTOCOL,
        session: Optional[requests.Session] = None,
    ) -> None:
        super().__init__(endpoint, headers, protocol)
        self._timeout_millis = timeout * 1000
        if protocol == OTLP_PROTOCOL_GRPC:
            self._exporter = _GrpcMetricExporter(
                endpoint=endpoint,
                insecure=endpoint.startswith("http://"),
                headers=_grpc_headers(self.headers),
                timeout=timeout,
            )
        else:
            self._exporter = _HttpMetricExporter(
                endpoint=endpoint,
                headers=self.headers,
                timeout=timeout,
                session=session or requests.Session(),
            )

    def export(self, data: MetricsData) -> ExportResult:
        if not data.metrics:
            return ExportResult.SUCCESS
        try:
            result = self._exporter.export(
                to_sdk_metrics(data), timeout_millis=self._timeout_millis
            )
        except requests.RequestException as e:
            self._log_failure(e)
            return ExportResult.FAILURE
        if result is not sdk_metrics.MetricExportResult.SUCCESS:
            self._log_failure(result.name)
            return ExportResult.FAILURE
        self._log_success(len(data.metrics))
        return ExportResult.SUCCESS

    def shutdown(self) -> None:
        self._exporter.shutdown()
