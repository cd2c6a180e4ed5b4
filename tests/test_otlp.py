"""
Tests for the OTLP exporters: conversion to SDK types and delivery through
the OpenTelemetry OTLP exporters.
"""

from unittest.mock import MagicMock

import pytest
import requests
from opentelemetry import trace as trace_api
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
    OTLPSpanExporter as GrpcSpanExporter,
)
from opentelemetry.proto.collector.metrics.v1.metrics_service_pb2 import (
    ExportMetricsServiceRequest,
)
from opentelemetry.proto.collector.trace.v1.trace_service_pb2 import ExportTraceServiceRequest
from opentelemetry.sdk.metrics.export import AggregationTemporality, Histogram, Sum

from dice_server.config import otlp_url
from dice_server.observability.context import EMPTY_CONTEXT, SpanContext
from dice_server.observability.exporters import ExportResult, InMemorySpanExporter
from dice_server.observability.metrics import MeterProvider, MetricsData, Temporality
from dice_server.observability.otlp import (
    OTLPMetricExporter,
    OTLPSpanExporter,
    to_sdk_metrics,
    to_sdk_span,
)
from dice_server.observability.pipeline import InMemoryMetricReader, SimpleSpanProcessor
from dice_server.observability.tracing import SpanKind, StatusCode, TracerProvider


def _session(status_code=200, side_effect=None):
    session = MagicMock(spec=requests.Session)
    session.headers = {}
    if side_effect is not None:
        session.post.side_effect = side_effect
    else:
        response = MagicMock()
        response.ok = 200 <= status_code < 300
        response.status_code = status_code
        response.reason = "Bad Request" if status_code == 400 else "OK"
        response.text = ""
        session.post.return_value = response
    return session


def _posted(session):
    args, kwargs = session.post.call_args
    url = kwargs.get("url", args[0] if args else None)
    return url, kwargs["data"]


def _finished_spans(count=1, parent=None):
    exporter = InMemorySpanExporter()
    provider = TracerProvider(resource={"service.name": "dice-server"})
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    tracer = provider.get_tracer("dice_server")
    ctx = EMPTY_CONTEXT.with_remote_parent(parent) if parent else None
    for i in range(count):
        _, span = tracer.start_span(ctx, f"op-{i}", kind=SpanKind.SERVER, attributes={"n": i})
        span.add_event("rolling dice", {"n": 2, "sides": 6})
        span.set_status(StatusCode.ERROR, "handler panicked")
        span.end()
    return exporter.get_finished_spans()


def _metrics(temporality=Temporality.CUMULATIVE):
    reader = InMemoryMetricReader(temporality)
    provider = MeterProvider(readers=[reader], resource={"service.name": "dice-server"})
    meter = provider.get_meter("dice_server")
    meter.create_counter("dice_rolls", unit="{roll}").add(1, {"value": 2})
    meter.create_histogram("latency", boundaries=[1.0]).record(0.5)
    return reader.collect()


class TestOtlpUrl:
    def test_http_appends_signal_path(self):
        assert otlp_url("http://collector:4318/", "traces") == "http://collector:4318/v1/traces"

    def test_grpc_uses_endpoint_as_is(self):
        assert otlp_url("http://collector:4317", "metrics", "grpc") == "http://collector:4317"


class TestSpanConversion:
    def test_identity_and_parent(self):
        parent = SpanContext("a" * 32, "b" * 16, is_remote=True)
        (span,) = _finished_spans(1, parent=parent)
        converted = to_sdk_span(span)

        assert converted.context.trace_id == int("a" * 32, 16)
        assert converted.context.span_id == int(span.context.span_id, 16)
        assert converted.context.trace_flags.sampled
        assert converted.parent.span_id == int("b" * 16, 16)
        assert converted.parent.is_remote

    def test_fields(self):
        (span,) = _finished_spans()
        converted = to_sdk_span(span)

        assert converted.name == "op-0"
        assert converted.kind is trace_api.SpanKind.SERVER
        assert converted.status.status_code is trace_api.StatusCode.ERROR
        assert converted.status.description == "handler panicked"
        assert converted.start_time == span.start_time
        assert converted.end_time == span.end_time
        assert converted.attributes["n"] == 0
        assert converted.events[0].name == "rolling dice"
        assert converted.resource.attributes["service.name"] == "dice-server"
        assert converted.instrumentation_scope.name == "dice_server"


class TestMetricConversion:
    def test_cumulative_sum_and_histogram(self):
        converted = to_sdk_metrics(_metrics())
        (resource_metrics,) = converted.resource_metrics
        assert resource_metrics.resource.attributes["service.name"] == "dice-server"
        (scope_metrics,) = resource_metrics.scope_metrics
        assert scope_metrics.scope.name == "dice_server"
        by_name = {m.name: m for m in scope_metrics.metrics}

        rolls = by_name["dice_rolls"]
        assert rolls.unit == "{roll}"
        assert isinstance(rolls.data, Sum)
        assert rolls.data.is_monotonic is True
        assert rolls.data.aggregation_temporality is AggregationTemporality.CUMULATIVE
        assert rolls.data.data_points[0].value == 1
        assert dict(rolls.data.data_points[0].attributes) == {"value": 2}

        latency = by_name["latency"].data
        assert isinstance(latency, Histogram)
        assert latency.data_points[0].count == 1
        assert list(latency.data_points[0].bucket_counts) == [1, 0]

    def test_delta_temporality_carried(self):
        converted = to_sdk_metrics(_metrics(Temporality.DELTA))
        metrics = converted.resource_metrics[0].scope_metrics[0].metrics
        rolls = next(m for m in metrics if m.name == "dice_rolls")
        assert rolls.data.aggregation_temporality is AggregationTemporality.DELTA


class TestOTLPSpanExporter:
    def test_posts_protobuf_to_traces_endpoint(self):
        session = _session()
        exporter = OTLPSpanExporter(
            "http://collector:4318/v1/traces",
            headers={"x-api-key": "k"},
            timeout=3,
            session=session,
        )
        spans = _finished_spans(2)
        assert exporter.export(spans) is ExportResult.SUCCESS

        url, data = _posted(session)
        assert url == "http://collector:4318/v1/traces"
        assert session.headers["x-api-key"] == "k"

        request = ExportTraceServiceRequest.FromString(data)
        (resource_spans,) = request.resource_spans
        (scope_spans,) = resource_spans.scope_spans
        assert scope_spans.scope.name == "dice_server"
        assert [s.name for s in scope_spans.spans] == ["op-0", "op-1"]
        assert scope_spans.spans[0].trace_id.hex() == spans[0].context.trace_id
        assert scope_spans.spans[0].status.message == "handler panicked"

    def test_connection_error_is_failure(self):
        session = _session(side_effect=requests.ConnectionError("refused"))
        exporter = OTLPSpanExporter("http://collector:4318/v1/traces", timeout=1, session=session)
        assert exporter.export(_finished_spans()) is ExportResult.FAILURE

    def test_rejected_request_is_failure(self, caplog):
        exporter = OTLPSpanExporter(
            "http://collector:4318/v1/traces", timeout=1, session=_session(400)
        )
        assert exporter.export(_finished_spans()) is ExportResult.FAILURE
        assert "OTLP traces export" in caplog.text

    def test_empty_batch_skips_request(self):
        session = _session()
        assert OTLPSpanExporter(session=session).export([]) is ExportResult.SUCCESS
        session.post.assert_not_called()

    def test_grpc_protocol_uses_grpc_exporter(self):
        exporter = OTLPSpanExporter(
            "http://collector:4317", headers={"Authorization": "t"}, protocol="grpc"
        )
        try:
            assert isinstance(exporter._exporter, GrpcSpanExporter)
            assert exporter.protocol == "grpc"
        finally:
            exporter.shutdown()

    def test_unknown_protocol_rejected(self):
        with pytest.raises(ValueError):
            OTLPSpanExporter(protocol="http/json")


class TestOTLPMetricExporter:
    def test_posts_protobuf_to_metrics_endpoint(self):
        session = _session()
        exporter = OTLPMetricExporter("http://collector:4318/v1/metrics", session=session)
        assert exporter.url == "http://collector:4318/v1/metrics"
        assert exporter.export(_metrics(Temporality.DELTA)) is ExportResult.SUCCESS

        url, data = _posted(session)
        assert url == "http://collector:4318/v1/metrics"
        request = ExportMetricsServiceRequest.FromString(data)
        metrics = request.resource_metrics[0].scope_metrics[0].metrics
        rolls = next(m for m in metrics if m.name == "dice_rolls")
        assert rolls.sum.aggregation_temporality == AggregationTemporality.DELTA.value
        assert len(rolls.sum.data_points) == 1

    def test_timeout_is_failure(self):
        session = _session(side_effect=requests.Timeout("slow"))
        exporter = OTLPMetricExporter(
            "http://collector:4318/v1/metrics", timeout=1, session=session
        )
        assert exporter.export(_metrics()) is ExportResult.FAILURE

    def test_no_metrics_skips_request(self):
        session = _session()
        exporter = OTLPMetricExporter(session=session)
        assert exporter.export(MetricsData({}, ())) is ExportResult.SUCCESS
        session.post.assert_not_called()
