"""
Tests for the process-wide provider registry and telemetry bootstrap.
"""

import pytest

from dice_server.observability import registry
from dice_server.observability.metrics import (
    InstrumentError,
    MeterProvider,
    NoOpMeterProvider,
    Temporality,
)
from dice_server.observability.otlp import OTLPMetricExporter, OTLPSpanExporter
from dice_server.observability.pipeline import (
    BatchSpanProcessor,
    InMemoryMetricReader,
    PeriodicExportingMetricReader,
    SimpleSpanProcessor,
)
from dice_server.observability.propagation import TraceContextPropagator
from dice_server.observability.tracing import NonRecordingSpan, NoOpTracerProvider, TracerProvider
from dice_server.telemetry import init_meter_provider, init_telemetry, init_tracer_provider
from dice_server.config import telemetry_settings


class TestTracerRegistry:
    def test_defaults_to_noop(self):
        assert isinstance(registry.get_tracer_provider(), NoOpTracerProvider)
        assert not registry.is_tracer_provider_set()
        _, span = registry.get_tracer("early").start_span(None, "before init")
        assert isinstance(span, NonRecordingSpan)

    def test_first_registration_wins(self, caplog):
        first, second = TracerProvider(), TracerProvider()
        assert registry.set_tracer_provider(first) is True
        assert registry.set_tracer_provider(second) is False
        assert registry.get_tracer_provider() is first
        assert "not allowed" in caplog.text

    def test_proxy_tracer_follows_registration(self, tracer_provider, span_exporter):
        tracer = registry.get_tracer("early")
        _, before = tracer.start_span(None, "before")
        registry.set_tracer_provider(tracer_provider)
        _, after = tracer.start_span(None, "after")
        before.end()
        after.end()
        assert [s.name for s in span_exporter.get_finished_spans()] == ["after"]


class TestMeterRegistry:
    def test_defaults_to_noop(self):
        assert isinstance(registry.get_meter_provider(), NoOpMeterProvider)
        assert not registry.is_meter_provider_set()

    def test_proxy_instruments_bind_on_registration(self):
        meter = registry.get_meter("early")
        counter = meter.create_counter("dice_rolls")
        counter.add(5)  # discarded: no provider yet

        reader = InMemoryMetricReader()
        registry.set_meter_provider(MeterProvider(readers=[reader]))
        counter.add(1, {"value": 2})

        (metric,) = reader.collect().metrics
        assert metric.name == "dice_rolls"
        assert metric.points[0].value == 1
        assert metric.scope == "early"

    def test_proxy_gauge_binds(self):
        from dice_server.observability.metrics import Observation

        registry.get_meter("early").create_observable_gauge("up", [lambda: [Observation(1)]])
        reader = InMemoryMetricReader()
        registry.set_meter_provider(MeterProvider(readers=[reader]))
        (metric,) = reader.collect().metrics
        assert metric.name == "up"

    def test_conflicting_proxy_instrument_does_not_block_registration(self, caplog):
        from dice_server.observability.metrics import Observation

        meter = registry.get_meter("early")
        counter = meter.create_counter("dup")
        histogram = meter.create_histogram("dup")
        meter.create_observable_gauge("up", [lambda: [Observation(1)]])

        reader = InMemoryMetricReader()
        provider = MeterProvider(readers=[reader])
        assert registry.set_meter_provider(provider) is True
        assert registry.get_meter_provider() is provider

        counter.add(2)
        histogram.record(1.0)  # rejected at bind time, stays a no-op
        assert sorted(m.name for m in reader.collect().metrics) == ["dup", "up"]
        assert "could not be bound" in caplog.text

    def test_get_meter_after_registration_is_real(self):
        reader = InMemoryMetricReader()
        provider = MeterProvider(readers=[reader])
        registry.set_meter_provider(provider)
        assert registry.get_meter("late") is provider.get_meter("late")

    def test_proxy_creation_after_registration_validates(self):
        meter = registry.get_meter("early")
        registry.set_meter_provider(MeterProvider(readers=[InMemoryMetricReader()]))
        with pytest.raises(InstrumentError):
            meter.create_counter("bad name")

    def test_second_meter_provider_rejected(self):
        registry.set_meter_provider(MeterProvider())
        assert registry.set_meter_provider(MeterProvider()) is False

    def test_propagator_can_be_replaced(self):
        propagator = TraceContextPropagator()
        registry.set_text_map_propagator(propagator)
        assert registry.get_text_map_propagator() is propagator


class TestTelemetryBootstrap:
    def test_init_tracer_provider_builds_both_sinks(self, test_config):
        test_config["telemetry"]["console"]["enabled"] = True
        test_config["telemetry"]["otlp"]["enabled"] = True
        provider = init_tracer_provider(telemetry_settings(test_config))
        try:
            assert registry.get_tracer_provider() is provider
            kinds = [type(p) for p in provider.span_processors]
            assert kinds == [SimpleSpanProcessor, BatchSpanProcessor]
            batch = provider.span_processors[1]
            assert isinstance(batch.exporter, OTLPSpanExporter)
            assert batch.exporter.url == "http://collector.invalid:4318/v1/traces"
            assert batch.max_queue_size == 64
            assert provider.resource["service.name"] == "dice-server-test"
        finally:
            provider.shutdown()

    def test_init_meter_provider_reader_temporalities(self, test_config):
        test_config["telemetry"]["console"]["enabled"] = True
        test_config["telemetry"]["otlp"]["enabled"] = True
        provider = init_meter_provider(telemetry_settings(test_config))
        try:
            console, otlp = provider.readers
            assert isinstance(console, PeriodicExportingMetricReader)
            assert console.temporality is Temporality.CUMULATIVE
            assert otlp.temporality is Temporality.DELTA
            assert isinstance(otlp.exporter, OTLPMetricExporter)
            assert console.interval == otlp.interval == 60
            assert registry.get_meter_provider() is provider
        finally:
            provider.shutdown()

    def test_signal_endpoints_reach_exporters(self, test_config, monkeypatch):
        monkeypatch.setenv("OTEL_EXPORTER_OTLP_METRICS_ENDPOINT", "http://metrics.invalid/v1/m")
        monkeypatch.setenv("OTEL_EXPORTER_OTLP_TRACES_HEADERS", "x-tenant=dice")
        test_config["telemetry"]["otlp"]["enabled"] = True
        telemetry = init_telemetry(test_config)
        try:
            (batch,) = telemetry.tracer_provider.span_processors
            assert batch.exporter.url == "http://collector.invalid:4318/v1/traces"
            assert batch.exporter.headers == {"x-tenant": "dice"}
            (reader,) = telemetry.meter_provider.readers
            assert reader.exporter.url == "http://metrics.invalid/v1/m"
            assert reader.exporter.headers == {}
        finally:
            telemetry.shutdown()

    def test_init_twice_raises(self, test_config):
        settings = telemetry_settings(test_config)
        init_tracer_provider(settings)
        with pytest.raises(RuntimeError):
            init_tracer_provider(settings)

    def test_init_telemetry_registers_both(self, test_config):
        telemetry = init_telemetry(test_config)
        assert registry.is_tracer_provider_set()
        assert registry.is_meter_provider_set()
        assert telemetry.tracer_provider.span_processors == ()
        assert telemetry.meter_provider.readers == []
        telemetry.shutdown()

    def test_cli_overrides(self, test_config):
        telemetry = init_telemetry(test_config, console=True, otlp=False)
        try:
            assert telemetry.settings.console_enabled is True
            assert [type(p) for p in telemetry.tracer_provider.span_processors] == [
                SimpleSpanProcessor
            ]
        finally:
            telemetry.shutdown()

    def test_sdk_disabled(self, test_config, monkeypatch):
        monkeypatch.setenv("OTEL_SDK_DISABLED", "true")
        telemetry = init_telemetry(test_config)
        assert telemetry.tracer_provider is None
        assert not registry.is_tracer_provider_set()
        assert not registry.is_meter_provider_set()
        assert telemetry.force_flush() is True
