"""
Test fixtures and configuration for pytest
"""

import os
import tempfile

# Loggers are created at import time; keep their files out of the project tree
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="dice-server-logs-"))

import pytest  # noqa: E402

from dice_server.observability import registry  # noqa: E402
from dice_server.observability.errors import ErrorTracker  # noqa: E402
from dice_server.observability.exporters import InMemorySpanExporter  # noqa: E402
from dice_server.observability.metrics import MeterProvider  # noqa: E402
from dice_server.observability.pipeline import (  # noqa: E402
    InMemoryMetricReader,
    SimpleSpanProcessor,
)
from dice_server.observability.tracing import TracerProvider  # noqa: E402


@pytest.fixture(autouse=True)
def _isolate_globals(monkeypatch):
    """Fresh provider registry and error tracker for every test."""
    for var in (
        "OTEL_SDK_DISABLED",
        "OTEL_SERVICE_NAME",
        "OTEL_EXPORTER_OTLP_ENDPOINT",
        "OTEL_EXPORTER_OTLP_HEADERS",
        "OTEL_EXPORTER_OTLP_PROTOCOL",
        "OTEL_EXPORTER_OTLP_COMPRESSION",
        "OTEL_EXPORTER_OTLP_TRACES_ENDPOINT",
        "OTEL_EXPORTER_OTLP_TRACES_HEADERS",
        "OTEL_EXPORTER_OTLP_METRICS_ENDPOINT",
        "OTEL_EXPORTER_OTLP_METRICS_HEADERS",
        "OTEL_METRIC_EXPORT_INTERVAL",
        "OTEL_BSP_SCHEDULE_DELAY",
    ):
        monkeypatch.delenv(var, raising=False)
    registry._reset_for_tests()
    ErrorTracker.reset()
    yield
    registry._reset_for_tests()
    ErrorTracker.reset()


@pytest.fixture
def test_config():
    """Provide test configuration"""
    return {
        "server": {"host": "127.0.0.1", "port": 8097},
        "telemetry": {
            "service_name": "dice-server-test",
            "export_interval_seconds": 60,
            "console": {"enabled": False, "pretty": False},
            "otlp": {
                "enabled": False,
                "endpoint": "http://collector.invalid:4318",
                "headers": {},
                "timeout_seconds": 1,
                "temporality": "delta",
            },
            "batch": {
                "max_queue_size": 64,
                "schedule_delay_seconds": 60,
                "max_export_batch_size": 16,
            },
        },
        "dice": {"forbidden_values": [4], "max_value": 127, "distribution": "zipf"},
        "logging": {"debug": False},
    }


@pytest.fixture
def span_exporter():
    return InMemorySpanExporter()


@pytest.fixture
def tracer_provider(span_exporter):
    provider = TracerProvider(resource={"service.name": "test"})
    provider.add_span_processor(SimpleSpanProcessor(span_exporter))
    return provider


@pytest.fixture
def tracer(tracer_provider):
    return tracer_provider.get_tracer("test")


@pytest.fixture
def metric_reader():
    return InMemoryMetricReader()


@pytest.fixture
def meter_provider(metric_reader):
    return MeterProvider(readers=[metric_reader], resource={"service.name": "test"})


@pytest.fixture
def meter(meter_provider):
    return meter_provider.get_meter("test")


@pytest.fixture
def server(test_config, tracer, meter):
    """DiceServer wired to in-memory exporters."""
    from dice_server.web_server import DiceServer

    return DiceServer(test_config, tracer=tracer, meter=meter)


@pytest.fixture
def client(server):
    server.app.config["TESTING"] = True
    return server.app.test_client()
