"""
Telemetry bootstrap: builds the export pipelines and registers the
global providers.

Two sinks per signal, each with its own schedule:

    traces   console (synchronous, per span)   OTLP (batched worker thread)
    metrics  console (cumulative, periodic)    OTLP (delta by default, periodic)

Call ``init_telemetry`` once, before the HTTP server starts accepting
requests.  The tracer and meter providers can be initialised in either
order.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .config import TelemetrySettings, telemetry_settings
from .observability import registry
from .observability.exporters import ConsoleMetricExporter, ConsoleSpanExporter
from .observability.logging import setup_structured_logger
from .observability.metrics import MeterProvider, Temporality
from .observability.otlp import OTLPMetricExporter, OTLPSpanExporter
from .observability.pipeline import (
    BatchSpanProcessor,
    PeriodicExportingMetricReader,
    SimpleSpanProcessor,
)
from .observability.propagation import default_propagator
from .observability.resource import build_resource
from .observability.tracing import TracerProvider

logger = setup_structured_logger("telemetry", "telemetry.log")


@dataclass
class Telemetry:
    """Handles to the registered providers (``None`` when disabled)."""

    settings: TelemetrySettings
    tracer_provider: Optional[TracerProvider] = None
    meter_provider: Optional[MeterProvider] = None

    def force_flush(self, timeout: Optional[float] = None) -> bool:
        ok = True
        if self.tracer_provider is not None:
            ok = self.tracer_provider.force_flush(timeout) and ok
        if self.meter_provider is not None:
            ok = self.meter_provider.force_flush(timeout) and ok
        return ok

    def shutdown(self) -> None:
        """Flush and stop every processor and reader."""
        if self.tracer_provider is not None:
            self.tracer_provider.shutdown()
        if self.meter_provider is not None:
            self.meter_provider.shutdown()


def init_tracer_provider(settings: TelemetrySettings) -> TracerProvider:
    """Build the trace pipeline and register it as the global tracer provider.

    Console spans are exported synchronously as each span ends; OTLP spans
    go through a ``BatchSpanProcessor``.  Also installs the W3C
    trace-context + baggage propagator.
    """
    provider = TracerProvider(resource=build_resource(settings.service_name))

    if settings.console_enabled:
        provider.add_span_processor(
            SimpleSpanProcessor(ConsoleSpanExporter(pretty=settings.console_pretty))
        )
    if settings.otlp_enabled:
        endpoint, headers = settings.otlp_target("traces")
        exporter = OTLPSpanExporter(
            endpoint=endpoint,
            headers=headers,
            timeout=settings.otlp_timeout_seconds,
            protocol=settings.otlp_protocol,
        )
        provider.add_span_processor(
            BatchSpanProcessor(
                exporter,
                max_queue_size=settings.max_queue_size,
                schedule_delay=settings.schedule_delay_seconds,
                max_export_batch_size=settings.max_export_batch_size,
            )
        )
        logger.info(
            "OTLP span export to %s (%s)",
            exporter.url,
            exporter.protocol,
            extra={"signal": "traces"},
        )

    registry.set_text_map_propagator(default_propagator())
    if not registry.set_tracer_provider(provider):
        raise RuntimeError("A tracer provider is already registered")
    return provider


def init_meter_provider(settings: TelemetrySettings) -> MeterProvider:
    """Build the metric readers and register them as the global meter provider.

    Each reader runs on its own timer thread at ``export_interval_seconds``,
    so a stalled collector never delays the console output.
    """
    readers: List[PeriodicExportingMetricReader] = []

    if settings.console_enabled:
        readers.append(
            PeriodicExportingMetricReader(
                ConsoleMetricExporter(pretty=settings.console_pretty),
                interval=settings.export_interval_seconds,
                temporality=Temporality.CUMULATIVE,
            )
        )
    if settings.otlp_enabled:
        endpoint, headers = settings.otlp_target("metrics")
        exporter = OTLPMetricExporter(
            endpoint=endpoint,
            headers=headers,
            timeout=settings.otlp_timeout_seconds,
            protocol=settings.otlp_protocol,
        )
        readers.append(
            PeriodicExportingMetricReader(
                exporter,
                interval=settings.export_interval_seconds,
                temporality=Temporality(settings.otlp_temporality),
            )
        )
        logger.info(
            "OTLP metric export to %s (%s)",
            exporter.url,
            exporter.protocol,
            extra={"signal": "metrics"},
        )

    provider = MeterProvider(readers=readers, resource=build_resource(settings.service_name))
    if not registry.set_meter_provider(provider):
        provider.shutdown()
        raise RuntimeError("A meter provider is already registered")
    return provider


def init_telemetry(
    config: Dict[str, Any],
    *,
    console: Optional[bool] = None,
    otlp: Optional[bool] = None,
) -> Telemetry:
    """Initialise tracing and metrics from the ``telemetry`` config section.

    Args:
        config: Full application config.
        console: Force the console sinks on/off (CLI override).
        otlp: Force the OTLP sinks on/off (CLI override).

    Returns:
        A ``Telemetry`` handle for flushing on shutdown.  With
        ``OTEL_SDK_DISABLED=true`` nothing is registered and every tracer
        and meter stays a no-op.
    """
    settings = telemetry_settings(config)
    if console is not None:
        settings.console_enabled = console
    if otlp is not None:
        settings.otlp_enabled = otlp

    if not settings.enabled:
        logger.info("Telemetry disabled; tracers and meters are no-ops")
        return Telemetry(settings)

    tracer_provider = init_tracer_provider(settings)
    meter_provider = init_meter_provider(settings)
    logger.info(
        "Telemetry initialised for %s (console=%s, otlp=%s)",
        settings.service_name,
        settings.console_enabled,
        settings.otlp_enabled,
    )
    return Telemetry(settings, tracer_provider, meter_provider)
