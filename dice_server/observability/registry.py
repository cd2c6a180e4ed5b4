"""
Process-wide provider registry.

Tracers and meters can be requested at import time, before telemetry is
initialised.  They are proxies: until a real provider is registered every
operation lands in a no-op implementation, afterwards it is forwarded to
the real one.  Each provider can be registered exactly once; there is no
re-initialisation or teardown path.
"""

import logging
import threading
from typing import Any, List, Optional, Sequence

from .metrics import (
    Callback,
    Counter,
    Histogram,
    InstrumentError,
    Meter,
    MeterProvider,
    NoOpMeterProvider,
    ObservableGauge,
)
from .propagation import TextMapPropagator, default_propagator
from .tracing import NoOpTracerProvider, Tracer, TracerProvider

logger = logging.getLogger("telemetry")

_NOOP_TRACER_PROVIDER = NoOpTracerProvider()
_NOOP_METER_PROVIDER = NoOpMeterProvider()

_lock = threading.Lock()
_tracer_provider: Optional[TracerProvider] = None
_meter_provider: Optional[MeterProvider] = None
_propagator: TextMapPropagator = default_propagator()
_proxy_meters: List["ProxyMeter"] = []


# ── Tracer provider ──────────────────────────────────────────────


def set_tracer_provider(provider: TracerProvider) -> bool:
    """Register the global tracer provider.  Returns ``False`` if one was already set."""
    global _tracer_provider
    with _lock:
        if _tracer_provider is not None:
            logger.warning("Overriding the global TracerProvider is not allowed")
            return False
        _tracer_provider = provider
    return True


def get_tracer_provider() -> TracerProvider:
    return _tracer_provider or _NOOP_TRACER_PROVIDER


def is_tracer_provider_set() -> bool:
    return _tracer_provider is not None


class ProxyTracer(Tracer):
    """Resolves the current global provider on every ``start_span``."""

    def __init__(self, name: str) -> None:
        self.name = name

    def start_span(self, context, name, **kwargs):
        return get_tracer_provider().get_tracer(self.name).start_span(context, name, **kwargs)


def get_tracer(name: str) -> Tracer:
    return ProxyTracer(name)


# ── Meter provider ───────────────────────────────────────────────


class _ProxyInstrument:
    """Forwards to a no-op instrument until the real meter is bound."""

    def __init__(self, name: str, unit: str, description: str) -> None:
        self.name = name
        self.unit = unit
        self.description = description
        self._delegate: Any = None

    def _bind(self, meter: Meter) -> None:
        raise NotImplementedError


class _ProxyCounter(_ProxyInstrument):
    def _bind(self, meter: Meter) -> None:
        self._delegate = meter.create_counter(self.name, self.unit, self.description)

    def add(self, amount, attributes=None) -> None:
        if self._delegate is not None:
            self._delegate.add(amount, attributes)


class _ProxyHistogram(_ProxyInstrument):
    def __init__(self, name, unit, description, boundaries) -> None:
        super().__init__(name, unit, description)
        self.boundaries = boundaries

    def _bind(self, meter: Meter) -> None:
        self._delegate = meter.create_histogram(
            self.name, self.unit, self.description, self.boundaries
        )

    def record(self, value, attributes=None) -> None:
        if self._delegate is not None:
            self._delegate.record(value, attributes)


class _ProxyObservableGauge(_ProxyInstrument):
    def __init__(self, name, unit, description, callbacks) -> None:
        super().__init__(name, unit, description)
        self.callbacks = list(callbacks or [])

    def _bind(self, meter: Meter) -> None:
        self._delegate = meter.create_observable_gauge(
            self.name, self.callbacks, self.unit, self.description
        )


class ProxyMeter:
    """Meter handed out before a provider exists.

    Instruments created through it are bound to real instruments the
    moment ``set_meter_provider`` is called.  A proxy instrument that the
    real meter rejects is logged and stays a no-op; the other instruments
    still bind.  Creation after registration goes straight to the real
    meter, so validation errors surface to the caller.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._lock = threading.Lock()
        self._real: Optional[Meter] = None
        self._instruments: List[_ProxyInstrument] = []

    def _on_set_provider(self, provider: MeterProvider) -> None:
        with self._lock:
            self._real = provider.get_meter(self.name)
            for instrument in self._instruments:
                try:
                    instrument._bind(self._real)
                except InstrumentError as e:
                    # Registration has already happened; the instrument stays a no-op
                    logger.error(
                        "Instrument %r on meter %r could not be bound: %s",
                        instrument.name,
                        self.name,
                        e,
                    )

    def _create(self, proxy: _ProxyInstrument) -> Any:
        with self._lock:
            if self._real is not None:
                proxy._bind(self._real)
                return proxy._delegate
            self._instruments.append(proxy)
            return proxy

    def create_counter(self, name: str, unit: str = "", description: str = "") -> Counter:
        return self._create(_ProxyCounter(name, unit, description))

    def create_histogram(
        self, name: str, unit: str = "", description: str = "",
        boundaries: Optional[Sequence[float]] = None,
    ) -> Histogram:
        return self._create(_ProxyHistogram(name, unit, description, boundaries))

    def create_observable_gauge(
        self, name: str, callbacks: Optional[Sequence[Callback]] = None,
        unit: str = "", description: str = "",
    ) -> ObservableGauge:
        return self._create(_ProxyObservableGauge(name, unit, description, callbacks))


def set_meter_provider(provider: MeterProvider) -> bool:
    """Register the global meter provider.  Returns ``False`` if one was already set."""
    global _meter_provider
    with _lock:
        if _meter_provider is not None:
            logger.warning("Overriding the global MeterProvider is not allowed")
            return False
        _meter_provider = provider
        proxies = list(_proxy_meters)
    for proxy in proxies:
        proxy._on_set_provider(provider)
    return True


def get_meter_provider() -> MeterProvider:
    return _meter_provider or _NOOP_METER_PROVIDER


def is_meter_provider_set() -> bool:
    return _meter_provider is not None


def get_meter(name: str) -> Any:
    """Return the real meter if a provider is set, a proxy otherwise."""
    with _lock:
        if _meter_provider is not None:
            return _meter_provider.get_meter(name)
        proxy = ProxyMeter(name)
        _proxy_meters.append(proxy)
        return proxy


# ── Propagator ───────────────────────────────────────────────────


def set_text_map_propagator(propagator: TextMapPropagator) -> None:
    global _propagator
    _propagator = propagator


def get_text_map_propagator() -> TextMapPropagator:
    return _propagator


def _reset_for_tests() -> None:
    """Forget registered providers (tests only)."""
    global _tracer_provider, _meter_provider, _propagator
    with _lock:
        _tracer_provider = None
        _meter_provider = None
        _propagator = default_propagator()
        _proxy_meters.clear()
