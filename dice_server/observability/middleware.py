"""
Flask request instrumentation.

``RequestTracer`` wraps every request in a SERVER span:

1. Extracts ``traceparent`` / ``baggage`` from the request headers.
2. Starts a span parented to the remote caller (if any) and stores the
   resulting ``Context`` on ``flask.g`` for handlers to pick up.
3. Injects trace ids into the structured log context.
4. Records status and latency, injects ``traceparent`` into the
   response, and ends the span.

The span is ended in ``after_request`` and again in ``teardown_request``;
the second call is a no-op unless the response path never ran.
"""

import time
from typing import Any, Dict, Optional

from flask import Flask, g, request

from ..constants import HTTP_DURATION_BOUNDARIES, INSTRUMENTATION_NAME
from . import registry
from .context import EMPTY_CONTEXT, INVALID_SPAN_CONTEXT, Context
from .logging import clear_log_context, set_log_context
from .propagation import TextMapPropagator
from .tracing import NonRecordingSpan, Span, SpanKind, StatusCode, Tracer

_NON_RECORDING = NonRecordingSpan(INVALID_SPAN_CONTEXT)


def current_context() -> Context:
    """The telemetry ``Context`` of the request being served."""
    return g.get("telemetry_context", EMPTY_CONTEXT)


def current_span() -> Span:
    """The request span, or a non-recording span outside instrumented requests."""
    return g.get("telemetry_span", _NON_RECORDING)


class RequestTracer:
    """Flask middleware: one SERVER span plus latency metrics per request.

    Usage::

        RequestTracer(app, tracer=tracer, meter=meter, propagator=propagator)
    """

    TRACE_ID_HEADER = "X-Trace-ID"

    def __init__(
        self,
        app: Flask,
        *,
        tracer: Optional[Tracer] = None,
        meter: Any = None,
        propagator: Optional[TextMapPropagator] = None,
        logger=None,
    ):
        """
        Args:
            app: The Flask application.
            tracer: Tracer for request spans (global proxy if omitted).
            meter: Meter for request metrics (global proxy if omitted).
            propagator: Header propagator (global one if omitted).
            logger: Optional logger for per-request logs.
        """
        self.app = app
        self.tracer = tracer or registry.get_tracer(INSTRUMENTATION_NAME)
        meter = meter or registry.get_meter(INSTRUMENTATION_NAME)
        self.propagator = propagator
        self.logger = logger
        self.duration = meter.create_histogram(
            "http.server.request.duration",
            unit="s",
            description="Duration of HTTP server requests.",
            boundaries=HTTP_DURATION_BOUNDARIES,
        )
        self._install(app)

    def _propagator(self) -> TextMapPropagator:
        return self.propagator or registry.get_text_map_propagator()

    # ── installation ─────────────────────────────────────────────

    def _install(self, app: Flask) -> None:
        app.before_request(self._before)
        app.after_request(self._after)
        app.teardown_request(self._teardown)

    # ── hooks ────────────────────────────────────────────────────

    def _before(self) -> None:
        parent = self._propagator().extract(request.headers)
        attributes = {
            "http.request.method": request.method,
            "url.path": request.path,
            "client.address": request.remote_addr or "",
        }
        # Raw paths never become span names
        if request.url_rule is not None:
            name = f"{request.method} {request.url_rule.rule}"
            attributes["http.route"] = request.url_rule.rule
        else:
            name = request.method
        ctx, span = self.tracer.start_span(parent, name, kind=SpanKind.SERVER, attributes=attributes)
        g.telemetry_context = ctx
        g.telemetry_span = span
        g.telemetry_start = time.monotonic()

        span_context = span.get_span_context()
        set_log_context(
            trace_id=span_context.trace_id,
            span_id=span_context.span_id,
            method=request.method,
            path=request.path,
        )

    def _after(self, response):
        span = g.get("telemetry_span")
        if span is None:
            return response

        duration = time.monotonic() - g.get("telemetry_start", time.monotonic())
        status = response.status_code
        route = request.url_rule.rule if request.url_rule is not None else ""

        span.set_attribute("http.response.status_code", status)
        # Keep a more specific error description set by the error boundary
        if status >= 500 and span.status.code is not StatusCode.ERROR:
            span.set_status(StatusCode.ERROR)

        attributes: Dict[str, Any] = {
            "http.request.method": request.method,
            "http.response.status_code": status,
        }
        if route:
            attributes["http.route"] = route
        self.duration.record(duration, attributes)

        carrier: Dict[str, str] = {}
        self._propagator().inject(current_context(), carrier)
        if "traceparent" in carrier:
            response.headers["traceparent"] = carrier["traceparent"]
        response.headers[self.TRACE_ID_HEADER] = span.get_span_context().trace_id

        if self.logger:
            log_method = self.logger.warning if status >= 400 else self.logger.info
            log_method(
                "%s %s %s %.1fms",
                request.method,
                request.path,
                status,
                duration * 1000,
                extra={"duration_ms": round(duration * 1000, 2), "status_code": status},
            )

        span.end()
        return response

    def _teardown(self, exc=None) -> None:
        span = g.get("telemetry_span")
        if span is not None:
            if exc is not None and span.is_recording():
                span.record_exception(exc, escaped=True)
                span.set_status(StatusCode.ERROR, f"{type(exc).__name__}: {exc}")
            span.end()
        clear_log_context()
