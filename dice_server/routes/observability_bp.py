"""
Observability routes.

Endpoints:
    GET /healthz  JSON health status: uptime, provider registration,
                  export pipeline health and captured errors
"""

import time

from flask import Blueprint, current_app, jsonify

from ..observability import registry
from ..observability.errors import ErrorTracker
from ..observability.pipeline import span_processor_status

observability_bp = Blueprint("observability", __name__)


def _server():
    return current_app.config["server"]


@observability_bp.route("/healthz")
def healthz():
    """Liveness check with telemetry pipeline status.

    Always 200 while the process serves requests; export failures are
    reported as ``degraded`` but never make the service unhealthy.
    """
    srv = _server()

    readers = []
    if registry.is_meter_provider_set():
        readers = [
            r.status() for r in registry.get_meter_provider().readers if hasattr(r, "status")
        ]
    processors = []
    if registry.is_tracer_provider_set():
        processors = span_processor_status(registry.get_tracer_provider().span_processors)

    failing = [r for r in readers if r.get("consecutive_failures")]
    failing += [p for p in processors if p.get("retry_pending")]

    payload = {
        "status": "degraded" if failing else "healthy",
        "uptime_seconds": round(time.time() - srv.start_time, 1),
        "telemetry": {
            "tracer_provider": registry.is_tracer_provider_set(),
            "meter_provider": registry.is_meter_provider_set(),
            "metric_readers": readers,
            "span_processors": processors,
        },
        "errors": ErrorTracker().error_summary(),
    }
    return jsonify(payload), 200
