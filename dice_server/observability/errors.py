"""
Centralised error tracking and the instrumentation failure boundary.

Every exception raised by a Flask handler stops here:

1. HTTP exceptions (bad input, unknown routes) are recorded on the
   request span and answered with their own status code.
2. Anything else is treated as a crash: recorded on the span with its
   stack trace, span status set to ERROR, captured in the tracker, and
   converted into a generic 500 response.  The process keeps serving.

Captured errors are logged via the structured logger and kept in a
bounded ring buffer for the health endpoint.
"""

import json
import sys
import threading
import traceback
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from ..constants import MAX_ERROR_BUFFER
from .logging import get_log_context, setup_structured_logger
from .middleware import current_span
from .tracing import StatusCode

PANIC_STATUS_MESSAGE = "handler panicked"


@dataclass
class ErrorRecord:
    """A single captured error event."""

    timestamp: str
    error_type: str
    message: str
    traceback: str
    context: Dict[str, Any] = field(default_factory=dict)
    fingerprint: str = ""  # for dedup grouping

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "error_type": self.error_type,
            "message": self.message,
            "traceback": self.traceback,
            "context": self.context,
            "fingerprint": self.fingerprint,
        }


class ErrorTracker:
    """Singleton that captures, deduplicates, and stores errors.

    Usage::

        tracker = ErrorTracker()
        tracker.install_flask(app)
    """

    _instance: Optional["ErrorTracker"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ErrorTracker":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        self._buffer: deque = deque(maxlen=MAX_ERROR_BUFFER)
        self._counts: Dict[str, int] = {}  # fingerprint -> count
        self._counts_lock = threading.Lock()
        self._logger = setup_structured_logger("error_tracker", "errors.log")

    # ── Flask integration ────────────────────────────────────────

    def install_flask(self, app: Flask) -> None:
        """Register the error handler that turns every exception into a response."""

        @app.errorhandler(Exception)
        def _handle_exception(exc: Exception):
            span = current_span()

            if isinstance(exc, HTTPException):
                # Redirects raised by routing are not failures
                if exc.code is None or exc.code < 400:
                    return exc
                span.record_exception(exc)
                response = exc.get_response()
                response.data = json.dumps({"error": exc.description})
                response.content_type = "application/json"
                return response

            span.record_exception(exc, escaped=True)
            span.set_status(StatusCode.ERROR, PANIC_STATUS_MESSAGE)
            self.capture_exception(exc=exc)
            trace_id = span.get_span_context().trace_id
            return jsonify({"error": "Internal Server Error", "trace_id": trace_id}), 500

    # ── Capture methods ──────────────────────────────────────────

    def capture_exception(
        self,
        exc: Optional[BaseException] = None,
        *,
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[ErrorRecord]:
        """Capture an exception with full context.

        Args:
            exc: The exception. If ``None``, uses ``sys.exc_info()``.
            extra: Additional context to attach.

        Returns:
            The ``ErrorRecord``, or ``None`` if nothing to capture.
        """
        if exc is None:
            exc_info = sys.exc_info()
            if exc_info[0] is None:
                return None
            exc = exc_info[1]
        else:
            exc_info = (type(exc), exc, exc.__traceback__)

        tb = "".join(traceback.format_exception(*exc_info))
        fingerprint = f"{type(exc).__name__}:{_extract_location(exc_info)}"

        # Log context carries trace_id / span_id / method / path
        ctx: Dict[str, Any] = get_log_context()
        if extra:
            ctx.update(extra)

        record = ErrorRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            error_type=type(exc).__name__,
            message=str(exc),
            traceback=tb,
            context=ctx,
            fingerprint=fingerprint,
        )

        with self._counts_lock:
            self._buffer.append(record)
            self._counts[fingerprint] = self._counts.get(fingerprint, 0) + 1

        self._logger.error(
            "Captured %s: %s",
            record.error_type,
            record.message,
            exc_info=exc_info,
            extra={"fingerprint": fingerprint},
        )

        return record

    # ── Query methods ────────────────────────────────────────────

    def recent_errors(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Return the most recent errors as dicts, newest first."""
        with self._counts_lock:
            items = list(self._buffer)[-limit:]
        items.reverse()
        return [e.to_dict() for e in items]

    def error_summary(self) -> Dict[str, Any]:
        """Return dedup counts and totals."""
        with self._counts_lock:
            counts = dict(self._counts)
        return {
            "total_captured": sum(counts.values()),
            "unique_errors": len(counts),
            "top_errors": sorted(
                [{"fingerprint": fp, "count": c} for fp, c in counts.items()],
                key=lambda x: x["count"],
                reverse=True,
            )[:20],
        }

    # ── Reset (testing) ──────────────────────────────────────────

    @classmethod
    def reset(cls) -> None:
        with cls._lock:
            cls._instance = None


def _extract_location(exc_info) -> str:
    """Extract file:line from the innermost traceback frame."""
    tb = exc_info[2]
    if tb is None:
        return "unknown"
    while tb.tb_next:
        tb = tb.tb_next
    return f"{tb.tb_frame.f_code.co_filename}:{tb.tb_lineno}"
