"""
Structured logging correlated with traces.

``_TraceContextFilter`` copies the current request's ``trace_id`` and
``span_id`` (pushed by the request middleware) onto every record, so
both output formats read them like any other record attribute.

File output is one JSON object per line; the console is JSON when
``LOG_FORMAT=json`` and a short text line otherwise.
"""

import json
import logging
import os
import sys
import threading
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List

from ..constants import APP_NAME, LOG_BACKUP_COUNT, LOG_MAX_BYTES

_context = threading.local()

SERVICE_NAME: str = os.environ.get("LOG_SERVICE_NAME", APP_NAME)

# Fields the telemetry pipeline and middleware pass through ``extra``
TELEMETRY_FIELDS = (
    "exporter",
    "signal",
    "endpoint",
    "batch_size",
    "status_code",
    "duration_ms",
    "fingerprint",
)

_DEV_FORMAT = "%(asctime)s %(levelname)-8s %(name)s %(trace_tag)s%(message)s"


def set_log_context(**kwargs: Any) -> None:
    """Merge key-value pairs into the current thread's log context."""
    data = getattr(_context, "data", None)
    if data is None:
        data = _context.data = {}
    data.update(kwargs)


def clear_log_context() -> None:
    _context.data = {}


def get_log_context() -> Dict[str, Any]:
    """Copy of the current thread's log context."""
    return dict(getattr(_context, "data", {}))


class _TraceContextFilter(logging.Filter):
    """Stamps ``trace_id``, ``span_id`` and ``trace_tag`` onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = getattr(_context, "data", None) or {}
        trace_id = ctx.get("trace_id", "")
        record.trace_id = trace_id
        record.span_id = ctx.get("span_id", "")
        record.request = {k: v for k, v in ctx.items() if k not in ("trace_id", "span_id")}
        record.trace_tag = f"[{trace_id[:8]}] " if trace_id else ""
        return True


class _JsonFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": SERVICE_NAME,
        }
        if getattr(record, "trace_id", ""):
            entry["trace_id"] = record.trace_id
            entry["span_id"] = record.span_id
        entry.update(getattr(record, "request", None) or {})

        for key in TELEMETRY_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                entry[key] = value

        if record.exc_info and record.exc_info[0] is not None:
            entry["error_type"] = record.exc_info[0].__name__
            entry["exception"] = self.formatException(record.exc_info)
            entry["source"] = f"{record.pathname}:{record.lineno}"

        return json.dumps(entry, default=str, ensure_ascii=False)


def _handlers(log_file: str) -> List[logging.Handler]:
    log_dir = os.environ.get("LOG_DIR") or str(Path(__file__).parent.parent.parent / "logs")
    log_path = Path(log_dir) / log_file
    log_path.parent.mkdir(parents=True, exist_ok=True)

    file_handler = RotatingFileHandler(
        log_path, maxBytes=LOG_MAX_BYTES, backupCount=LOG_BACKUP_COUNT
    )
    file_handler.setFormatter(_JsonFormatter())

    console_handler = logging.StreamHandler(sys.stderr)
    if os.environ.get("LOG_FORMAT", "").lower() == "json":
        console_handler.setFormatter(_JsonFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(_DEV_FORMAT, datefmt="%H:%M:%S"))

    return [file_handler, console_handler]


def setup_structured_logger(name: str, log_file: str, debug: bool = False) -> logging.Logger:
    """Create or reconfigure a trace-correlated logger.

    ``log_file`` is created under ``LOG_DIR`` (default ``logs/`` in the
    project root). Calling again with a different ``debug`` only changes
    the level; handlers are attached once.
    """
    level = logging.DEBUG if debug else logging.INFO
    logger = logging.getLogger(name)
    logger.setLevel(level)

    if not logger.handlers:
        for handler in _handlers(log_file):
            handler.addFilter(_TraceContextFilter())
            logger.addHandler(handler)
    for handler in logger.handlers:
        handler.setLevel(level)
    return logger
