"""
Spans, tracers and the tracer provider.

A span is mutable only while it is recording.  ``Span.end()`` freezes it
into a ``ReadableSpan`` and hands that snapshot to every registered span
processor exactly once; further calls are no-ops.  Parent/child links are
taken from the explicit ``Context`` passed to ``Tracer.start_span``.
"""

import enum
import logging
import threading
import time
import traceback
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .context import (
    EMPTY_CONTEXT,
    INVALID_SPAN_CONTEXT,
    Context,
    SpanContext,
    new_span_id,
    new_trace_id,
)
from .resource import build_resource

logger = logging.getLogger("telemetry")


class StatusCode(enum.Enum):
    UNSET = "STATUS_CODE_UNSET"
    OK = "STATUS_CODE_OK"
    ERROR = "STATUS_CODE_ERROR"


class SpanKind(enum.Enum):
    INTERNAL = "SPAN_KIND_INTERNAL"
    SERVER = "SPAN_KIND_SERVER"
    CLIENT = "SPAN_KIND_CLIENT"
    PRODUCER = "SPAN_KIND_PRODUCER"
    CONSUMER = "SPAN_KIND_CONSUMER"


@dataclass(frozen=True)
class Status:
    code: StatusCode = StatusCode.UNSET
    description: Optional[str] = None


@dataclass(frozen=True)
class Event:
    """A named, timestamped annotation on a span."""

    name: str
    timestamp: int
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ReadableSpan:
    """Immutable snapshot of an ended span, as seen by exporters."""

    name: str
    context: SpanContext
    parent: Optional[SpanContext]
    kind: SpanKind
    start_time: int
    end_time: int
    attributes: Dict[str, Any]
    events: Tuple[Event, ...]
    status: Status
    resource: Dict[str, Any]
    scope: str

    @property
    def duration_ms(self) -> float:
        return (self.end_time - self.start_time) / 1_000_000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "trace_id": self.context.trace_id,
            "span_id": self.context.span_id,
            "parent_span_id": self.parent.span_id if self.parent else None,
            "kind": self.kind.name,
            "start_time_unix_nano": self.start_time,
            "end_time_unix_nano": self.end_time,
            "duration_ms": round(self.duration_ms, 3),
            "attributes": dict(self.attributes),
            "events": [
                {"name": e.name, "timestamp": e.timestamp, "attributes": dict(e.attributes)}
                for e in self.events
            ],
            "status": {"code": self.status.code.name, "description": self.status.description},
            "resource": dict(self.resource),
            "scope": self.scope,
        }


# ── Span processors ──────────────────────────────────────────────


class SpanProcessor:
    """Hook invoked for every span that starts and ends."""

    def on_start(self, span: "Span") -> None:
        pass

    def on_end(self, span: ReadableSpan) -> None:
        pass

    def force_flush(self, timeout: Optional[float] = None) -> bool:
        return True

    def shutdown(self) -> None:
        pass


class _MultiSpanProcessor(SpanProcessor):
    """Fans span callbacks out to every registered processor."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._processors: Tuple[SpanProcessor, ...] = ()

    def add(self, processor: SpanProcessor) -> None:
        with self._lock:
            self._processors = self._processors + (processor,)

    def on_start(self, span: "Span") -> None:
        for p in self._processors:
            p.on_start(span)

    def on_end(self, span: ReadableSpan) -> None:
        # One misbehaving processor must not starve the others
        for p in self._processors:
            try:
                p.on_end(span)
            except Exception:
                logger.exception("Span processor %s failed on_end", type(p).__name__)

    def force_flush(self, timeout: Optional[float] = None) -> bool:
        return all([p.force_flush(timeout) for p in self._processors])

    def shutdown(self) -> None:
        for p in self._processors:
            p.shutdown()


# ── Spans ────────────────────────────────────────────────────────


class Span:
    """A recording span.  Thread-safe; ends exactly once.

    Usage::

        ctx, span = tracer.start_span(ctx, "work")
        with span:
            span.add_event("step", {"n": 1})
    """

    def __init__(
        self,
        name: str,
        context: SpanContext,
        *,
        parent: Optional[SpanContext] = None,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Optional[Mapping[str, Any]] = None,
        resource: Optional[Dict[str, Any]] = None,
        scope: str = "",
        processor: Optional[SpanProcessor] = None,
        start_time: Optional[int] = None,
    ) -> None:
        self.name = name
        self._context = context
        self._parent = parent
        self._kind = kind
        self._attributes: Dict[str, Any] = dict(attributes or {})
        self._events: List[Event] = []
        self._status = Status()
        self._resource = resource or {}
        self._scope = scope
        self._processor = processor
        self._start_time = start_time or time.time_ns()
        self._end_time: Optional[int] = None
        self._lock = threading.Lock()

    def get_span_context(self) -> SpanContext:
        return self._context

    @property
    def parent(self) -> Optional[SpanContext]:
        return self._parent

    def is_recording(self) -> bool:
        return self._end_time is None

    @property
    def status(self) -> Status:
        return self._status

    def set_attribute(self, key: str, value: Any) -> None:
        with self._lock:
            if self._end_time is not None:
                logger.debug("Ignoring attribute %s on ended span %s", key, self.name)
                return
            self._attributes[key] = value

    def set_attributes(self, attributes: Mapping[str, Any]) -> None:
        for key, value in attributes.items():
            self.set_attribute(key, value)

    def add_event(
        self,
        name: str,
        attributes: Optional[Mapping[str, Any]] = None,
        timestamp: Optional[int] = None,
    ) -> None:
        event = Event(name, timestamp or time.time_ns(), dict(attributes or {}))
        with self._lock:
            if self._end_time is not None:
                logger.debug("Ignoring event %s on ended span %s", name, self.name)
                return
            self._events.append(event)

    def record_exception(
        self,
        exc: BaseException,
        attributes: Optional[Mapping[str, Any]] = None,
        escaped: bool = False,
    ) -> None:
        """Append an ``exception`` event carrying the type, message and stack trace."""
        stacktrace = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        event_attrs: Dict[str, Any] = {
            "exception.type": type(exc).__name__,
            "exception.message": str(exc),
            "exception.stacktrace": stacktrace,
            "exception.escaped": escaped,
        }
        if attributes:
            event_attrs.update(attributes)
        self.add_event("exception", event_attrs)

    def set_status(self, code: StatusCode, description: Optional[str] = None) -> None:
        """Set the span status.  The last call before ``end()`` wins."""
        with self._lock:
            if self._end_time is not None:
                return
            # Descriptions are only meaningful on errors
            self._status = Status(code, description if code is StatusCode.ERROR else None)

    def end(self, end_time: Optional[int] = None) -> None:
        with self._lock:
            if self._end_time is not None:
                logger.debug("Span %s already ended", self.name)
                return
            self._end_time = end_time or time.time_ns()
            readable = self._snapshot()
        if self._processor is not None:
            self._processor.on_end(readable)

    def _snapshot(self) -> ReadableSpan:
        return ReadableSpan(
            name=self.name,
            context=self._context,
            parent=self._parent,
            kind=self._kind,
            start_time=self._start_time,
            end_time=self._end_time,
            attributes=dict(self._attributes),
            events=tuple(self._events),
            status=self._status,
            resource=self._resource,
            scope=self._scope,
        )

    def __enter__(self) -> "Span":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is not None:
            self.record_exception(exc, escaped=True)
            self.set_status(StatusCode.ERROR, f"{exc_type.__name__}: {exc}")
        self.end()

    def __repr__(self) -> str:
        return (
            f"Span(name={self.name!r}, trace_id={self._context.trace_id}, "
            f"span_id={self._context.span_id})"
        )


class NonRecordingSpan(Span):
    """Discard implementation: keeps a span context, records nothing."""

    def __init__(self, context: SpanContext) -> None:
        super().__init__("", context)
        self._end_time = self._start_time

    def is_recording(self) -> bool:
        return False

    def set_attribute(self, key: str, value: Any) -> None:
        pass

    def add_event(self, name, attributes=None, timestamp=None) -> None:
        pass

    def record_exception(self, exc, attributes=None, escaped=False) -> None:
        pass

    def set_status(self, code, description=None) -> None:
        pass

    def end(self, end_time=None) -> None:
        pass

    def __exit__(self, exc_type, exc, tb) -> None:
        pass


# ── Tracers & providers ──────────────────────────────────────────


class Tracer:
    """Starts spans for one instrumentation scope."""

    def __init__(self, name: str, provider: "TracerProvider") -> None:
        self.name = name
        self._provider = provider

    def start_span(
        self,
        context: Optional[Context],
        name: str,
        *,
        kind: SpanKind = SpanKind.INTERNAL,
        attributes: Optional[Mapping[str, Any]] = None,
        start_time: Optional[int] = None,
    ) -> Tuple[Context, Span]:
        """Start a span parented to whatever span ``context`` carries.

        Returns:
            ``(context', span)`` where ``context'`` carries the new span and
            the original baggage.
        """
        context = context if context is not None else EMPTY_CONTEXT
        parent = context.span_context
        if parent is not None and parent.is_valid:
            trace_id, sampled, trace_state = parent.trace_id, parent.sampled, parent.trace_state
        else:
            parent = None
            trace_id, sampled, trace_state = new_trace_id(), True, ""

        span_context = SpanContext(trace_id, new_span_id(), sampled=sampled, trace_state=trace_state)
        if not sampled:
            span: Span = NonRecordingSpan(span_context)
        else:
            span = Span(
                name,
                span_context,
                parent=parent,
                kind=kind,
                attributes=attributes,
                resource=self._provider.resource,
                scope=self.name,
                processor=self._provider._active_processor,
                start_time=start_time,
            )
            self._provider._active_processor.on_start(span)
        return context.with_span(span), span


class TracerProvider:
    """Holds the resource and span processors for all tracers it hands out."""

    def __init__(self, resource: Optional[Dict[str, Any]] = None) -> None:
        self.resource = resource if resource is not None else build_resource()
        self._active_processor = _MultiSpanProcessor()
        self._tracers: Dict[str, Tracer] = {}
        self._lock = threading.Lock()

    def get_tracer(self, name: str) -> Tracer:
        with self._lock:
            tracer = self._tracers.get(name)
            if tracer is None:
                tracer = self._tracers[name] = Tracer(name, self)
            return tracer

    def add_span_processor(self, processor: SpanProcessor) -> None:
        self._active_processor.add(processor)

    @property
    def span_processors(self) -> Tuple[SpanProcessor, ...]:
        return self._active_processor._processors

    def force_flush(self, timeout: Optional[float] = None) -> bool:
        return self._active_processor.force_flush(timeout)

    def shutdown(self) -> None:
        self._active_processor.shutdown()


class NoOpTracer(Tracer):
    """Tracer used before a real provider is registered."""

    def __init__(self, name: str = "") -> None:
        self.name = name

    def start_span(self, context, name, *, kind=SpanKind.INTERNAL, attributes=None,
                   start_time=None):
        context = context if context is not None else EMPTY_CONTEXT
        span = NonRecordingSpan(context.span_context or INVALID_SPAN_CONTEXT)
        return context.with_span(span), span


class NoOpTracerProvider(TracerProvider):
    def __init__(self) -> None:
        super().__init__(resource={})

    def get_tracer(self, name: str) -> Tracer:
        return NoOpTracer(name)
