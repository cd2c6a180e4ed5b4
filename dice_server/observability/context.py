"""
Trace context values: span identity, baggage and the explicit ``Context``.

A ``Context`` is an immutable value threaded through every call that may
start or reference a span.  It carries either a live local span or a
remote parent ``SpanContext`` extracted from incoming headers, plus the
baggage mapping.
"""

import uuid
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Dict, Mapping, Optional

if TYPE_CHECKING:
    from .tracing import Span

INVALID_TRACE_ID = "0" * 32
INVALID_SPAN_ID = "0" * 16


def _new_id(length: int = 32) -> str:
    """Generate a random hex ID (32 chars = 128-bit trace id, 16 = 64-bit span)."""
    return uuid.uuid4().hex[:length]


def new_trace_id() -> str:
    return _new_id(32)


def new_span_id() -> str:
    return _new_id(16)


@dataclass(frozen=True)
class SpanContext:
    """Identity of a span as it travels across process boundaries."""

    trace_id: str
    span_id: str
    sampled: bool = True
    is_remote: bool = False
    trace_state: str = ""

    @property
    def is_valid(self) -> bool:
        return (
            len(self.trace_id) == 32
            and len(self.span_id) == 16
            and self.trace_id != INVALID_TRACE_ID
            and self.span_id != INVALID_SPAN_ID
        )


INVALID_SPAN_CONTEXT = SpanContext(INVALID_TRACE_ID, INVALID_SPAN_ID, sampled=False)


@dataclass(frozen=True)
class Context:
    """Immutable per-request telemetry context.

    ``span`` is the current local span, if any.  ``remote_parent`` holds a
    span context extracted from a carrier when no local span exists yet.
    """

    span: Optional["Span"] = None
    remote_parent: Optional[SpanContext] = None
    baggage: Mapping[str, str] = field(default_factory=dict)

    @property
    def span_context(self) -> Optional[SpanContext]:
        """The span context new children should be parented to."""
        if self.span is not None:
            return self.span.get_span_context()
        return self.remote_parent

    def with_span(self, span: "Span") -> "Context":
        return replace(self, span=span, remote_parent=None)

    def with_remote_parent(self, span_context: SpanContext) -> "Context":
        return replace(self, span=None, remote_parent=span_context)

    def with_baggage(self, **entries: str) -> "Context":
        merged: Dict[str, str] = dict(self.baggage)
        merged.update(entries)
        return replace(self, baggage=merged)

    def replace_baggage(self, baggage: Mapping[str, str]) -> "Context":
        return replace(self, baggage=dict(baggage))


EMPTY_CONTEXT = Context()
