"""
W3C Trace Context and Baggage propagation.

``traceparent``: ``00-<trace_id>-<parent_span_id>-<flags>``
``baggage``:     ``key1=value1,key2=value2;property``

Each propagator works on its own header, so a request carrying only one
of them still yields that half of the context.
"""

import logging
import re
from typing import Dict, List, Mapping, MutableMapping, Optional, Sequence
from urllib.parse import quote, unquote

from ..constants import BAGGAGE_MAX_HEADER_LENGTH, BAGGAGE_MAX_PAIRS
from .context import EMPTY_CONTEXT, Context, SpanContext

logger = logging.getLogger("telemetry")

Carrier = Mapping[str, str]


def _get_header(carrier: Carrier, name: str) -> Optional[str]:
    # Werkzeug headers are case-insensitive; plain dicts may not be
    value = carrier.get(name)
    if value is None:
        lowered = name.lower()
        for key, candidate in carrier.items():
            if key.lower() == lowered:
                return candidate
    return value


class TextMapPropagator:
    """Reads context from / writes context to string headers."""

    def extract(self, carrier: Carrier, context: Optional[Context] = None) -> Context:
        raise NotImplementedError

    def inject(self, context: Context, carrier: MutableMapping[str, str]) -> None:
        raise NotImplementedError

    @property
    def fields(self) -> List[str]:
        return []


class TraceContextPropagator(TextMapPropagator):
    """W3C ``traceparent`` / ``tracestate``."""

    TRACEPARENT_HEADER = "traceparent"
    TRACESTATE_HEADER = "tracestate"

    _TRACEPARENT_RE = re.compile(
        r"^\s*([0-9a-f]{2})-([0-9a-f]{32})-([0-9a-f]{16})-([0-9a-f]{2})(-.*)?\s*$"
    )

    def extract(self, carrier: Carrier, context: Optional[Context] = None) -> Context:
        context = context if context is not None else EMPTY_CONTEXT
        header = _get_header(carrier, self.TRACEPARENT_HEADER)
        if not header:
            return context

        match = self._TRACEPARENT_RE.match(header)
        if not match:
            logger.debug("Ignoring malformed traceparent header: %r", header)
            return context
        version, trace_id, span_id, flags, rest = match.groups()
        # ff is forbidden; version 00 has exactly four fields
        if version == "ff" or (version == "00" and rest):
            return context

        span_context = SpanContext(
            trace_id=trace_id,
            span_id=span_id,
            sampled=bool(int(flags, 16) & 0x01),
            is_remote=True,
            trace_state=(_get_header(carrier, self.TRACESTATE_HEADER) or "").strip(),
        )
        if not span_context.is_valid:
            return context
        return context.with_remote_parent(span_context)

    def inject(self, context: Context, carrier: MutableMapping[str, str]) -> None:
        span_context = context.span_context
        if span_context is None or not span_context.is_valid:
            return
        flags = "01" if span_context.sampled else "00"
        carrier[self.TRACEPARENT_HEADER] = (
            f"00-{span_context.trace_id}-{span_context.span_id}-{flags}"
        )
        if span_context.trace_state:
            carrier[self.TRACESTATE_HEADER] = span_context.trace_state

    @property
    def fields(self) -> List[str]:
        return [self.TRACEPARENT_HEADER, self.TRACESTATE_HEADER]


class BaggagePropagator(TextMapPropagator):
    """W3C ``baggage`` header.  Entry properties are accepted and dropped."""

    BAGGAGE_HEADER = "baggage"

    def extract(self, carrier: Carrier, context: Optional[Context] = None) -> Context:
        context = context if context is not None else EMPTY_CONTEXT
        header = _get_header(carrier, self.BAGGAGE_HEADER)
        if not header:
            return context
        if len(header) > BAGGAGE_MAX_HEADER_LENGTH:
            logger.debug("Baggage header exceeds %d bytes; ignored", BAGGAGE_MAX_HEADER_LENGTH)
            return context

        baggage: Dict[str, str] = dict(context.baggage)
        entries = header.split(",")
        if len(entries) > BAGGAGE_MAX_PAIRS:
            logger.debug("Baggage has more than %d entries; extras dropped", BAGGAGE_MAX_PAIRS)
            entries = entries[:BAGGAGE_MAX_PAIRS]
        for entry in entries:
            member = entry.split(";", 1)[0]
            key, sep, value = member.partition("=")
            key = key.strip()
            if not sep or not key:
                continue
            baggage[unquote(key)] = unquote(value.strip())
        return context.replace_baggage(baggage)

    def inject(self, context: Context, carrier: MutableMapping[str, str]) -> None:
        if not context.baggage:
            return
        carrier[self.BAGGAGE_HEADER] = ",".join(
            f"{quote(str(k), safe='')}={quote(str(v), safe='')}"
            for k, v in context.baggage.items()
        )

    @property
    def fields(self) -> List[str]:
        return [self.BAGGAGE_HEADER]


class CompositePropagator(TextMapPropagator):
    """Runs several propagators in order over the same carrier."""

    def __init__(self, propagators: Sequence[TextMapPropagator]) -> None:
        self._propagators = tuple(propagators)

    def extract(self, carrier: Carrier, context: Optional[Context] = None) -> Context:
        context = context if context is not None else EMPTY_CONTEXT
        for propagator in self._propagators:
            context = propagator.extract(carrier, context)
        return context

    def inject(self, context: Context, carrier: MutableMapping[str, str]) -> None:
        for propagator in self._propagators:
            propagator.inject(context, carrier)

    @property
    def fields(self) -> List[str]:
        names: List[str] = []
        for propagator in self._propagators:
            for name in propagator.fields:
                if name not in names:
                    names.append(name)
        return names


def default_propagator() -> CompositePropagator:
    """W3C trace context followed by W3C baggage."""
    return CompositePropagator([TraceContextPropagator(), BaggagePropagator()])
