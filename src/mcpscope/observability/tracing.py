"""
Trace/span correlation without an external tracing backend.

Every operation gets a span id; a span started while another span is on the
current stack inherits its trace id and records it as the parent. The stack
lives in a ContextVar holding an immutable tuple, so each asyncio task sees
the stack it was spawned with and never the pushes of sibling tasks.

Spans are ended by id, not by stack position: overlapping asynchronous
operations may finish in any order. Ending an unknown span returns None and
the caller decides how to report it.
"""

import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from opentelemetry.sdk.trace.id_generator import IdGenerator, RandomIdGenerator

# Span ids of in-flight operations, innermost last
_span_stack: ContextVar[tuple[str, ...]] = ContextVar("mcpscope_span_stack", default=())


def _error_text(error: BaseException | str) -> str:
    try:
        return str(error)
    except Exception:
        return type(error).__name__


def _frozen(attributes: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(attributes or {}))


@dataclass(frozen=True)
class TraceContext:
    """One in-flight span."""

    trace_id: str
    span_id: str
    operation_name: str
    parent_span_id: str | None = None
    session_id: str | None = None
    attributes: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_perf: float = field(default_factory=time.perf_counter, repr=False)

    def as_log_fields(self) -> dict[str, Any]:
        """Fields stamped onto records under ``_trace``."""
        fields: dict[str, Any] = {
            "traceId": self.trace_id,
            "spanId": self.span_id,
            "operationName": self.operation_name,
        }
        if self.parent_span_id:
            fields["parentSpanId"] = self.parent_span_id
        return fields


@dataclass(frozen=True)
class CompletedSpan:
    """A span after its matching end call."""

    context: TraceContext
    duration_ms: float
    result_attributes: Mapping[str, Any]
    success: bool
    error: str | None = None
    ended_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def attributes(self) -> dict[str, Any]:
        """Start attributes merged with result attributes (result wins)."""
        return {**self.context.attributes, **self.result_attributes}

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "message": "Operation trace ended",
            "operationName": self.context.operation_name,
            "durationMs": round(self.duration_ms, 3),
            "success": self.success,
            "attributes": self.attributes,
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


class TraceCorrelator:
    """Issues span ids and tracks in-flight spans for one process."""

    def __init__(
        self,
        id_generator: IdGenerator | None = None,
        clock: Callable[[], float] = time.perf_counter,
    ):
        self._ids = id_generator or RandomIdGenerator()
        self._clock = clock
        self._in_flight: dict[str, TraceContext] = {}

    def new_trace_id(self) -> str:
        return format(self._ids.generate_trace_id(), "032x")

    def new_span_id(self) -> str:
        return format(self._ids.generate_span_id(), "016x")

    def current(self) -> TraceContext | None:
        """Innermost in-flight span of the current execution context."""
        for span_id in reversed(_span_stack.get()):
            span = self._in_flight.get(span_id)
            if span is not None:
                return span
        return None

    def start_operation(
        self,
        operation_name: str,
        attributes: Mapping[str, Any] | None = None,
        *,
        session_id: str | None = None,
    ) -> TraceContext:
        """Open a span as a child of the current one (or as a new trace root)."""
        parent = self.current()
        span = TraceContext(
            trace_id=parent.trace_id if parent else self.new_trace_id(),
            span_id=self.new_span_id(),
            operation_name=operation_name,
            parent_span_id=parent.span_id if parent else None,
            session_id=session_id if session_id is not None else (parent.session_id if parent else None),
            attributes=_frozen(attributes),
            started_perf=self._clock(),
        )
        self._in_flight[span.span_id] = span
        _span_stack.set(_span_stack.get() + (span.span_id,))
        return span

    def end_operation(
        self,
        span_id: str,
        result_attributes: Mapping[str, Any] | None = None,
        *,
        error: BaseException | str | None = None,
    ) -> CompletedSpan | None:
        """Close a span by id. Returns None for unknown or already-ended spans."""
        span = self._in_flight.pop(span_id, None)
        if span is None:
            return None

        stack = _span_stack.get()
        if span_id in stack:
            _span_stack.set(tuple(s for s in stack if s != span_id))

        result = dict(result_attributes or {})
        success = error is None and result.get("success", True) is not False
        return CompletedSpan(
            context=span,
            duration_ms=(self._clock() - span.started_perf) * 1000,
            result_attributes=_frozen(result),
            success=success,
            error=_error_text(error) if error is not None else None,
        )

    @contextmanager
    def span_scope(
        self,
        operation_name: str,
        attributes: Mapping[str, Any] | None = None,
        *,
        session_id: str | None = None,
    ) -> Iterator[TraceContext]:
        """Run a block inside a span that is ended on every exit path."""
        span = self.start_operation(operation_name, attributes, session_id=session_id)
        try:
            yield span
        except BaseException as e:
            self.end_operation(span.span_id, error=e)
            raise
        else:
            self.end_operation(span.span_id)

    def get(self, span_id: str) -> TraceContext | None:
        return self._in_flight.get(span_id)

    def is_active(self, span_id: str) -> bool:
        return span_id in self._in_flight

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    def spans_for_session(self, session_id: str) -> list[TraceContext]:
        return [s for s in self._in_flight.values() if s.session_id == session_id]

    def discard_session(self, session_id: str) -> int:
        """Drop in-flight spans belonging to a removed session."""
        stale = [s.span_id for s in self.spans_for_session(session_id)]
        for span_id in stale:
            del self._in_flight[span_id]
        return len(stale)

    def clear(self) -> None:
        self._in_flight.clear()
        _span_stack.set(())
