"""A tracer for tests that records spans in memory instead of sending them."""

from __future__ import annotations

import itertools
import re
import threading
from collections.abc import Iterator
from datetime import datetime, timezone
from typing import Any, Optional

from tracekit import ext
from tracekit.api import (
    FinishConfig,
    FinishOption,
    Span,
    SpanContext,
    StartSpanConfig,
    StartSpanOption,
    Tracer,
)
from tracekit.globaltracer import NoopTracer, set_global_tracer, set_testing
from tracekit.propagation import (
    InvalidCarrierError,
    InvalidSpanContextError,
    SpanContextCorruptedError,
    SpanContextNotFoundError,
    TextMapReader,
    TextMapWriter,
)

_TRACE_HEADER = "x-datadog-trace-id"
_SPAN_HEADER = "x-datadog-parent-id"
_PRIORITY_HEADER = "x-datadog-sampling-priority"
_BAGGAGE_PREFIX = "ot-baggage-"

_UINT64_LIMIT = 1 << 64
_INT64_MIN = -(1 << 63)
_INT64_MAX = (1 << 63) - 1
_UNSIGNED = re.compile(r"[0-9]+")
_SIGNED = re.compile(r"[+-]?[0-9]+")

_id_lock = threading.Lock()
_id_source = itertools.count(124)


def next_id() -> int:
    """Return the next ID from an increasing sequence."""
    with _id_lock:
        return next(_id_source)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_uint(value: str) -> int:
    if not _UNSIGNED.fullmatch(value):
        raise SpanContextCorruptedError()
    number = int(value)
    if number >= _UINT64_LIMIT:
        raise SpanContextCorruptedError()
    return number


def _parse_int(value: str) -> int:
    if not _SIGNED.fullmatch(value):
        raise SpanContextCorruptedError()
    number = int(value)
    if not _INT64_MIN <= number <= _INT64_MAX:
        raise SpanContextCorruptedError()
    return number


class MockSpanContext(SpanContext):
    """Span context of a mock span: IDs, baggage and sampling priority."""

    def __init__(
        self,
        span_id: int = 0,
        trace_id: int = 0,
        baggage: Optional[dict[str, str]] = None,
        priority: int = 0,
        has_priority: bool = False,
        span: Optional["MockSpan"] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._span_id = span_id
        self._trace_id = trace_id
        self._baggage: dict[str, str] = dict(baggage) if baggage else {}
        self._priority = priority
        self._has_priority = has_priority
        self._span = span

    def span_id(self) -> int:
        return self._span_id

    def trace_id(self) -> int:
        return self._trace_id

    def baggage_items(self) -> Iterator[tuple[str, str]]:
        with self._lock:
            items = list(self._baggage.items())
        return iter(items)

    def set_baggage_item(self, k: str, v: str) -> None:
        """Store a baggage item."""
        with self._lock:
            self._baggage[k] = v

    def baggage_item(self, k: str) -> str:
        """Return the baggage item at ``k``, or an empty string."""
        with self._lock:
            return self._baggage.get(k, "")

    def set_sampling_priority(self, p: int) -> None:
        """Record the sampling priority."""
        with self._lock:
            self._priority = p
            self._has_priority = True

    def has_sampling_priority(self) -> bool:
        """Report whether a sampling priority was set."""
        with self._lock:
            return self._has_priority

    def sampling_priority(self) -> int:
        """Return the sampling priority (0 when unset)."""
        with self._lock:
            return self._priority


class MockSpan(Span):
    """A span recorded by a mock tracer and open to inspection."""

    def __init__(
        self,
        tracer: "MockTracer",
        operation_name: str,
        config: Optional[StartSpanConfig] = None,
    ) -> None:
        cfg = config if config is not None else StartSpanConfig()
        tags = dict(cfg.tags or {})
        if tags.get(ext.RESOURCE_NAME) is None:
            tags[ext.RESOURCE_NAME] = operation_name

        self._lock = threading.Lock()
        self._name = operation_name
        self._tags: dict[str, Any] = {}
        self._finish_time: Optional[datetime] = None
        self._finished = False
        self._tracer = tracer
        self._parent_id = 0
        self._start_time = cfg.start_time if cfg.start_time is not None else _now()

        span_id = cfg.span_id or next_id()
        self._context = MockSpanContext(span_id=span_id, trace_id=span_id, span=self)

        parent = cfg.parent
        if isinstance(parent, MockSpanContext):
            if parent._span is not None and self._tags.get(ext.SERVICE_NAME) is None:
                # A local parent passes its service on.
                self.set_tag(ext.SERVICE_NAME, parent._span.tag(ext.SERVICE_NAME))
            if parent.has_sampling_priority():
                self.set_tag(ext.SAMPLING_PRIORITY, parent.sampling_priority())
            self._parent_id = parent.span_id()
            self._context._priority = parent.sampling_priority()
            self._context._has_priority = parent.has_sampling_priority()
            self._context._trace_id = parent.trace_id()
            self._context._baggage = dict(parent.baggage_items())

        for key, value in tags.items():
            self.set_tag(key, value)

    def set_tag(self, key: str, value: Any) -> None:
        with self._lock:
            if self._finished:
                return
            if key == ext.SAMPLING_PRIORITY and not isinstance(value, bool):
                if isinstance(value, int):
                    self._context.set_sampling_priority(value)
                elif isinstance(value, float):
                    self._context.set_sampling_priority(int(value))
            self._tags[key] = value

    def tag(self, k: str) -> Any:
        """Return the tag at ``k``, or ``None``."""
        with self._lock:
            return self._tags.get(k)

    def tags(self) -> dict[str, Any]:
        """Return a copy of all tags."""
        with self._lock:
            return dict(self._tags)

    def start_time(self) -> datetime:
        """Return when the span started."""
        return self._start_time

    def finish_time(self) -> Optional[datetime]:
        """Return when the span finished, or ``None`` while it is open."""
        with self._lock:
            return self._finish_time

    def trace_id(self) -> int:
        """Return the span's trace ID."""
        return self._context.trace_id()

    def span_id(self) -> int:
        """Return the span's ID."""
        return self._context.span_id()

    def parent_id(self) -> int:
        """Return the parent's span ID, or 0 for a root span."""
        return self._parent_id

    def operation_name(self) -> str:
        """Return the operation name."""
        with self._lock:
            return self._name

    def set_operation_name(self, operation_name: str) -> None:
        with self._lock:
            self._name = operation_name

    def baggage_item(self, key: str) -> str:
        return self._context.baggage_item(key)

    def set_baggage_item(self, key: str, val: str) -> None:
        self._context.set_baggage_item(key, val)

    def finish(self, *options: FinishOption) -> None:
        cfg = FinishConfig()
        for option in options:
            option(cfg)
        when = cfg.finish_time if cfg.finish_time is not None else _now()
        if cfg.error is not None:
            self.set_tag(ext.ERROR, cfg.error)
        if cfg.no_debug_stack:
            self.set_tag(ext.ERROR_STACK, "<debug stack disabled>")
        with self._lock:
            if self._finished:
                return
            self._finished = True
            self._finish_time = when
        self._tracer._add_finished_span(self)

    def context(self) -> MockSpanContext:
        return self._context

    def __str__(self) -> str:
        sc = self._context
        return (
            f"\nname: {self._name}\n"
            f"tags: {self._tags!r}\n"
            f"start: {self._start_time}\n"
            f"finish: {self._finish_time}\n"
            f"id: {sc.span_id()}\n"
            f"parent: {self._parent_id}\n"
            f"trace: {sc.trace_id()}\n"
            f"baggage: {dict(sc.baggage_items())!r}\n"
        )


class MockTracer(Tracer):
    """A tracer that keeps open and finished spans in memory."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._finished: list[MockSpan] = []
        self._open: dict[int, MockSpan] = {}

    def start_span(self, operation_name: str, *options: StartSpanOption) -> MockSpan:
        cfg = StartSpanConfig()
        for option in options:
            option(cfg)
        span = MockSpan(self, operation_name, cfg)
        with self._lock:
            self._open[span.span_id()] = span
        return span

    def open_spans(self) -> list[MockSpan]:
        """Return the spans started but not yet finished."""
        with self._lock:
            return list(self._open.values())

    def finished_spans(self) -> list[MockSpan]:
        """Return the finished spans, in finishing order."""
        with self._lock:
            return list(self._finished)

    def reset(self) -> None:
        """Forget all recorded spans."""
        with self._lock:
            self._open.clear()
            self._finished.clear()

    def stop(self) -> None:
        """Deactivate the mock tracer and install a no-op tracer."""
        set_global_tracer(NoopTracer())
        set_testing(False)

    def _add_finished_span(self, span: MockSpan) -> None:
        with self._lock:
            self._open.pop(span.span_id(), None)
            self._finished.append(span)

    def extract(self, carrier: Any) -> MockSpanContext:
        if not isinstance(carrier, TextMapReader):
            raise InvalidCarrierError()
        sc = MockSpanContext()

        def handle(key: str, value: str) -> None:
            k = key.lower()
            if k == _TRACE_HEADER:
                sc._trace_id = _parse_uint(value)
            if k == _SPAN_HEADER:
                sc._span_id = _parse_uint(value)
            if k == _PRIORITY_HEADER:
                sc._priority = _parse_int(value)
                sc._has_priority = True
            if k.startswith(_BAGGAGE_PREFIX):
                sc.set_baggage_item(k[len(_BAGGAGE_PREFIX):], value)

        carrier.foreach_key(handle)
        if sc.trace_id() == 0 or sc.span_id() == 0:
            raise SpanContextNotFoundError()
        return sc

    def inject(self, context: SpanContext, carrier: Any) -> None:
        if not isinstance(carrier, TextMapWriter):
            raise InvalidCarrierError()
        if (
            not isinstance(context, MockSpanContext)
            or context.trace_id() == 0
            or context.span_id() == 0
        ):
            raise InvalidSpanContextError()
        carrier.set(_TRACE_HEADER, str(context.trace_id()))
        carrier.set(_SPAN_HEADER, str(context.span_id()))
        if context.has_sampling_priority():
            carrier.set(_PRIORITY_HEADER, str(context.sampling_priority()))
        for k, v in context.baggage_items():
            carrier.set(_BAGGAGE_PREFIX + k, v)


def start() -> MockTracer:
    """Install a mock tracer as the global tracer and return it."""
    tracer = MockTracer()
    set_global_tracer(tracer)
    set_testing(True)
    return tracer