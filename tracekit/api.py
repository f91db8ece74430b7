"""Interfaces shared by every tracer implementation: tracers, spans and contexts."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


@dataclass
class StartSpanConfig:
    """Settings for starting a span, shaped by start-span options.

    ``parent`` is the context to descend from (``None`` for a root span);
    ``start_time`` of ``None`` means "now"; a non-zero ``span_id`` forces the
    span ID, and also the trace ID when there is no parent.
    """

    parent: Optional["SpanContext"] = None
    start_time: Optional[datetime] = None
    tags: dict[str, Any] = field(default_factory=dict)
    span_id: int = 0


@dataclass
class FinishConfig:
    """Settings for finishing a span, shaped by finish options.

    ``finish_time`` of ``None`` means "now". ``error``, when set, is recorded
    on the span before it finishes.
    """

    finish_time: Optional[datetime] = None
    error: Optional[BaseException] = None
    no_debug_stack: bool = False
    stack_frames: int = 0
    skip_stack_frames: int = 0


StartSpanOption = Callable[[StartSpanConfig], None]
FinishOption = Callable[[FinishConfig], None]


class SpanContext(ABC):
    """State of a span that propagates to descendants and across processes."""

    @abstractmethod
    def span_id(self) -> int:
        """Return the span ID carried by this context."""

    @abstractmethod
    def trace_id(self) -> int:
        """Return the trace ID carried by this context."""

    @abstractmethod
    def baggage_items(self) -> Iterator[tuple[str, str]]:
        """Yield the baggage key/value pairs held by this context."""


class Span(ABC):
    """A timed unit of work with a name, tags and a context."""

    @abstractmethod
    def set_tag(self, key: str, value: Any) -> None:
        """Set a key/value pair as metadata on the span."""

    @abstractmethod
    def set_operation_name(self, operation_name: str) -> None:
        """Replace the span's operation name."""

    @abstractmethod
    def baggage_item(self, key: str) -> str:
        """Return the baggage item at ``key``, or an empty string."""

    @abstractmethod
    def set_baggage_item(self, key: str, val: str) -> None:
        """Set a baggage item that propagates to all descendant spans."""

    @abstractmethod
    def finish(self, *options: FinishOption) -> None:
        """Finish the span; repeated calls have no further effect."""

    @abstractmethod
    def context(self) -> SpanContext:
        """Return the span's context."""


class Tracer(ABC):
    """Starts spans and moves their contexts in and out of carriers."""

    @abstractmethod
    def start_span(self, operation_name: str, *options: StartSpanOption) -> Span:
        """Start a span with the given operation name and options."""

    @abstractmethod
    def extract(self, carrier: Any) -> SpanContext:
        """Read a span context from ``carrier``; baggage keys come back lower-cased."""

    @abstractmethod
    def inject(self, context: SpanContext, carrier: Any) -> None:
        """Write ``context`` into ``carrier``."""

    @abstractmethod
    def stop(self) -> None:
        """Stop the tracer; repeated calls have no further effect."""


class Logger(ABC):
    """Receives the messages a tracer emits."""

    @abstractmethod
    def log(self, msg: str) -> None:
        """Record ``msg``."""