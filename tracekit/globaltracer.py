"""The process-wide active tracer, plus no-op tracer, span and context types."""

from __future__ import annotations

import threading
from collections.abc import Iterator
from typing import Any

from tracekit.api import FinishOption, Span, SpanContext, StartSpanOption, Tracer


class NoopSpanContext(SpanContext):
    """A span context that carries nothing."""

    def span_id(self) -> int:
        return 0

    def trace_id(self) -> int:
        return 0

    def baggage_items(self) -> Iterator[tuple[str, str]]:
        return iter(())


class NoopSpan(Span):
    """A span that records nothing."""

    def set_tag(self, key: str, value: Any) -> None:
        pass

    def set_operation_name(self, operation_name: str) -> None:
        pass

    def baggage_item(self, key: str) -> str:
        return ""

    def set_baggage_item(self, key: str, val: str) -> None:
        pass

    def finish(self, *options: FinishOption) -> None:
        pass

    def tracer(self) -> "NoopTracer":
        """Return a no-op tracer."""
        return NoopTracer()

    def context(self) -> SpanContext:
        return NoopSpanContext()


class NoopTracer(Tracer):
    """A tracer that starts no-op spans and propagates nothing."""

    def start_span(self, operation_name: str, *options: StartSpanOption) -> Span:
        return NoopSpan()

    def set_service_info(self, name: str, app: str, app_type: str) -> None:
        """Accept and ignore service information."""

    def extract(self, carrier: Any) -> SpanContext:
        return NoopSpanContext()

    def inject(self, context: SpanContext, carrier: Any) -> None:
        pass

    def stop(self) -> None:
        pass


_lock = threading.Lock()
_global_tracer: Tracer = NoopTracer()
_testing = False


def set_global_tracer(t: Tracer) -> None:
    """Make ``t`` the active tracer and stop the previous one.

    The previous tracer is not stopped while testing mode is on.
    """
    global _global_tracer
    with _lock:
        old = _global_tracer
        _global_tracer = t
    # Stop outside the lock so shutdown code may read the active tracer.
    if not _testing:
        old.stop()


def get_global_tracer() -> Tracer:
    """Return the currently active tracer."""
    with _lock:
        return _global_tracer


def is_testing() -> bool:
    """Report whether a mock tracer is active."""
    return _testing


def set_testing(value: bool) -> None:
    """Turn testing mode on or off."""
    global _testing
    _testing = bool(value)