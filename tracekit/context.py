"""An immutable request context that carries the active span."""

from __future__ import annotations

from typing import Any, Optional

from tracekit.api import Span, StartSpanOption
from tracekit.globaltracer import NoopSpan, get_global_tracer
from tracekit.spanoptions import child_of

_MISSING = object()


class _ActiveSpanKey:
    """Private key type so no other value can collide with the active span."""

    def __repr__(self) -> str:
        return "<active span>"


_ACTIVE_SPAN_KEY = _ActiveSpanKey()


class Context:
    """An immutable chain of key/value pairs; deriving never alters the original."""

    __slots__ = ("_parent", "_key", "_value")

    def __init__(
        self,
        parent: Optional["Context"] = None,
        key: Any = _MISSING,
        value: Any = None,
    ) -> None:
        self._parent = parent
        self._key = key
        self._value = value

    def value(self, key: Any) -> Any:
        """Return the value stored at ``key`` by this context or its ancestors, else ``None``."""
        ctx: Optional[Context] = self
        while ctx is not None:
            if ctx._key is not _MISSING and ctx._key == key:
                return ctx._value
            ctx = ctx._parent
        return None

    def with_value(self, key: Any, value: Any) -> "Context":
        """Return a child context holding ``value`` at ``key``."""
        if key is None:
            raise ValueError("context key must not be None")
        return Context(self, key, value)


def background() -> Context:
    """Return an empty root context."""
    return Context()


def context_with_span(ctx: Context, span: Span) -> Context:
    """Return a copy of ``ctx`` that holds ``span`` as its active span."""
    return ctx.with_value(_ACTIVE_SPAN_KEY, span)


def span_from_context(ctx: Optional[Context]) -> tuple[Span, bool]:
    """Return the span in ``ctx`` and True, or a no-op span and False."""
    if ctx is None:
        return NoopSpan(), False
    found = ctx.value(_ACTIVE_SPAN_KEY)
    if isinstance(found, Span):
        return found, True
    return NoopSpan(), False


def start_span_from_context(
    ctx: Optional[Context], operation_name: str, *options: StartSpanOption
) -> tuple[Span, Context]:
    """Start a span with the global tracer, parented by the span in ``ctx`` if any.

    A span found in the context takes precedence over a ``child_of`` option.
    Returns the new span and a context holding it.
    """
    if ctx is None:
        ctx = background()
    opts = list(options)
    parent, ok = span_from_context(ctx)
    if ok:
        opts.append(child_of(parent.context()))
    span = get_global_tracer().start_span(operation_name, *opts)
    return span, context_with_span(ctx, span)