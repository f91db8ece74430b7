"""Options that shape how spans are started and finished."""

from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Optional

from tracekit import ext
from tracekit.api import (
    FinishConfig,
    FinishOption,
    SpanContext,
    StartSpanConfig,
    StartSpanOption,
)


def tag(k: str, v: Any) -> StartSpanOption:
    """Set the key/value pair as a tag on the started span."""

    def apply(cfg: StartSpanConfig) -> None:
        if cfg.tags is None:
            cfg.tags = {}
        cfg.tags[k] = v

    return apply


def service_name(name: str) -> StartSpanOption:
    """Set the service name of the started span."""
    return tag(ext.SERVICE_NAME, name)


def resource_name(name: str) -> StartSpanOption:
    """Set the resource name (query, URL, RPC method...) of the started span."""
    return tag(ext.RESOURCE_NAME, name)


def span_type(name: str) -> StartSpanOption:
    """Set the span type, such as "web", "db" or "cache"."""
    return tag(ext.SPAN_TYPE, name)


def with_span_id(span_id: int) -> StartSpanOption:
    """Force the span ID; without a parent it also becomes the trace ID."""

    def apply(cfg: StartSpanConfig) -> None:
        cfg.span_id = span_id

    return apply


def child_of(ctx: Optional[SpanContext]) -> StartSpanOption:
    """Use ``ctx`` as the parent of the started span."""

    def apply(cfg: StartSpanConfig) -> None:
        cfg.parent = ctx

    return apply


def start_time(t: Optional[datetime]) -> StartSpanOption:
    """Use ``t`` as the start time instead of the creation time."""

    def apply(cfg: StartSpanConfig) -> None:
        cfg.start_time = t

    return apply


def analytics_rate(rate: float) -> StartSpanOption:
    """Set the span's analytics event sample rate; NaN leaves it unset."""
    if math.isnan(rate):
        return lambda cfg: None
    return tag(ext.EVENT_SAMPLE_RATE, rate)


def finish_time(t: Optional[datetime]) -> FinishOption:
    """Use ``t`` as the finish time instead of the current time."""

    def apply(cfg: FinishConfig) -> None:
        cfg.finish_time = t

    return apply


def with_error(err: Optional[BaseException]) -> FinishOption:
    """Mark the span as having failed with ``err``; ``None`` has no effect."""

    def apply(cfg: FinishConfig) -> None:
        cfg.error = err

    return apply


def no_debug_stack() -> FinishOption:
    """Keep errors set on finish from attaching a stack trace."""

    def apply(cfg: FinishConfig) -> None:
        cfg.no_debug_stack = True

    return apply


def stack_frames(n: int, skip: int) -> FinishOption:
    """Limit error stack traces to ``n`` frames starting at ``skip``; 0 disables them."""
    if n == 0:
        return no_debug_stack()

    def apply(cfg: FinishConfig) -> None:
        cfg.stack_frames = n
        cfg.skip_stack_frames = skip

    return apply