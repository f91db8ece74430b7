"""Tracing primitives: span interfaces, sampling, context propagation and a mock tracer."""

__version__ = "0.1.0"