"""Propagator and carrier interfaces, and the errors propagation can raise."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Any

from tracekit.api import SpanContext


class PropagationError(Exception):
    """Base class for span context propagation failures."""


class InvalidCarrierError(PropagationError):
    """The carrier does not implement the required interface."""

    def __init__(self, message: str = "invalid carrier") -> None:
        super().__init__(message)


class InvalidSpanContextError(PropagationError):
    """The span context is not of the expected type or is incomplete."""

    def __init__(self, message: str = "invalid span context") -> None:
        super().__init__(message)


class SpanContextCorruptedError(PropagationError):
    """The information found in the carrier could not be parsed."""

    def __init__(self, message: str = "span context corrupted") -> None:
        super().__init__(message)


class SpanContextNotFoundError(PropagationError):
    """The carrier holds no span context."""

    def __init__(self, message: str = "span context not found") -> None:
        super().__init__(message)


def _has_method(cls: type, name: str) -> bool:
    return any(callable(vars(base).get(name)) for base in cls.__mro__)


class Propagator(ABC):
    """Injects span contexts into carriers and extracts them back."""

    @abstractmethod
    def inject(self, context: SpanContext, carrier: Any) -> None:
        """Write ``context`` into ``carrier``."""

    @abstractmethod
    def extract(self, carrier: Any) -> SpanContext:
        """Read a span context from ``carrier``."""


class TextMapWriter(ABC):
    """A carrier that accepts string key/value pairs.

    Any object with a ``set`` method counts as one.
    """

    @abstractmethod
    def set(self, key: str, val: str) -> None:
        """Store the given pair."""

    @classmethod
    def __subclasshook__(cls, other: type) -> Any:
        if cls is TextMapWriter:
            return _has_method(other, "set") or NotImplemented
        return NotImplemented


class TextMapReader(ABC):
    """A carrier whose string key/value pairs can be iterated.

    Any object with a ``foreach_key`` method counts as one.
    """

    @abstractmethod
    def foreach_key(self, handler: Callable[[str, str], None]) -> None:
        """Call ``handler`` with every pair; an exception it raises stops iteration."""

    @classmethod
    def __subclasshook__(cls, other: type) -> Any:
        if cls is TextMapReader:
            return _has_method(other, "foreach_key") or NotImplemented
        return NotImplemented