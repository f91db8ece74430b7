"""Samplers deciding which traces are kept: by rate, by agent priority, or by rules."""

from __future__ import annotations

import json
import logging
import math
import os
import re
import sys
import threading
import time
from dataclasses import dataclass, field
from typing import IO, Any, Optional, Protocol

from tracekit import ext

_log = logging.getLogger("tracekit")

KEY_SAMPLING_PRIORITY_RATE = "_dd.agent_psr"
KEY_RULES_SAMPLER_APPLIED_RATE = "_dd.rule_psr"
KEY_RULES_SAMPLER_LIMITER_RATE = "_dd.limit_psr"

# Knuth multiplicative hashing factor, shared with the agent.
KNUTH_FACTOR = 1111111111111111111
_UINT64_MASK = (1 << 64) - 1
_UINT64_SCALE = float(_UINT64_MASK)

DEFAULT_RATE_LIMIT = 100.0
_DEFAULT_RATE_KEY = "service:,env:"


class _SampledSpan(Protocol):
    name: str
    service: str
    trace_id: int
    meta: dict[str, str]

    def set_tag(self, key: str, value: Any) -> None: ...


def _parse_float(value: str) -> float:
    if "_" in value or value != value.strip():
        raise ValueError(f"invalid syntax: {value!r}")
    return float(value)


def sampled_by_rate(n: int, rate: float) -> bool:
    """Report whether ``n`` is kept when sampling at ``rate``."""
    if rate < 1:
        threshold = int(max(rate, 0.0) * _UINT64_SCALE)
        return (n * KNUTH_FACTOR) & _UINT64_MASK < threshold
    return True


class RateSampler:
    """Keeps spans whose trace ID falls within the given rate."""

    def __init__(self, rate: float) -> None:
        self._lock = threading.Lock()
        self._rate = rate

    def rate(self) -> float:
        """Return the current sample rate."""
        with self._lock:
            return self._rate

    def set_rate(self, rate: float) -> None:
        """Set a new sample rate."""
        with self._lock:
            self._rate = rate

    def sample(self, span: Any) -> bool:
        """Report whether ``span`` should be sampled."""
        if self._rate == 1:
            return True
        trace_id = getattr(span, "trace_id", None)
        if not isinstance(trace_id, int) or isinstance(trace_id, bool):
            return False
        with self._lock:
            return sampled_by_rate(trace_id, self._rate)


def new_rate_sampler(rate: float) -> RateSampler:
    """Return a sampler keeping the given fraction of spans."""
    return RateSampler(rate)


def new_all_sampler() -> RateSampler:
    """Return a sampler that keeps everything."""
    return RateSampler(1)


class PrioritySampler:
    """Applies per-service sampling rates received from the agent."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._rates: dict[str, float] = {}
        self._default_rate = 1.0

    def read_rates_json(self, stream: IO[str]) -> None:
        """Load rates from a JSON document holding a ``rate_by_service`` object."""
        payload = json.load(stream)
        stream.close()
        if not isinstance(payload, dict):
            raise ValueError("rates payload must be a JSON object")
        raw = payload.get("rate_by_service")
        if raw is None:
            raw = {}
        if not isinstance(raw, dict):
            raise ValueError("rate_by_service must be a JSON object")
        rates: dict[str, float] = {}
        for key, value in raw.items():
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValueError(f"rate for {key!r} is not a number")
            rates[key] = float(value)
        with self._lock:
            self._rates = rates
            if _DEFAULT_RATE_KEY in rates:
                self._default_rate = rates.pop(_DEFAULT_RATE_KEY)

    def get_rate(self, span: _SampledSpan) -> float:
        """Return the rate applying to ``span``'s service and environment."""
        key = f"service:{span.service},env:{span.meta.get(ext.ENVIRONMENT, '')}"
        with self._lock:
            return self._rates.get(key, self._default_rate)

    def apply(self, span: _SampledSpan) -> None:
        """Set the sampling priority and the applied rate on ``span``."""
        rate = self.get_rate(span)
        if sampled_by_rate(span.trace_id, rate):
            span.set_tag(ext.SAMPLING_PRIORITY, ext.PRIORITY_AUTO_KEEP)
        else:
            span.set_tag(ext.SAMPLING_PRIORITY, ext.PRIORITY_AUTO_REJECT)
        span.set_tag(KEY_SAMPLING_PRIORITY_RATE, rate)


def _format_rate(rate: float) -> str:
    if math.isfinite(rate) and rate == int(rate) and abs(rate) < 1e21:
        return str(int(rate))
    return repr(rate)


@dataclass
class SamplingRule:
    """Applies ``rate`` to spans matching the service and/or operation name.

    ``service`` and ``name`` are regular expressions searched in the span's
    fields; the helper functions build rules matching exact strings instead.
    """

    service: Optional[re.Pattern] = None
    name: Optional[re.Pattern] = None
    rate: float = 0.0
    _exact_service: str = field(default="", repr=False)
    _exact_name: str = field(default="", repr=False)

    def match(self, span: _SampledSpan) -> bool:
        """Report whether ``span`` satisfies every criterion of the rule."""
        if self.service is not None and not self.service.search(span.service):
            return False
        if self._exact_service and self._exact_service != span.service:
            return False
        if self.name is not None and not self.name.search(span.name):
            return False
        if self._exact_name and self._exact_name != span.name:
            return False
        return True

    def to_json(self) -> str:
        """Return the rule as a JSON object with service, name and sample_rate."""
        service = self._exact_service or (self.service.pattern if self.service is not None else "")
        name = self._exact_name or (self.name.pattern if self.name is not None else "")
        return (
            f'{{"service":{json.dumps(service)},"name":{json.dumps(name)},'
            f'"sample_rate":{_format_rate(self.rate)}}}'
        )


def service_rule(service: str, rate: float) -> SamplingRule:
    """Return a rule applying ``rate`` to spans of the given service."""
    return SamplingRule(rate=rate, _exact_service=service)


def name_rule(name: str, rate: float) -> SamplingRule:
    """Return a rule applying ``rate`` to spans with the given operation name."""
    return SamplingRule(rate=rate, _exact_name=name)


def name_service_rule(name: str, service: str, rate: float) -> SamplingRule:
    """Return a rule applying ``rate`` to spans matching both name and service."""
    return SamplingRule(rate=rate, _exact_service=service, _exact_name=name)


def rate_rule(rate: float) -> SamplingRule:
    """Return a rule applying ``rate`` to every span."""
    return SamplingRule(rate=rate)


class SamplingRulesError(ValueError):
    """Raised when sampling rules could not be parsed; ``rules`` holds the valid ones."""

    def __init__(self, message: str, rules: Optional[list[SamplingRule]] = None) -> None:
        super().__init__(message)
        self.rules: list[SamplingRule] = rules or []


def _reject_constant(name: str) -> float:
    raise ValueError(f"invalid character {name[0]!r} looking for beginning of value")


def _rule_string(entry: dict, key: str) -> str:
    value = entry.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"cannot unmarshal {type(value).__name__} into field {key}")
    return value


def sampling_rules_from_env() -> list[SamplingRule]:
    """Parse the rules held in DD_TRACE_SAMPLING_RULES.

    Rules with out-of-range rates are skipped with a warning; other problems
    raise :class:`SamplingRulesError`, which carries the rules that parsed.
    """
    raw = os.environ.get("DD_TRACE_SAMPLING_RULES", "")
    if raw == "":
        return []
    try:
        entries = json.loads(raw, parse_constant=_reject_constant)
        if entries is None:
            entries = []
        if not isinstance(entries, list):
            raise ValueError("cannot unmarshal non-array value into rules")
        parsed = []
        for entry in entries:
            if entry is None:
                entry = {}
            if not isinstance(entry, dict):
                raise ValueError("cannot unmarshal non-object value into rule")
            rate = entry.get("sample_rate")
            if isinstance(rate, bool) or not (rate is None or isinstance(rate, (int, float, str))):
                raise ValueError("cannot unmarshal value into field sample_rate")
            parsed.append((_rule_string(entry, "service"), _rule_string(entry, "name"), rate))
    except ValueError as err:
        raise SamplingRulesError(f"error unmarshalling JSON: {err}") from err

    rules: list[SamplingRule] = []
    errors: list[str] = []
    for index, (service, name, raw_rate) in enumerate(parsed):
        if raw_rate is None or raw_rate == "":
            errors.append(f"at index {index}: rate not provided")
            continue
        try:
            rate = _parse_float(raw_rate) if isinstance(raw_rate, str) else float(raw_rate)
        except ValueError as err:
            errors.append(f"at index {index}: {err}")
            continue
        if not 0.0 <= rate <= 1.0:
            _log.warning(
                "at index %d: ignoring rule {Service:%s Name:%s Rate:%s}: "
                "rate is out of [0.0, 1.0] range",
                index, service, name, raw_rate,
            )
            continue
        if service and name:
            rules.append(name_service_rule(name, service, rate))
        elif service:
            rules.append(service_rule(service, rate))
        elif name:
            rules.append(name_rule(name, rate))
    if errors:
        raise SamplingRulesError("found errors:\n\t" + "\n\t".join(errors), rules)
    return rules


def global_sample_rate() -> float:
    """Return DD_TRACE_SAMPLE_RATE, or NaN when unset, invalid or outside [0, 1]."""
    value = os.environ.get("DD_TRACE_SAMPLE_RATE", "")
    if value == "":
        return math.nan
    try:
        rate = _parse_float(value)
    except ValueError as err:
        _log.warning("ignoring DD_TRACE_SAMPLE_RATE: error: %s", err)
        return math.nan
    if 0.0 <= rate <= 1.0:
        return rate
    _log.warning("ignoring DD_TRACE_SAMPLE_RATE: out of range %f", rate)
    return math.nan


class _TokenBucket:
    """Token bucket refilled at ``limit`` tokens per second, holding up to ``burst``."""

    def __init__(self, limit: float, burst: int) -> None:
        self.limit = limit
        self.burst = burst
        self._tokens = 0.0
        self._last: Optional[float] = None

    def allow(self, now: float) -> bool:
        if math.isinf(self.limit) and self.limit > 0:
            return True
        last = self._last
        if last is not None and now < last:
            last = now
        elapsed = math.inf if last is None else now - last
        if self.limit <= 0:
            delta = 0.0
        else:
            max_elapsed = (self.burst - self._tokens) / self.limit
            delta = min(elapsed, max_elapsed) * self.limit
        tokens = min(self._tokens + delta, float(self.burst)) - 1
        allowed = self.burst >= 1 and tokens >= 0
        if allowed:
            self._last = now
            self._tokens = tokens
        else:
            self._last = last
        return allowed


def _burst_for(limit: float) -> int:
    if math.isinf(limit):
        return sys.maxsize
    return int(math.ceil(limit))


class RateLimiter:
    """Limits kept spans per second and reports the effective rate of allowance.

    Times are seconds since the epoch.
    """

    def __init__(self, limit: float = DEFAULT_RATE_LIMIT, now: Optional[float] = None) -> None:
        self._lock = threading.Lock()
        self._bucket = _TokenBucket(limit, _burst_for(limit))
        self.prev_time = time.time() if now is None else now
        self.allowed = 0.0
        self.seen = 0.0
        self.prev_allowed = 0.0
        self.prev_seen = 0.0

    @property
    def limit(self) -> float:
        """Spans allowed per second."""
        return self._bucket.limit

    @property
    def burst(self) -> int:
        """Maximum spans allowed at once."""
        return self._bucket.burst

    def allow_one(self, now: float) -> tuple[bool, float]:
        """Decide on one span at ``now``; return the decision and the effective rate.

        The effective rate averages the previous second's rate with the current one.
        """
        with self._lock:
            elapsed = now - self.prev_time
            if elapsed >= 1.0:
                if elapsed < 2.0 and self.seen > 0:
                    self.prev_allowed = self.allowed
                    self.prev_seen = self.seen
                else:
                    self.prev_allowed = 0.0
                    self.prev_seen = 0.0
                self.prev_time = now
                self.allowed = 0.0
                self.seen = 0.0
            self.seen += 1
            sampled = self._bucket.allow(now)
            if sampled:
                self.allowed += 1
            effective = (self.prev_allowed + self.allowed) / (self.prev_seen + self.seen)
            return sampled, effective


def new_rate_limiter() -> RateLimiter:
    """Return a limiter using DD_TRACE_RATE_LIMIT spans per second (default 100)."""
    limit = DEFAULT_RATE_LIMIT
    value = os.environ.get("DD_TRACE_RATE_LIMIT", "")
    if value != "":
        try:
            parsed = _parse_float(value)
        except ValueError as err:
            _log.warning("using default rate limit because DD_TRACE_RATE_LIMIT is invalid: %s", err)
        else:
            if math.isnan(parsed):
                _log.warning("using default rate limit because DD_TRACE_RATE_LIMIT is invalid: NaN")
            elif parsed < 0.0:
                _log.warning(
                    "using default rate limit because DD_TRACE_RATE_LIMIT is negative: %f", parsed
                )
            else:
                limit = parsed
    return RateLimiter(limit)


class RulesSampler:
    """Samples spans by the first matching rule, or by DD_TRACE_SAMPLE_RATE.

    When neither applies, the decision is left to the priority sampler.
    Spans kept by rate are further subject to the rate limiter.
    """

    def __init__(
        self,
        rules: Optional[list[SamplingRule]] = None,
        global_rate: Optional[float] = None,
        limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.rules: list[SamplingRule] = list(rules or [])
        self.global_rate = global_sample_rate() if global_rate is None else global_rate
        self.limiter = new_rate_limiter() if limiter is None else limiter

    def apply(self, span: _SampledSpan) -> bool:
        """Sample ``span`` by the rules; return False when they do not apply."""
        if not self.rules and math.isnan(self.global_rate):
            return False
        rate = self.global_rate
        matched = False
        for rule in self.rules:
            if rule.match(span):
                matched = True
                rate = rule.rate
                break
        if not matched and math.isnan(rate):
            return False
        self.apply_rate(span, rate, time.time())
        return True

    def apply_rate(self, span: _SampledSpan, rate: float, now: float) -> None:
        """Sample ``span`` at ``rate`` and pass kept spans through the limiter."""
        span.set_tag(KEY_RULES_SAMPLER_APPLIED_RATE, rate)
        if not sampled_by_rate(span.trace_id, rate):
            span.set_tag(ext.SAMPLING_PRIORITY, ext.PRIORITY_AUTO_REJECT)
            return
        sampled, effective = self.limiter.allow_one(now)
        if sampled:
            span.set_tag(ext.SAMPLING_PRIORITY, ext.PRIORITY_AUTO_KEEP)
        else:
            span.set_tag(ext.SAMPLING_PRIORITY, ext.PRIORITY_AUTO_REJECT)
        span.set_tag(KEY_RULES_SAMPLER_LIMITER_RATE, effective)