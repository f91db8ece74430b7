import io
import math
import re
import threading
import time
from dataclasses import dataclass, field

import pytest

from tracekit import ext
from tracekit.globaltracer import NoopSpan
from tracekit.sampler import (
    KEY_SAMPLING_PRIORITY_RATE,
    PrioritySampler,
    RateLimiter,
    RulesSampler,
    SamplingRule,
    SamplingRulesError,
    global_sample_rate,
    name_rule,
    name_service_rule,
    new_all_sampler,
    new_rate_limiter,
    new_rate_sampler,
    rate_rule,
    sampled_by_rate,
    sampling_rules_from_env,
    service_rule,
)

MAX_UINT64 = 2**64 - 1


@dataclass
class FakeSpan:
    name: str = ""
    service: str = ""
    trace_id: int = 0
    meta: dict = field(default_factory=dict)
    metrics: dict = field(default_factory=dict)

    def set_tag(self, key, value):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            self.metrics[key] = float(value)
        else:
            self.meta[key] = str(value)


def mk_span(svc, env):
    span = FakeSpan(service=svc)
    if env:
        span.meta["env"] = env
    return span


def make_span(op, svc):
    return FakeSpan(name=op, service=svc)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ("DD_TRACE_SAMPLE_RATE", "DD_TRACE_RATE_LIMIT", "DD_TRACE_SAMPLING_RULES"):
        monkeypatch.delenv(name, raising=False)


def test_mkspan_keys_rates_by_service_and_env():
    ps = PrioritySampler()
    ps.read_rates_json(
        io.StringIO(
            '{"rate_by_service":{"service:my-service,env:my-env":0.3,'
            '"service:my-service2,env:":0.6}}'
        )
    )
    s = mk_span("my-service", "my-env")
    assert s.meta[ext.ENVIRONMENT] == "my-env"
    assert ps.get_rate(s) == 0.3
    s = mk_span("my-service2", "")
    assert ext.ENVIRONMENT not in s.meta
    assert ps.get_rate(s) == 0.6


def test_priority_sampler_ops():
    ps = PrioritySampler()
    cases = [
        ("{}", {("some-service", ""): 1, ("obfuscate.http", "none"): 1}),
        (
            """{"rate_by_service":{
                "service:,env:":0.8,
                "service:obfuscate.http,env:":0.9,
                "service:obfuscate.http,env:none":0.9}}""",
            {
                ("obfuscate.http", ""): 0.9,
                ("obfuscate.http", "none"): 0.9,
                ("obfuscate.http", "other"): 0.8,
                ("some-service", ""): 0.8,
            },
        ),
        (
            """{"rate_by_service":{
                "service:my-service,env:":0.2,
                "service:my-service,env:none":0.2}}""",
            {
                ("my-service", ""): 0.2,
                ("my-service", "none"): 0.2,
                ("obfuscate.http", ""): 0.8,
                ("obfuscate.http", "none"): 0.8,
                ("obfuscate.http", "other"): 0.8,
                ("some-service", ""): 0.8,
            },
        ),
    ]
    for doc, expected in cases:
        ps.read_rates_json(io.StringIO(doc))
        for (svc, env), rate in expected.items():
            assert ps.get_rate(mk_span(svc, env)) == rate, (svc, env)


def test_priority_sampler_invalid_json():
    ps = PrioritySampler()
    with pytest.raises(ValueError):
        ps.read_rates_json(io.StringIO("not json"))


def test_priority_sampler_race():
    ps = PrioritySampler()
    doc = '{"rate_by_service":{"service:,env:":0.8,"service:obfuscate.http,env:none":0.9}}'
    errors = []

    def writer():
        try:
            for _ in range(500):
                ps.read_rates_json(io.StringIO(doc))
        except Exception as err:  # noqa: BLE001
            errors.append(err)

    def reader():
        for _ in range(500):
            ps.get_rate(mk_span("obfuscate.http", "none"))
            ps.get_rate(mk_span("other.service", "none"))

    threads = [threading.Thread(target=writer), threading.Thread(target=reader)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert errors == []
    assert ps.get_rate(mk_span("obfuscate.http", "none")) == 0.9
    assert ps.get_rate(mk_span("other.service", "none")) == 0.8


def test_priority_sampler_apply():
    ps = PrioritySampler()
    ps.read_rates_json(
        io.StringIO(
            '{"rate_by_service":{"service:obfuscate.http,env:":0.5,'
            '"service:obfuscate.http,env:none":0.5}}'
        )
    )
    span = FakeSpan(name="http.request", service="obfuscate.http")
    span.trace_id = MAX_UINT64 - (MAX_UINT64 // 4)
    ps.apply(span)
    assert span.metrics[ext.SAMPLING_PRIORITY] == ext.PRIORITY_AUTO_KEEP
    assert span.metrics[KEY_SAMPLING_PRIORITY_RATE] == 0.5

    span.trace_id = MAX_UINT64 - (MAX_UINT64 // 3)
    ps.apply(span)
    assert span.metrics[ext.SAMPLING_PRIORITY] == ext.PRIORITY_AUTO_REJECT
    assert span.metrics[KEY_SAMPLING_PRIORITY_RATE] == 0.5

    span.service = "other-service"
    span.trace_id = 1
    assert span.metrics[ext.SAMPLING_PRIORITY] == ext.PRIORITY_AUTO_REJECT
    assert span.metrics[KEY_SAMPLING_PRIORITY_RATE] == 0.5


def test_rate_sampler():
    assert new_rate_sampler(1).sample(FakeSpan(name="test")) is True
    assert new_rate_sampler(0).sample(FakeSpan(name="test")) is False
    assert new_rate_sampler(0).sample(FakeSpan(name="test")) is False
    assert new_rate_sampler(0.99).sample(NoopSpan()) is False


def test_rate_sampler_setting():
    rs = new_rate_sampler(1)
    assert rs.rate() == 1.0
    rs.set_rate(0.5)
    assert rs.rate() == 0.5


def test_all_sampler_keeps_everything():
    sampler = new_all_sampler()
    assert sampler.rate() == 1
    assert sampler.sample(NoopSpan()) is True


def test_sampled_by_rate_bounds():
    assert sampled_by_rate(12345, 1.0) is True
    assert sampled_by_rate(0, 0.0) is False
    kept = sum(sampled_by_rate(n, 0.5) for n in range(1, 2001))
    assert 800 < kept < 1200


@pytest.mark.parametrize(
    "value, expected",
    [
        ("", math.nan),
        ("0.0", 0.0),
        ("0.5", 0.5),
        ("1.0", 1.0),
        ("42.0", math.nan),
        ("1point0", math.nan),
    ],
)
def test_global_sample_rate(monkeypatch, value, expected):
    monkeypatch.setenv("DD_TRACE_SAMPLE_RATE", value)
    result = global_sample_rate()
    if math.isnan(expected):
        assert math.isnan(result)
    else:
        assert result == expected


@pytest.mark.parametrize(
    "value, limit, burst",
    [
        ("", 100.0, 100),
        ("0.0", 0.0, 0),
        ("0.5", 0.5, 1),
        ("1.0", 1.0, 1),
        ("42.0", 42.0, 42),
        ("-1.0", 100.0, 100),
        ("1point0", 100.0, 100),
    ],
)
def test_rate_limit_env(monkeypatch, value, limit, burst):
    monkeypatch.setenv("DD_TRACE_RATE_LIMIT", value)
    limiter = new_rate_limiter()
    assert (limiter.limit, limiter.burst) == (limit, burst)


@pytest.mark.parametrize(
    "value, count",
    [
        ("[]", 0),
        ('[{"service": "abcd", "sample_rate": 1.0}]', 1),
        (
            '[{"service": "abcd", "sample_rate": 1.0},{"name": "wxyz", "sample_rate": 0.9},'
            '{"service": "efgh", "name": "lmnop", "sample_rate": 0.42}]',
            3,
        ),
        ('[{"service": "abcd", "sample_rate": 42.0}, {"service": "abcd", "sample_rate": 0.2}]', 1),
    ],
)
def test_sampling_rules_from_env(monkeypatch, value, count):
    monkeypatch.setenv("DD_TRACE_SAMPLING_RULES", value)
    assert len(sampling_rules_from_env()) == count


def test_sampling_rules_from_env_not_json(monkeypatch):
    monkeypatch.setenv("DD_TRACE_SAMPLING_RULES", "not JSON at all")
    with pytest.raises(SamplingRulesError) as info:
        sampling_rules_from_env()
    assert str(info.value).startswith("error unmarshalling JSON: ")
    assert info.value.rules == []


def test_sampling_rules_from_env_missing_rate(monkeypatch):
    monkeypatch.setenv(
        "DD_TRACE_SAMPLING_RULES",
        '[{"service": "some.service", "sample_rate": 0.234}, {"service": "other.service"}]',
    )
    with pytest.raises(SamplingRulesError) as info:
        sampling_rules_from_env()
    assert str(info.value) == "found errors:\n\tat index 1: rate not provided"
    assert len(info.value.rules) == 1
    assert info.value.rules[0].to_json() == (
        '{"service":"some.service","name":"","sample_rate":0.234}'
    )


def test_sampling_rules_unset_env():
    assert sampling_rules_from_env() == []


def test_sampling_rule_json():
    assert service_rule("mysql", 0.75).to_json() == (
        '{"service":"mysql","name":"","sample_rate":0.75}'
    )
    regex_rule = SamplingRule(service=re.compile("^test-"), name=re.compile(r"http\..*"), rate=1.0)
    assert regex_rule.to_json() == r'{"service":"^test-","name":"http\\..*","sample_rate":1}'


def test_rate_rule_matches_everything():
    rule = rate_rule(0.3)
    assert rule.match(make_span("anything", "any-service"))
    assert rule.rate == 0.3


def test_rules_sampler_no_rules():
    rs = RulesSampler(None)
    assert rs.apply(make_span("http.request", "test-service")) is False


@pytest.mark.parametrize(
    "rules",
    [
        [service_rule("test-service", 1.0)],
        [name_rule("http.request", 1.0)],
        [name_service_rule("http.request", "test-service", 1.0)],
        [SamplingRule(service=re.compile("^test-"), name=re.compile(r"http\..*"), rate=1.0)],
        [
            service_rule("other-service-1", 0.0),
            service_rule("other-service-2", 0.0),
            service_rule("test-service", 1.0),
        ],
    ],
)
def test_rules_sampler_matching(rules):
    rs = RulesSampler(rules)
    span = make_span("http.request", "test-service")
    assert rs.apply(span) is True
    assert span.metrics["_dd.rule_psr"] == 1.0
    assert span.metrics["_dd.limit_psr"] == 1.0


@pytest.mark.parametrize(
    "rules",
    [
        [service_rule("toast-service", 1.0)],
        [name_rule("grpc.request", 1.0)],
        [name_service_rule("http.request", "toast-service", 1.0)],
        [SamplingRule(service=re.compile("^toast-"), name=re.compile(r"http\..*"), rate=1.0)],
        [SamplingRule(service=re.compile("^test-"), name=re.compile(r"grpc\..*"), rate=1.0)],
        [
            service_rule("other-service-1", 0.0),
            service_rule("other-service-2", 0.0),
            service_rule("toast-service", 1.0),
        ],
    ],
)
def test_rules_sampler_not_matching(rules):
    rs = RulesSampler(rules)
    assert rs.apply(make_span("http.request", "test-service")) is False


@pytest.mark.parametrize("rules", [[], [service_rule("other-service", 0.0)]])
@pytest.mark.parametrize("rate", [0.0, 0.8, 1.0])
def test_rules_sampler_default_rate(monkeypatch, rules, rate):
    monkeypatch.setenv("DD_TRACE_SAMPLE_RATE", str(rate))
    rs = RulesSampler(rules)
    span = make_span("http.request", "test-service")
    assert rs.apply(span) is True
    assert span.metrics["_dd.rule_psr"] == rate
    if rate > 0.0:
        assert span.metrics["_dd.limit_psr"] == 1.0


def test_rules_sampler_concurrency():
    rs = RulesSampler(
        [
            service_rule("test-service", 1.0),
            name_service_rule("db.query", "postgres.db", 1.0),
            name_rule("notweb.request", 1.0),
        ]
    )
    results = []
    lock = threading.Lock()

    def work():
        outcome = rs.apply(make_span("db.query", "postgres.db"))
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=work) for _ in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert results == [True] * 10
    assert rs.limiter.seen == 10.0


def test_rules_sampler_zero_rate():
    now = time.time()
    rs = RulesSampler([], global_rate=math.nan, limiter=RateLimiter())
    span = make_span("http.request", "test-service")
    rs.apply_rate(span, 0.0, now)
    assert span.metrics["_dd.rule_psr"] == 0.0
    assert "_dd.limit_psr" not in span.metrics
    assert span.metrics[ext.SAMPLING_PRIORITY] == ext.PRIORITY_AUTO_REJECT


def test_rules_sampler_full_rate():
    now = time.time()
    rs = RulesSampler(None)
    rs.limiter.prev_time = now - 1
    rs.limiter.allowed = 1
    rs.limiter.seen = 1
    span = make_span("http.request", "test-service")
    rs.apply_rate(span, 1.0, now)
    assert span.metrics["_dd.rule_psr"] == 1.0
    assert span.metrics["_dd.limit_psr"] == 1.0


def test_rules_sampler_limited_rate():
    now = time.time()
    rs = RulesSampler(None, limiter=RateLimiter(1.0))
    rs.limiter.prev_time = now - 1
    rs.limiter.allowed = 2
    rs.limiter.seen = 2

    span = make_span("http.request", "test-service")
    rs.apply_rate(span, 1.0, now)
    assert span.metrics[ext.SAMPLING_PRIORITY] == ext.PRIORITY_AUTO_KEEP
    assert span.metrics["_dd.rule_psr"] == 1.0
    assert span.metrics["_dd.limit_psr"] == 1.0

    span = make_span("http.request", "test-service")
    rs.apply_rate(span, 1.0, now)
    assert span.metrics[ext.SAMPLING_PRIORITY] == ext.PRIORITY_AUTO_REJECT
    assert span.metrics["_dd.rule_psr"] == 1.0
    assert span.metrics["_dd.limit_psr"] == 0.75


def test_limiter_resets_every_second():
    sl = new_rate_limiter()
    sl.prev_seen = 100
    sl.prev_allowed = 99
    sl.allowed = 42
    sl.seen = 100
    now = time.time() + 1
    sampled, _ = sl.allow_one(now)
    assert sampled is True
    assert sl.prev_allowed == 42.0
    assert sl.prev_seen == 100.0
    assert sl.prev_time == now
    assert sl.seen == 1.0
    assert sl.allowed == 1.0


def test_limiter_averages_rates():
    sl = new_rate_limiter()
    sl.prev_seen = 100
    sl.prev_allowed = 42
    sl.allowed = 41
    sl.seen = 99
    now = sl.prev_time
    sampled, rate = sl.allow_one(now)
    assert sampled is True
    assert rate == 0.42
    assert sl.prev_time == now
    assert sl.seen == 100.0
    assert sl.allowed == 42.0


def test_limiter_discards_rate():
    sl = new_rate_limiter()
    sl.prev_seen = 100
    sl.prev_allowed = 42
    sl.allowed = 42
    sl.seen = 100
    now = time.time() + 2
    sampled, _ = sl.allow_one(now)
    assert sampled is True
    assert sl.prev_seen == 0.0
    assert sl.prev_allowed == 0.0
    assert sl.prev_time == now
    assert sl.seen == 1.0
    assert sl.allowed == 1.0


def test_limiter_zero_limit_rejects():
    sl = RateLimiter(0.0)
    sampled, rate = sl.allow_one(sl.prev_time)
    assert sampled is False
    assert rate == 0.0
    assert sl.seen == 1.0