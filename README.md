# tracekit

`tracekit` provides the building blocks of an APM-style tracing client:

- **`tracekit.api`** defines the abstract interfaces `Tracer`, `Span`, `SpanContext`
  and `Logger`. It also defines the `StartSpanConfig` and `FinishConfig` records that
  options act on.
- **`tracekit.ext`** holds the standard tag names, span types and sampling
  priorities, such as `SERVICE_NAME`, `RESOURCE_NAME`, `SPAN_TYPE_WEB` and
  `PRIORITY_AUTO_KEEP`.
- **`tracekit.spanoptions`** has the options for starting and finishing spans:
  - start options: `tag`, `service_name`, `resource_name`, `span_type`,
    `with_span_id`, `child_of`, `start_time`, `analytics_rate`;
  - finish options: `finish_time`, `with_error`, `no_debug_stack`, `stack_frames`.
- **`tracekit.context`** is an immutable `Context` that carries the active span
  within a process. Its helpers are `background()`, `context_with_span`,
  `span_from_context` and `start_span_from_context`.
- **`tracekit.globaltracer`** stores the process-wide tracer:
  - `set_global_tracer` and `get_global_tracer` set and read it;
  - it defaults to `NoopTracer`, which returns `NoopSpan` and `NoopSpanContext`;
  - `set_testing` and `is_testing` control whether the previous tracer is stopped
    when it is replaced.
- **`tracekit.propagation`** has the carrier interfaces (`TextMapReader`,
  `TextMapWriter`, `Propagator`) and the propagation errors.
- **`tracekit.mocktracer`** is an in-memory tracer for tests. It records open spans
  and finished spans.
- **`tracekit.sampler`** has:
  - rate, priority and rule-based samplers;
  - sampling rules;
  - a per-second rate limiter.
- **`tracekit.osinfo`** reports the host operating system's name and version through
  `os_name()` and `os_version()`. On macOS it runs `sw_vers`, and on FreeBSD it runs
  `uname`.

The package has no runtime dependencies.

## Installation

```
pip install tracekit
```

## Testing instrumented code with the mock tracer

`mocktracer.start()` installs a `MockTracer` as the global tracer and turns testing
mode on. `MockTracer.stop()` puts a no-op tracer back.

```python
from tracekit import mocktracer, spanoptions

mt = mocktracer.start()
try:
    parent = mt.start_span("http.request", spanoptions.service_name("web"))
    child = mt.start_span("db.query", spanoptions.child_of(parent.context()))
    child.finish()
    parent.finish()

    spans = mt.finished_spans()
    assert [s.operation_name() for s in spans] == ["db.query", "http.request"]
    assert spans[0].parent_id() == parent.span_id()
    assert spans[0].tag("service.name") == "web"   # inherited from the local parent
finally:
    mt.stop()
```

A child span inherits the following from its parent:

- the trace ID;
- the baggage;
- the sampling priority;
- the service name, when the parent is a local span.

When a span is finished:

- `finish()` with `spanoptions.with_error(err)` stores the error under the `error` tag;
- a second `finish()` has no effect.

## Propagating a span context

A carrier is any object that has a `set(key, val)` method for injection and a
`foreach_key(handler)` method for extraction.

```python
from tracekit import mocktracer

class DictCarrier(dict):
    def set(self, key, val):
        self[key] = val

    def foreach_key(self, handler):
        for key, val in self.items():
            handler(key, val)

mt = mocktracer.MockTracer()
span = mt.start_span("web.request")
span.set_baggage_item("user", "42")

carrier = DictCarrier()
mt.inject(span.context(), carrier)
ctx = mt.extract(carrier)
assert ctx.trace_id() == span.trace_id()
assert ctx.baggage_item("user") == "42"
```

`MockTracer.inject` writes the following keys:

- `x-datadog-trace-id`;
- `x-datadog-parent-id`;
- `x-datadog-sampling-priority`, when a priority is set;
- `ot-baggage-<key>`, one for each baggage item.

`MockTracer.extract` reads keys without regard to case, and baggage keys come back
lower-cased. Failures raise subclasses of `tracekit.propagation.PropagationError`:

- `InvalidCarrierError`;
- `InvalidSpanContextError`;
- `SpanContextCorruptedError`;
- `SpanContextNotFoundError`.

## Carrying spans in a context

```python
from tracekit import context, mocktracer

mt = mocktracer.start()
span, ctx = context.start_span_from_context(context.background(), "http.request")
found, ok = context.span_from_context(ctx)
assert ok and found is span
mt.stop()
```

`start_span_from_context` starts the span with the global tracer. When the context
already holds a span, that span becomes the parent, even if a `child_of` option was
also given.

## Sampling

```python
from tracekit import sampler

rules = [
    sampler.name_rule("web.request", 0.1),
    sampler.service_rule("test-service", 0.2),
    sampler.name_service_rule("db.query", "postgres.db", 0.3),
]
rules_sampler = sampler.RulesSampler(rules)
```

The samplers act on span objects that have the following members:

- `name`;
- `service`;
- `trace_id`;
- a `meta` dictionary;
- a `set_tag(key, value)` method.

What each sampler does:

- `RateSampler`, built with `new_rate_sampler` or `new_all_sampler`, keeps spans by
  hashing their trace ID.
- `PrioritySampler.read_rates_json` loads per-service rates from a
  `rate_by_service` JSON object.
- `RulesSampler.apply` uses the first rule that matches the span. Spans kept by rate
  are then passed through a `RateLimiter`.

The following environment variables configure sampling:

- `DD_TRACE_SAMPLING_RULES` takes rules as a JSON array, read by
  `sampling_rules_from_env()`. Parse problems raise `SamplingRulesError`, whose
  `rules` attribute holds the rules that did parse.
- `DD_TRACE_SAMPLE_RATE` sets a global rate, read by `global_sample_rate()`.
- `DD_TRACE_RATE_LIMIT` sets the spans kept per second, read by `new_rate_limiter()`.
  The default is 100.

## What the package does not do

The package has no tracer that sends spans to an agent. The only concrete tracers
are `NoopTracer` and `MockTracer`. It also does not include any of the following:

- a configuration builder that reads `DD_SERVICE`, `DD_ENV`, `DD_TAGS` and similar
  settings;
- an encoder for trace payloads;
- a random span-ID generator;
- runtime or health metrics reporting.