# promclient

A small, dependency-free instrumentation library. It registers collectors,
gathers their metrics into consistent metric families, renders them in the
Prometheus text exposition format, keeps summaries with streaming quantile
estimates, and pushes metrics to a Pushgateway.

## Modules

- `promclient.model`: the data model. `Desc` describes a metric (fully
  qualified name, help, variable labels, const labels) and records in `err` why
  it is invalid, if it is. `MetricFamily`, `MetricPoint`, `LabelPair`,
  `SummaryValue`, `Quantile`, `HistogramValue`, `Bucket` and the `MetricType`
  enum hold collected data. Helpers: `build_fq_name`, `check_metric_name`,
  `check_label_name`, `make_label_pairs`, `validate_label_values` (raises
  `InconsistentCardinalityError` on a wrong number of values) and
  `normalize_metric_families`.
- `promclient.registry`: `Registry` with `register`, `must_register`,
  `unregister` and `gather`; `new_pedantic_registry()` returns a registry that
  also checks each collected metric against its registered descriptor.
  `Gatherers` merges several gatherers in order, `GathererFunc` turns a
  function returning metric families into a gatherer. `write_to_textfile`
  writes gathered metrics to a file. Module-level `register`, `must_register`
  and `unregister` act on a default registry.
- `promclient.summary`: `SummaryOpts`, `new_summary`, `Summary`,
  `NoObjectivesSummary`, `SummaryVec`, `ConstSummary` and `new_const_summary`.
- `promclient.quantile`: `TargetedStream`, a streaming estimator for a fixed
  set of target quantiles, each with its own allowed error.
- `promclient.exposition`: `format_float`, `metric_family_to_text` and
  `families_to_text`.
- `promclient.push`: `Pusher`, `encode_component`, `JobEmptyError` and
  `PushError`.

## Installation

```
pip install promclient
```

## Collectors

The registry works with any object that has:

- `describe()`, which yields `Desc` objects;
- `collect()`, which yields metrics.

A metric is any object with a `desc` attribute and a `write()` method that
returns a `MetricPoint`.

A collector whose `describe()` yields nothing is registered unchecked. It is
always accepted, but it cannot be unregistered.

## Recording a summary

```python
from promclient.registry import Registry
from promclient.summary import SummaryOpts, new_summary

registry = Registry()
latency = new_summary(SummaryOpts(
    name="request_duration_seconds",
    help="Request latency.",
    objectives={0.5: 0.05, 0.9: 0.01, 0.99: 0.001},
))
registry.register(latency)

latency.observe(0.42)
families = registry.gather()
```

The `objectives` option decides which kind of summary you get:

- Without objectives, `new_summary` returns a `NoObjectivesSummary`, which
  tracks only count and sum.
- With objectives, it returns a `Summary`. Its quantiles are computed over a
  sliding window of `max_age` seconds (default 600), divided into
  `age_buckets` streams (default 5).

A quantile is reported as NaN when no observation is in the window. The label
name `quantile` is rejected with a `ValueError`.

`SummaryVec(opts, label_names)` partitions summaries by label values. Its
methods are:

- `with_label_values(...)` and `with_labels({...})` return the summary for a
  set of label values, creating it if needed.
- `curry_with({...})` returns a vector that shares the same summaries but
  fixes some of the labels.
- `delete_label_values(...)` and `delete({...})` remove one summary.
- `reset()` removes all summaries.

`new_const_summary(desc, count, sum, quantiles, *label_values)` builds a fixed
summary. Use it inside a custom collector.

## Registration and gathering errors

`Registry.register` raises:

- `AlreadyRegisteredError` when an equal collector is already registered. The
  error carries `existing_collector` and `new_collector`.
- `ValueError` when a descriptor is invalid or conflicts with earlier ones.

Names keep their help string and label names for the whole lifetime of a
registry, even after `unregister`.

When a collected metric is inconsistent, `Registry.gather` and
`Gatherers.gather` raise a `GatherError`. It has two attributes:

- `error` is the single problem, or a `MultiError` listing all of them.
- `families` holds the metric families that could still be gathered.

Problems that cause this include:

- duplicate label sets;
- a mismatch in help or type;
- an invalid label name;
- a name that collides with the `_sum`, `_count` or `_bucket` series of a
  summary or histogram.

## Writing a textfile

```python
from promclient.registry import write_to_textfile

write_to_textfile("metrics.prom", registry)
```

The text goes to a temporary file in the same directory. That file is made
mode 0644 and then renamed over `metrics.prom`.

## Pushing to a Pushgateway

```python
from promclient.push import Pusher

Pusher("pushgateway:9091", "db_backup").gatherer(registry).grouping("db", "customers").push()
```

The pusher has three ways to send:

- `push()` sends a PUT, which replaces every metric under the grouping key.
- `add()` sends a POST, which replaces only metrics with the same names.
- `delete()` sends a DELETE.

Metrics are sent in the text exposition format. A push or add succeeds on
status 200 or 202. A delete succeeds only on 202. Any other status raises
`PushError`, which carries `status` and `body`.

Configuration errors are kept and raised on the next push, add or delete.
They include:

- an empty job name (`JobEmptyError`);
- an invalid grouping label name;
- a failed collector registration.

Gathered metrics must not carry a `job` label or a grouping label of their
own. If they do, a `ValueError` is raised.

URL path components are encoded by `encode_component`:

- A value containing `/` is encoded as unpadded URL-safe base64, and its label
  name gets the suffix `@base64`.
- An empty value becomes `=`, also with the `@base64` suffix.
- Any other value is query-escaped.

Other options:

- `basic_auth(username, password)` adds HTTP basic authentication.
- `client(obj)` replaces the request sender with any object that has an
  `open(request)` method.

## What the package does not do

- It has no counter, gauge or histogram metric classes. Only summaries are
  provided as ready-made metrics. The data model and the text encoder do
  handle counter, gauge, untyped and histogram values that custom metrics
  produce.
- It has no HTTP handler or server that serves metrics for scraping. Render
  them yourself with `families_to_text` if you need to.
- It encodes only the text exposition format. There is no protobuf encoding,
  and no content negotiation.
- The default registry starts empty: there are no process or runtime
  collectors.

## Running the tests

```
pip install -e ".[test]"
pytest
```