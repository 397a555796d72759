"""Summary metrics: sum, count and streaming quantile estimates of observations."""

from __future__ import annotations

import copy
import math
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterator, Mapping, Sequence

from promclient.model import (
    Desc,
    InconsistentCardinalityError,
    MetricPoint,
    Quantile,
    SummaryValue,
    build_fq_name,
    make_label_pairs,
    quote,
    validate_label_values,
)
from promclient.quantile import TargetedStream

QUANTILE_LABEL = "quantile"

DEF_MAX_AGE = 600.0
"""Default number of seconds for which observations stay relevant."""
DEF_AGE_BUCKETS = 5
DEF_BUF_CAP = 500

_QUANTILE_NOT_ALLOWED = f"{quote(QUANTILE_LABEL)} is not allowed as label name in summaries"


@dataclass
class SummaryOpts:
    """Options for creating a summary; ``name`` is mandatory.

    ``max_age`` is in seconds. Zero values of ``max_age``, ``age_buckets`` and
    ``buf_cap`` select the defaults.
    """

    name: str = ""
    help: str = ""
    namespace: str = ""
    subsystem: str = ""
    const_labels: Mapping[str, str] | None = None
    objectives: Mapping[float, float] | None = field(default=None)
    max_age: float = DEF_MAX_AGE
    age_buckets: int = DEF_AGE_BUCKETS
    buf_cap: int = DEF_BUF_CAP


def _validate(desc: Desc, opts: SummaryOpts, label_values: Sequence[str]) -> None:
    if len(desc.variable_labels) != len(label_values):
        raise InconsistentCardinalityError(len(desc.variable_labels), list(label_values))
    if QUANTILE_LABEL in desc.variable_labels:
        raise ValueError(_QUANTILE_NOT_ALLOWED)
    if any(pair.name == QUANTILE_LABEL for pair in desc.const_label_pairs):
        raise ValueError(_QUANTILE_NOT_ALLOWED)
    if opts.max_age < 0:
        raise ValueError(f"illegal max age MaxAge={opts.max_age}")


class Summary:
    """A summary with quantile objectives computed over a sliding time window."""

    def __init__(
        self,
        desc: Desc,
        opts: SummaryOpts,
        label_values: Sequence[str] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        label_values = list(label_values)
        _validate(desc, opts, label_values)
        max_age = opts.max_age or DEF_MAX_AGE
        age_buckets = opts.age_buckets or DEF_AGE_BUCKETS
        self._buf_cap = opts.buf_cap or DEF_BUF_CAP

        self.desc = desc
        self._objectives = dict(opts.objectives or {})
        self._sorted_objectives = sorted(self._objectives)
        self._label_pairs = make_label_pairs(desc, label_values)
        self._lock = threading.Lock()
        self._clock = clock
        self._count = 0
        self._sum = 0.0
        self._hot: list[float] = []
        self._stream_duration = max_age / age_buckets
        self._head_stream_exp_time = clock() + self._stream_duration
        self._hot_buf_exp_time = self._head_stream_exp_time
        self._streams = [TargetedStream(self._objectives) for _ in range(age_buckets)]
        self._head_index = 0

    def observe(self, value: float) -> None:
        """Add a single observation."""
        with self._lock:
            now = self._clock()
            if now > self._hot_buf_exp_time:
                self._flush(now)
            self._hot.append(value)
            if len(self._hot) >= self._buf_cap:
                self._flush(now)

    def write(self) -> MetricPoint:
        """Return the current state as a metric point."""
        with self._lock:
            self._flush(self._clock())
            head = self._streams[self._head_index]
            quantiles = [
                Quantile(rank, math.nan if head.count() == 0 else head.query(rank))
                for rank in self._sorted_objectives
            ]
            value = SummaryValue(self._count, self._sum, quantiles)
        return MetricPoint(labels=list(self._label_pairs), summary=value)

    def describe(self) -> Iterator[Desc]:
        yield self.desc

    def collect(self) -> Iterator[Summary]:
        yield self

    def _flush(self, now: float) -> None:
        cold, self._hot = self._hot, []
        while now > self._hot_buf_exp_time:
            self._hot_buf_exp_time += self._stream_duration
        for value in cold:
            for stream in self._streams:
                stream.insert(value)
            self._count += 1
            self._sum += value
        self._rotate_streams()

    def _rotate_streams(self) -> None:
        while self._head_stream_exp_time < self._hot_buf_exp_time:
            self._streams[self._head_index].reset()
            self._head_index = (self._head_index + 1) % len(self._streams)
            self._head_stream_exp_time += self._stream_duration


class NoObjectivesSummary:
    """A summary that only tracks count and sum of observations."""

    def __init__(
        self, desc: Desc, opts: SummaryOpts, label_values: Sequence[str] = ()
    ) -> None:
        label_values = list(label_values)
        _validate(desc, opts, label_values)
        self.desc = desc
        self._label_pairs = make_label_pairs(desc, label_values)
        self._lock = threading.Lock()
        self._count = 0
        self._sum = 0.0

    def observe(self, value: float) -> None:
        """Add a single observation."""
        with self._lock:
            self._sum += value
            self._count += 1

    def write(self) -> MetricPoint:
        """Return the current count and sum as a metric point."""
        with self._lock:
            value = SummaryValue(self._count, self._sum, [])
        return MetricPoint(labels=list(self._label_pairs), summary=value)

    def describe(self) -> Iterator[Desc]:
        yield self.desc

    def collect(self) -> Iterator[NoObjectivesSummary]:
        yield self


def _make_summary(
    desc: Desc, opts: SummaryOpts, label_values: Sequence[str]
) -> Summary | NoObjectivesSummary:
    if not opts.objectives:
        return NoObjectivesSummary(desc, opts, label_values)
    return Summary(desc, opts, label_values)


def new_summary(opts: SummaryOpts) -> Summary | NoObjectivesSummary:
    """Create a summary from options; without objectives only count and sum are kept."""
    desc = Desc(
        build_fq_name(opts.namespace, opts.subsystem, opts.name),
        opts.help,
        None,
        opts.const_labels,
    )
    return _make_summary(desc, opts, ())


class ConstSummary:
    """A summary with fixed count, sum and quantiles."""

    def __init__(
        self,
        desc: Desc,
        count: int,
        sum: float,
        quantiles: Mapping[float, float],
        label_values: Sequence[str] = (),
    ) -> None:
        self.desc = desc
        self.count = count
        self.sum = sum
        self.quantiles = dict(quantiles)
        self._label_pairs = make_label_pairs(desc, list(label_values))

    def write(self) -> MetricPoint:
        quantiles = [Quantile(rank, value) for rank, value in sorted(self.quantiles.items())]
        return MetricPoint(
            labels=list(self._label_pairs),
            summary=SummaryValue(self.count, self.sum, quantiles),
        )


def new_const_summary(
    desc: Desc,
    count: int,
    sum: float,
    quantiles: Mapping[float, float],
    *args: str,
) -> ConstSummary:
    """Create a constant summary; raise if the descriptor or label values are invalid."""
    if desc.err is not None:
        raise desc.err
    validate_label_values(args, len(desc.variable_labels))
    return ConstSummary(desc, count, sum, quantiles, args)


class SummaryVec:
    """Summaries sharing one descriptor, partitioned by label values."""

    def __init__(self, opts: SummaryOpts, label_names: Sequence[str]) -> None:
        label_names = list(label_names)
        if QUANTILE_LABEL in label_names:
            raise ValueError(_QUANTILE_NOT_ALLOWED)
        self.desc = Desc(
            build_fq_name(opts.namespace, opts.subsystem, opts.name),
            opts.help,
            label_names,
            opts.const_labels,
        )
        self._opts = opts
        self._lock = threading.Lock()
        self._metrics: dict[tuple[str, ...], Summary | NoObjectivesSummary] = {}
        self._curry: dict[int, str] = {}

    def _values_from_args(self, args: Sequence[str]) -> tuple[str, ...]:
        expected = len(self.desc.variable_labels) - len(self._curry)
        validate_label_values(args, expected)
        remaining = iter(args)
        return tuple(
            self._curry[i] if i in self._curry else next(remaining)
            for i in range(len(self.desc.variable_labels))
        )

    def _values_from_labels(self, labels: Mapping[str, str]) -> tuple[str, ...]:
        expected = len(self.desc.variable_labels) - len(self._curry)
        validate_label_values(list(labels.values()), expected)
        values = []
        for i, name in enumerate(self.desc.variable_labels):
            if i in self._curry:
                if name in labels:
                    raise ValueError(f"label name {quote(name)} is already curried")
                values.append(self._curry[i])
            else:
                if name not in labels:
                    raise ValueError(f"label name {quote(name)} missing in label map")
                values.append(labels[name])
        return tuple(values)

    def _get_or_create(self, values: tuple[str, ...]) -> Summary | NoObjectivesSummary:
        with self._lock:
            metric = self._metrics.get(values)
            if metric is None:
                metric = _make_summary(self.desc, self._opts, values)
                self._metrics[values] = metric
            return metric

    def with_label_values(self, *args: str) -> Summary | NoObjectivesSummary:
        """Return the summary for these label values, creating it if needed."""
        return self._get_or_create(self._values_from_args(args))

    def with_labels(self, labels: Mapping[str, str]) -> Summary | NoObjectivesSummary:
        """Return the summary for this label map, creating it if needed."""
        return self._get_or_create(self._values_from_labels(labels))

    def curry_with(self, labels: Mapping[str, str]) -> SummaryVec:
        """Return a vector sharing this one's summaries with some labels preset."""
        new_curry: dict[int, str] = {}
        for i, name in enumerate(self.desc.variable_labels):
            if i in self._curry:
                if name in labels:
                    raise ValueError(f"label name {quote(name)} is already curried")
                new_curry[i] = self._curry[i]
            elif name in labels:
                new_curry[i] = labels[name]
        unknown = len(self._curry) + len(labels) - len(new_curry)
        if unknown > 0:
            raise ValueError(f"{unknown} unknown label(s) found during currying")
        curried = copy.copy(self)
        curried._curry = new_curry
        return curried

    def delete_label_values(self, *args: str) -> bool:
        """Remove the summary for these label values; return whether it existed."""
        try:
            values = self._values_from_args(args)
        except ValueError:
            return False
        with self._lock:
            return self._metrics.pop(values, None) is not None

    def delete(self, labels: Mapping[str, str]) -> bool:
        """Remove the summary for this label map; return whether it existed."""
        try:
            values = self._values_from_labels(labels)
        except ValueError:
            return False
        with self._lock:
            return self._metrics.pop(values, None) is not None

    def reset(self) -> None:
        """Remove every summary, including those of curried vectors."""
        with self._lock:
            self._metrics.clear()

    def describe(self) -> Iterator[Desc]:
        yield self.desc

    def collect(self) -> Iterator[Summary | NoObjectivesSummary]:
        with self._lock:
            metrics = list(self._metrics.values())
        yield from metrics