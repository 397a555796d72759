"""Data model for collected metrics, descriptors and label helpers."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Sequence

_METRIC_NAME_RE = re.compile(r"^[a-zA-Z_:][a-zA-Z0-9_:]*$")
_LABEL_NAME_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")
_SEPARATOR = "\xff"


class MetricType(Enum):
    """Kind of a metric family."""

    COUNTER = "counter"
    GAUGE = "gauge"
    SUMMARY = "summary"
    UNTYPED = "untyped"
    HISTOGRAM = "histogram"


@dataclass
class LabelPair:
    name: str
    value: str | None = None


@dataclass
class Quantile:
    quantile: float
    value: float


@dataclass
class SummaryValue:
    sample_count: int = 0
    sample_sum: float = 0.0
    quantiles: list[Quantile] = field(default_factory=list)


@dataclass
class Bucket:
    cumulative_count: int
    upper_bound: float


@dataclass
class HistogramValue:
    sample_count: int = 0
    sample_sum: float = 0.0
    buckets: list[Bucket] = field(default_factory=list)


@dataclass
class MetricPoint:
    """A single collected metric with its labels and one kind of value."""

    labels: list[LabelPair] = field(default_factory=list)
    counter: float | None = None
    gauge: float | None = None
    untyped: float | None = None
    summary: SummaryValue | None = None
    histogram: HistogramValue | None = None
    timestamp_ms: int | None = None

    def metric_type(self) -> MetricType | None:
        """Return the type given by the value that is set, or None if empty."""
        if self.gauge is not None:
            return MetricType.GAUGE
        if self.counter is not None:
            return MetricType.COUNTER
        if self.summary is not None:
            return MetricType.SUMMARY
        if self.untyped is not None:
            return MetricType.UNTYPED
        if self.histogram is not None:
            return MetricType.HISTOGRAM
        return None


@dataclass
class MetricFamily:
    name: str
    help: str
    type: MetricType
    metrics: list[MetricPoint] = field(default_factory=list)


def quote(value: str) -> str:
    """Quote a string with double quotes and escapes."""
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\t", "\\t")
    )
    return f'"{escaped}"'


def _hash64(parts: Iterable[str]) -> int:
    h = hashlib.blake2b(digest_size=8)
    for part in parts:
        h.update(part.encode("utf-8", "surrogatepass"))
        h.update(_SEPARATOR.encode("utf-8"))
    return int.from_bytes(h.digest(), "big")


class InconsistentCardinalityError(ValueError):
    """The number of label values does not match the number of labels."""

    def __init__(self, expected: int, values: Sequence[str]) -> None:
        rendered = ", ".join(quote(v) for v in values)
        super().__init__(
            f"inconsistent label cardinality: expected {expected} label values "
            f"but got {len(values)} in []string{{{rendered}}}"
        )


def build_fq_name(namespace: str, subsystem: str, name: str) -> str:
    """Join the non-empty components with '_'; empty if name is empty."""
    if not name:
        return ""
    return "_".join(part for part in (namespace, subsystem, name) if part)


def check_label_name(name: str) -> bool:
    return bool(_LABEL_NAME_RE.match(name)) and not name.startswith("__")


def check_metric_name(name: str) -> bool:
    return bool(_METRIC_NAME_RE.match(name))


def _is_utf8(value: str) -> bool:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


class Desc:
    """Descriptor of a metric: name, help, and label dimensions."""

    def __init__(
        self,
        fq_name: str,
        help: str,
        variable_labels: Sequence[str] | None,
        const_labels: Mapping[str, str] | None,
    ) -> None:
        self.fq_name = fq_name
        self.help = help
        self.variable_labels = list(variable_labels or [])
        const_labels = dict(const_labels or {})
        self.const_label_pairs = [
            LabelPair(name, const_labels[name]) for name in sorted(const_labels)
        ]
        self.err: Exception | None = None
        self.id = 0
        self.dim_hash = 0

        if not check_metric_name(fq_name):
            self.err = ValueError(f"{quote(fq_name)} is not a valid metric name")
            return

        label_names: set[str] = set()
        for pair in self.const_label_pairs:
            if not check_label_name(pair.name):
                self.err = ValueError(
                    f"{quote(pair.name)} is not a valid label name for metric {quote(fq_name)}"
                )
                return
            if not _is_utf8(pair.value or ""):
                self.err = ValueError(
                    f"label value {quote(pair.value or '')} is not valid UTF-8"
                )
                return
            label_names.add(pair.name)
        for name in self.variable_labels:
            if not check_label_name(name):
                self.err = ValueError(
                    f"{quote(name)} is not a valid label name for metric {quote(fq_name)}"
                )
                return
            label_names.add(name)
        if len(label_names) != len(self.const_label_pairs) + len(self.variable_labels):
            self.err = ValueError(
                "duplicate label names in constant and variable labels for metric "
                + quote(fq_name)
            )
            return

        self.id = _hash64([fq_name, *(p.value or "" for p in self.const_label_pairs)])
        self.dim_hash = _hash64([help, *sorted(label_names)])

    def __str__(self) -> str:
        const = ",".join(f"{p.name}={quote(p.value or '')}" for p in self.const_label_pairs)
        variable = " ".join(self.variable_labels)
        return (
            f"Desc{{fqName: {quote(self.fq_name)}, help: {quote(self.help)}, "
            f"constLabels: {{{const}}}, variableLabels: [{variable}]}}"
        )

    __repr__ = __str__


def validate_label_values(label_values: Sequence[str], expected_count: int) -> None:
    """Raise if the count is wrong or a value is not valid UTF-8."""
    if len(label_values) != expected_count:
        raise InconsistentCardinalityError(expected_count, list(label_values))
    for value in label_values:
        if not _is_utf8(value):
            raise ValueError(f"label value {quote(value)} is not valid UTF-8")


def make_label_pairs(desc: Desc, label_values: Sequence[str]) -> list[LabelPair]:
    """Combine const and variable labels into pairs sorted by name."""
    if not desc.variable_labels:
        return list(desc.const_label_pairs)
    pairs = [LabelPair(n, v) for n, v in zip(desc.variable_labels, label_values)]
    pairs.extend(desc.const_label_pairs)
    pairs.sort(key=lambda p: p.name)
    return pairs


def _metric_sort_key(metric: MetricPoint) -> tuple:
    return (
        len(metric.labels),
        tuple(p.value or "" for p in metric.labels),
        metric.timestamp_ms if metric.timestamp_ms is not None else 0,
    )


def normalize_metric_families(
    families_by_name: Mapping[str, MetricFamily],
) -> list[MetricFamily]:
    """Drop empty families, sort metrics within each and families by name."""
    result = []
    for name in sorted(families_by_name):
        family = families_by_name[name]
        if not family.metrics:
            continue
        family.metrics.sort(key=_metric_sort_key)
        result.append(family)
    return result