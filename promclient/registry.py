"""Registration of collectors and gathering of their metrics into families."""

from __future__ import annotations

import contextlib
import math
import os
import tempfile
import threading
from typing import Callable, Iterable, Iterator, Mapping, Protocol, Sequence

from promclient.exposition import format_float, metric_family_to_text
from promclient.model import (
    Desc,
    LabelPair,
    MetricFamily,
    MetricPoint,
    MetricType,
    check_label_name,
    normalize_metric_families,
    quote,
)

_QUANTILE_LABEL = "quantile"

_VALUE_ATTRS = {
    MetricType.COUNTER: "counter",
    MetricType.GAUGE: "gauge",
    MetricType.SUMMARY: "summary",
    MetricType.UNTYPED: "untyped",
    MetricType.HISTOGRAM: "histogram",
}

_TYPE_PHRASES = {
    MetricType.COUNTER: "a Counter",
    MetricType.GAUGE: "a Gauge",
    MetricType.SUMMARY: "a Summary",
    MetricType.UNTYPED: "Untyped",
    MetricType.HISTOGRAM: "a Histogram",
}


class _Metric(Protocol):
    desc: Desc

    def write(self) -> MetricPoint: ...


class _Collector(Protocol):
    def describe(self) -> Iterable[Desc]: ...

    def collect(self) -> Iterable[_Metric]: ...


class _Gatherer(Protocol):
    def gather(self) -> list[MetricFamily]: ...


class AlreadyRegisteredError(ValueError):
    """An equal collector has been registered before."""

    def __init__(self, existing_collector: object, new_collector: object) -> None:
        super().__init__("duplicate metrics collector registration attempted")
        self.existing_collector = existing_collector
        self.new_collector = new_collector


class MultiError(Exception):
    """Several errors reported together."""

    def __init__(self, errors: Iterable[BaseException] = ()) -> None:
        super().__init__()
        self.errors: list[BaseException] = list(errors)

    def __str__(self) -> str:
        if not self.errors:
            return ""
        lines = [f"{len(self.errors)} error(s) occurred:"]
        lines.extend(f"* {err}" for err in self.errors)
        return "\n".join(lines)

    def __len__(self) -> int:
        return len(self.errors)

    def __iter__(self) -> Iterator[BaseException]:
        return iter(self.errors)

    def append(self, error: BaseException | None) -> None:
        """Add the error unless it is None."""
        if error is not None:
            self.errors.append(error)

    def maybe_unwrap(self) -> BaseException | None:
        """Return None, the single error, or self, depending on the count."""
        if not self.errors:
            return None
        if len(self.errors) == 1:
            return self.errors[0]
        return self


class GatherError(Exception):
    """Gathering failed in part; ``families`` holds what could be gathered."""

    def __init__(self, error: BaseException, families: list[MetricFamily]) -> None:
        super().__init__(str(error))
        self.error = error
        self.families = families


def _proto_float(value: float) -> str:
    if math.isnan(value):
        return "nan"
    if math.isinf(value):
        return "inf" if value > 0 else "-inf"
    return format_float(value)


def _compact_text(point: MetricPoint) -> str:
    parts = []
    for pair in point.labels:
        inner = f"name:{quote(pair.name)} "
        if pair.value is not None:
            inner += f"value:{quote(pair.value)} "
        parts.append(f"label:<{inner}> ")
    if point.gauge is not None:
        parts.append(f"gauge:<value:{_proto_float(point.gauge)} > ")
    if point.counter is not None:
        parts.append(f"counter:<value:{_proto_float(point.counter)} > ")
    if point.summary is not None:
        s = point.summary
        inner = f"sample_count:{s.sample_count} sample_sum:{_proto_float(s.sample_sum)} "
        inner += "".join(
            f"quantile:<quantile:{_proto_float(q.quantile)} value:{_proto_float(q.value)} > "
            for q in s.quantiles
        )
        parts.append(f"summary:<{inner}> ")
    if point.untyped is not None:
        parts.append(f"untyped:<value:{_proto_float(point.untyped)} > ")
    if point.histogram is not None:
        h = point.histogram
        inner = f"sample_count:{h.sample_count} sample_sum:{_proto_float(h.sample_sum)} "
        inner += "".join(
            f"bucket:<cumulative_count:{b.cumulative_count} "
            f"upper_bound:{_proto_float(b.upper_bound)} > "
            for b in h.buckets
        )
        parts.append(f"histogram:<{inner}> ")
    if point.timestamp_ms is not None:
        parts.append(f"timestamp_ms:{point.timestamp_ms} ")
    return "".join(parts)


def _is_utf8(value: str) -> bool:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


def _check_suffix_collisions(
    family: MetricFamily, families: Mapping[str, MetricFamily]
) -> None:
    name = family.name
    kind = family.type
    base = ""
    for suffix in ("_count", "_sum", "_bucket"):
        if name.endswith(suffix):
            base = name[: -len(suffix)]
            break
    if base and base in families:
        existing_type = families[base].type
        if existing_type is MetricType.SUMMARY and not name.endswith("_bucket"):
            raise ValueError(
                f"collected metric named {quote(name)} collides with previously "
                f"collected summary named {quote(base)}"
            )
        if existing_type is MetricType.HISTOGRAM:
            raise ValueError(
                f"collected metric named {quote(name)} collides with previously "
                f"collected histogram named {quote(base)}"
            )
    if kind in (MetricType.SUMMARY, MetricType.HISTOGRAM):
        for suffix in ("_count", "_sum"):
            if name + suffix in families:
                raise ValueError(
                    f"collected histogram or summary named {quote(name)} collides with "
                    f"previously collected metric named {quote(name + suffix)}"
                )
    if kind is MetricType.HISTOGRAM and name + "_bucket" in families:
        raise ValueError(
            f"collected histogram named {quote(name)} collides with previously "
            f"collected metric named {quote(name + '_bucket')}"
        )


def _check_metric_consistency(
    family: MetricFamily, point: MetricPoint, seen: set[tuple]
) -> None:
    name = family.name
    if getattr(point, _VALUE_ATTRS[family.type]) is None:
        raise ValueError(
            f"collected metric {quote(name)} {{ {_compact_text(point)}}} "
            f"is not a {family.type.name}"
        )
    previous = ""
    for pair in point.labels:
        label = pair.name
        if label == previous:
            raise ValueError(
                f"collected metric {quote(name)} {{ {_compact_text(point)}}} "
                f"has two or more labels with the same name: {label}"
            )
        if not check_label_name(label):
            raise ValueError(
                f"collected metric {quote(name)} {{ {_compact_text(point)}}} "
                f"has a label with an invalid name: {label}"
            )
        if point.summary is not None and label == _QUANTILE_LABEL:
            raise ValueError(
                f"collected metric {quote(name)} {{ {_compact_text(point)}}} "
                f"must not have an explicit {quote(_QUANTILE_LABEL)} label"
            )
        if not _is_utf8(pair.value or ""):
            raise ValueError(
                f"collected metric {quote(name)} {{ {_compact_text(point)}}} "
                f"has a label named {quote(label)} whose value is not utf8: "
                f"{quote(pair.value or '')}"
            )
        previous = label
    names = [p.name for p in point.labels]
    if names != sorted(names):
        point.labels = sorted(point.labels, key=lambda p: p.name)
    key = (name, tuple((p.name, p.value or "") for p in point.labels))
    if key in seen:
        raise ValueError(
            f"collected metric {quote(name)} {{ {_compact_text(point)}}} "
            "was collected before with the same name and label values"
        )
    seen.add(key)


def _check_desc_consistency(family: MetricFamily, point: MetricPoint, desc: Desc) -> None:
    if family.help != desc.help:
        raise ValueError(
            f"collected metric {family.name} {_compact_text(point)} has help "
            f"{quote(family.help)} but should have {quote(desc.help)}"
        )
    from_desc = [LabelPair(p.name, p.value) for p in desc.const_label_pairs]
    from_desc.extend(LabelPair(n) for n in desc.variable_labels)
    inconsistent = ValueError(
        f"labels in collected metric {family.name} {_compact_text(point)} "
        f"are inconsistent with descriptor {desc}"
    )
    if len(from_desc) != len(point.labels):
        raise inconsistent
    from_desc.sort(key=lambda p: p.name)
    for expected, actual in zip(from_desc, point.labels):
        if expected.name != actual.name or (
            expected.value is not None and expected.value != actual.value
        ):
            raise inconsistent


def _process_metric(
    metric: _Metric,
    families: dict[str, MetricFamily],
    seen: set[tuple],
    registered_ids: set[int] | None,
) -> None:
    desc = metric.desc
    if desc.err is not None:
        raise ValueError(str(desc.err))
    try:
        point = metric.write()
    except Exception as exc:
        raise ValueError(f"error collecting metric {desc}: {exc}") from exc
    family = families.get(desc.fq_name)
    if family is not None:
        if family.help != desc.help:
            raise ValueError(
                f"collected metric {desc.fq_name} {_compact_text(point)} has help "
                f"{quote(desc.help)} but should have {quote(family.help)}"
            )
        if getattr(point, _VALUE_ATTRS[family.type]) is None:
            raise ValueError(
                f"collected metric {desc.fq_name} {_compact_text(point)} "
                f"should be {_TYPE_PHRASES[family.type]}"
            )
    else:
        kind = point.metric_type()
        if kind is None:
            raise ValueError(f"empty metric collected: {_compact_text(point)}")
        family = MetricFamily(desc.fq_name, desc.help, kind)
        _check_suffix_collisions(family, families)
        families[desc.fq_name] = family
    _check_metric_consistency(family, point, seen)
    if registered_ids is not None:
        if desc.id not in registered_ids:
            raise ValueError(
                f"collected metric {family.name} {_compact_text(point)} "
                f"with unregistered descriptor {desc}"
            )
        _check_desc_consistency(family, point, desc)
    family.metrics.append(point)


class Registry:
    """Registers collectors and gathers their metrics into metric families."""

    def __init__(self, pedantic: bool = False) -> None:
        self._lock = threading.RLock()
        self._collectors_by_id: dict[int, _Collector] = {}
        self._desc_ids: set[int] = set()
        self._dim_hashes_by_name: dict[str, int] = {}
        self._unchecked: list[_Collector] = []
        self._pedantic = pedantic

    def register(self, collector: _Collector) -> None:
        """Register a collector; raise ValueError if its descriptors conflict."""
        descs = list(collector.describe())
        new_ids: set[int] = set()
        new_dims: dict[str, int] = {}
        collector_id = 0
        duplicate_error: ValueError | None = None
        with self._lock:
            for desc in descs:
                if desc.err is not None:
                    raise ValueError(f"descriptor {desc} is invalid: {desc.err}")
                if desc.id in self._desc_ids:
                    duplicate_error = ValueError(
                        f"descriptor {desc} already exists with the same "
                        "fully-qualified name and const label values"
                    )
                if desc.id not in new_ids:
                    new_ids.add(desc.id)
                    collector_id ^= desc.id
                known = self._dim_hashes_by_name.get(desc.fq_name)
                if known is not None:
                    if known != desc.dim_hash:
                        raise ValueError(
                            "a previously registered descriptor with the same "
                            f"fully-qualified name as {desc} has different label "
                            "names or a different help string"
                        )
                    continue
                seen = new_dims.get(desc.fq_name)
                if seen is None:
                    new_dims[desc.fq_name] = desc.dim_hash
                elif seen != desc.dim_hash:
                    raise ValueError(
                        "descriptors reported by collector have inconsistent label "
                        "names or help strings for the same fully-qualified name, "
                        f"offender is {desc}"
                    )
            if not new_ids:
                self._unchecked.append(collector)
                return
            if collector_id in self._collectors_by_id:
                raise AlreadyRegisteredError(
                    self._collectors_by_id[collector_id], collector
                )
            if duplicate_error is not None:
                raise duplicate_error
            self._collectors_by_id[collector_id] = collector
            self._desc_ids.update(new_ids)
            self._dim_hashes_by_name.update(new_dims)

    def must_register(self, *args: _Collector) -> None:
        """Register every collector, stopping at the first failure."""
        for collector in args:
            self.register(collector)

    def unregister(self, collector: _Collector) -> bool:
        """Remove an equal collector; return whether one was registered."""
        ids: set[int] = set()
        collector_id = 0
        for desc in collector.describe():
            if desc.id not in ids:
                ids.add(desc.id)
                collector_id ^= desc.id
        with self._lock:
            if collector_id not in self._collectors_by_id:
                return False
            del self._collectors_by_id[collector_id]
            self._desc_ids.difference_update(ids)
        return True

    def gather(self) -> list[MetricFamily]:
        """Collect all metrics; raise GatherError carrying partial results on errors."""
        with self._lock:
            checked = list(self._collectors_by_id.values())
            unchecked = list(self._unchecked)
            registered = set(self._desc_ids) if self._pedantic else None
        families: dict[str, MetricFamily] = {}
        seen: set[tuple] = set()
        errors = MultiError()
        for collectors, ids in ((checked, registered), (unchecked, None)):
            for collector in collectors:
                for metric in collector.collect():
                    try:
                        _process_metric(metric, families, seen, ids)
                    except ValueError as exc:
                        errors.append(exc)
        result = normalize_metric_families(families)
        error = errors.maybe_unwrap()
        if error is not None:
            raise GatherError(error, result)
        return result


class GathererFunc:
    """Turns a function returning metric families into a gatherer."""

    def __init__(self, func: Callable[[], Sequence[MetricFamily]]) -> None:
        self._func = func

    def gather(self) -> list[MetricFamily]:
        return list(self._func())


class Gatherers(list):
    """A list of gatherers whose results are merged in order."""

    def __init__(self, gatherers: Iterable[_Gatherer] = ()) -> None:
        super().__init__(gatherers)

    def gather(self) -> list[MetricFamily]:
        merged: dict[str, MetricFamily] = {}
        seen: set[tuple] = set()
        errors = MultiError()
        for index, gatherer in enumerate(self, 1):
            families: Sequence[MetricFamily] = []
            failures: list[BaseException] = []
            try:
                families = gatherer.gather()
            except GatherError as exc:
                families = exc.families
                failures = list(exc.error) if isinstance(exc.error, MultiError) else [exc.error]
            except MultiError as exc:
                failures = list(exc)
            except Exception as exc:
                failures = [exc]
            for failure in failures:
                errors.append(ValueError(f"[from Gatherer #{index}] {failure}"))
            for family in families:
                existing = merged.get(family.name)
                if existing is not None:
                    if existing.help != family.help:
                        errors.append(ValueError(
                            f"gathered metric family {family.name} has help "
                            f"{quote(family.help)} but should have {quote(existing.help)}"
                        ))
                        continue
                    if existing.type is not family.type:
                        errors.append(ValueError(
                            f"gathered metric family {family.name} has type "
                            f"{family.type.name} but should have {existing.type.name}"
                        ))
                        continue
                else:
                    existing = MetricFamily(family.name, family.help, family.type)
                    try:
                        _check_suffix_collisions(existing, merged)
                    except ValueError as exc:
                        errors.append(exc)
                        continue
                    merged[family.name] = existing
                for point in family.metrics:
                    try:
                        _check_metric_consistency(existing, point, seen)
                    except ValueError as exc:
                        errors.append(exc)
                        continue
                    existing.metrics.append(point)
        result = normalize_metric_families(merged)
        error = errors.maybe_unwrap()
        if error is not None:
            raise GatherError(error, result)
        return result


_default_registry = Registry()


def new_pedantic_registry() -> Registry:
    """Return a registry that checks collected metrics against their descriptors."""
    return Registry(pedantic=True)


def register(collector: _Collector) -> None:
    """Register a collector with the default registry."""
    _default_registry.register(collector)


def must_register(*args: _Collector) -> None:
    """Register collectors with the default registry."""
    _default_registry.must_register(*args)


def unregister(collector: _Collector) -> bool:
    """Unregister a collector from the default registry."""
    return _default_registry.unregister(collector)


def write_to_textfile(filename: str, gatherer: _Gatherer) -> None:
    """Gather, encode as text and atomically replace ``filename``."""
    directory = os.path.dirname(filename) or "."
    fd, tmp_name = tempfile.mkstemp(dir=directory, prefix=os.path.basename(filename))
    try:
        with os.fdopen(fd, "w", encoding="utf-8", newline="") as handle:
            for family in gatherer.gather():
                handle.write(metric_family_to_text(family))
        os.chmod(tmp_name, 0o644)
        os.replace(tmp_name, filename)
    finally:
        with contextlib.suppress(FileNotFoundError):
            os.remove(tmp_name)