"""Encoding of metric families in the text exposition format."""

from __future__ import annotations

import math
from decimal import Decimal
from typing import Iterable

from promclient.model import LabelPair, MetricFamily, MetricPoint, MetricType


def format_float(value: float) -> str:
    """Format a float the way the text format expects (shortest form)."""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    sign, digits, exponent = Decimal(repr(float(value))).as_tuple()
    prefix = "-" if sign else ""
    digits = list(digits)
    while len(digits) > 1 and digits[-1] == 0:
        digits.pop()
        exponent += 1
    if digits == [0]:
        return prefix + "0"
    while len(digits) > 1 and digits[0] == 0:
        digits.pop(0)
    text = "".join(map(str, digits))
    decimal_point = len(text) + exponent
    exp = decimal_point - 1
    if exp < -4 or exp >= 6:
        mantissa = text[0] + ("." + text[1:] if len(text) > 1 else "")
        exp_sign = "-" if exp < 0 else "+"
        return f"{prefix}{mantissa}e{exp_sign}{abs(exp):02d}"
    if decimal_point <= 0:
        return f"{prefix}0.{'0' * -decimal_point}{text}"
    if decimal_point >= len(text):
        return prefix + text + "0" * (decimal_point - len(text))
    return f"{prefix}{text[:decimal_point]}.{text[decimal_point:]}"


def _escape_help(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n")


def _escape_label_value(text: str) -> str:
    return text.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _labels(pairs: list[LabelPair], extra: tuple[str, str] | None = None) -> str:
    parts = [f'{p.name}="{_escape_label_value(p.value or "")}"' for p in pairs]
    if extra is not None:
        parts.append(f'{extra[0]}="{_escape_label_value(extra[1])}"')
    return "{" + ",".join(parts) + "}" if parts else ""


def _line(name: str, metric: MetricPoint, value: str, extra=None) -> str:
    line = f"{name}{_labels(metric.labels, extra)} {value}"
    if metric.timestamp_ms is not None:
        line += f" {metric.timestamp_ms}"
    return line + "\n"


def metric_family_to_text(family: MetricFamily) -> str:
    """Render one metric family; raise ValueError on an inconsistent family."""
    if not family.metrics:
        raise ValueError(f"MetricFamily has no metrics: {family.name}")
    if not family.name:
        raise ValueError("MetricFamily has no name")
    name = family.name
    out = [f"# HELP {name} {_escape_help(family.help)}\n", f"# TYPE {name} {family.type.value}\n"]
    for metric in family.metrics:
        kind = family.type
        if metric.metric_type() is not kind and not (
            kind is MetricType.UNTYPED and metric.untyped is not None
        ):
            raise ValueError(f"expected {kind.value} in metric {name} {metric}")
        if kind is MetricType.COUNTER:
            out.append(_line(name, metric, format_float(metric.counter)))
        elif kind is MetricType.GAUGE:
            out.append(_line(name, metric, format_float(metric.gauge)))
        elif kind is MetricType.UNTYPED:
            out.append(_line(name, metric, format_float(metric.untyped)))
        elif kind is MetricType.SUMMARY:
            summary = metric.summary
            for q in summary.quantiles:
                out.append(
                    _line(name, metric, format_float(q.value), ("quantile", format_float(q.quantile)))
                )
            out.append(_line(name + "_sum", metric, format_float(summary.sample_sum)))
            out.append(_line(name + "_count", metric, str(summary.sample_count)))
        else:
            histogram = metric.histogram
            has_inf = False
            for b in histogram.buckets:
                if math.isinf(b.upper_bound) and b.upper_bound > 0:
                    has_inf = True
                out.append(
                    _line(name + "_bucket", metric, str(b.cumulative_count), ("le", format_float(b.upper_bound)))
                )
            if not has_inf:
                out.append(
                    _line(name + "_bucket", metric, str(histogram.sample_count), ("le", "+Inf"))
                )
            out.append(_line(name + "_sum", metric, format_float(histogram.sample_sum)))
            out.append(_line(name + "_count", metric, str(histogram.sample_count)))
    return "".join(out)


def families_to_text(families: Iterable[MetricFamily]) -> str:
    """Render several families one after another."""
    return "".join(metric_family_to_text(f) for f in families)