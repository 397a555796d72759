import math

import pytest

from promclient.exposition import families_to_text, format_float, metric_family_to_text
from promclient.model import (
    Bucket,
    HistogramValue,
    LabelPair,
    MetricFamily,
    MetricPoint,
    MetricType,
    Quantile,
    SummaryValue,
)


@pytest.mark.parametrize(
    "value,text",
    [
        (1.0, "1"),
        (12.75, "12.75"),
        (0.001, "0.001"),
        (math.nan, "NaN"),
        (math.inf, "+Inf"),
        (-math.inf, "-Inf"),
        (0.0, "0"),
    ],
)
def test_format_float(value, text):
    assert format_float(value) == text


def test_counter_family():
    fam = MetricFamily("jobs_total", "Jobs processed.", MetricType.COUNTER, [
        MetricPoint(labels=[LabelPair("queue", "fast")], counter=3.0),
        MetricPoint(labels=[LabelPair("queue", "slow")], counter=7.0),
    ])
    assert metric_family_to_text(fam) == (
        "# HELP jobs_total Jobs processed.\n"
        "# TYPE jobs_total counter\n"
        'jobs_total{queue="fast"} 3\n'
        'jobs_total{queue="slow"} 7\n'
    )


def test_summary_without_observations():
    fam = MetricFamily("rpc_seconds", "RPC latency.", MetricType.SUMMARY, [
        MetricPoint(summary=SummaryValue(0, 0.0, [Quantile(0.25, math.nan), Quantile(0.75, math.nan)]))
    ])
    assert metric_family_to_text(fam) == (
        "# HELP rpc_seconds RPC latency.\n"
        "# TYPE rpc_seconds summary\n"
        'rpc_seconds{quantile="0.25"} NaN\n'
        'rpc_seconds{quantile="0.75"} NaN\n'
        "rpc_seconds_sum 0\n"
        "rpc_seconds_count 0\n"
    )


def test_histogram_and_multiple_families():
    hist = MetricFamily("io_bytes", "Sizes.", MetricType.HISTOGRAM, [
        MetricPoint(labels=[LabelPair("dev", "sda")], histogram=HistogramValue(
            5, 9.25, [Bucket(1, 0.5), Bucket(3, 1.0), Bucket(4, 2.5)]))
    ])
    gauge = MetricFamily("disk_free", "Free space.", MetricType.GAUGE, [
        MetricPoint(labels=[LabelPair("dev", "sda")], gauge=0.5)])
    text = families_to_text([gauge, hist])
    assert text == (
        "# HELP disk_free Free space.\n"
        "# TYPE disk_free gauge\n"
        'disk_free{dev="sda"} 0.5\n'
        "# HELP io_bytes Sizes.\n"
        "# TYPE io_bytes histogram\n"
        'io_bytes_bucket{dev="sda",le="0.5"} 1\n'
        'io_bytes_bucket{dev="sda",le="1"} 3\n'
        'io_bytes_bucket{dev="sda",le="2.5"} 4\n'
        'io_bytes_bucket{dev="sda",le="+Inf"} 5\n'
        'io_bytes_sum{dev="sda"} 9.25\n'
        'io_bytes_count{dev="sda"} 5\n'
    )


def test_errors():
    with pytest.raises(ValueError):
        metric_family_to_text(MetricFamily("x", "h", MetricType.GAUGE))
    with pytest.raises(ValueError):
        metric_family_to_text(MetricFamily("x", "h", MetricType.GAUGE, [MetricPoint(counter=1.0)]))