import math
import random

import pytest

from promclient.quantile import TargetedStream

OBJECTIVES = {0.5: 0.05, 0.9: 0.01, 0.99: 0.001}


def _bounds(values, q, epsilon):
    n = len(values)
    lower = int((q - 2 * epsilon) * n)
    upper = math.ceil((q + 2 * epsilon) * n)
    low = values[lower - 1] if lower > 1 else values[0]
    high = values[upper - 1] if upper < n else values[-1]
    return low, high


def test_empty_stream_queries_zero():
    stream = TargetedStream(OBJECTIVES)
    assert stream.count() == 0
    assert stream.query(0.5) == 0


def test_small_set_is_exact():
    values = list(range(1, 101))
    random.Random(1).shuffle(values)
    stream = TargetedStream(OBJECTIVES)
    for v in values:
        stream.insert(float(v))
    assert stream.count() == 100
    assert stream.query(0.5) == 50
    assert stream.query(0.9) == 90
    assert stream.query(0.99) == 99


def test_count_after_many_inserts():
    stream = TargetedStream(OBJECTIVES)
    for v in range(2345):
        stream.insert(float(v))
    assert stream.count() == 2345


@pytest.mark.parametrize("seed", [1, 7, 42])
def test_large_set_within_error_bounds(seed):
    rng = random.Random(seed)
    values = [rng.gauss(0.0, 1.0) for _ in range(12000)]
    stream = TargetedStream(OBJECTIVES)
    for v in values:
        stream.insert(v)
    values.sort()
    assert stream.count() == len(values)
    for q, epsilon in OBJECTIVES.items():
        low, high = _bounds(values, q, epsilon)
        got = stream.query(q)
        assert low <= got <= high


def test_query_result_is_an_inserted_value():
    rng = random.Random(3)
    values = [rng.random() for _ in range(3000)]
    stream = TargetedStream(OBJECTIVES)
    for v in values:
        stream.insert(v)
    inserted = set(values)
    for q in OBJECTIVES:
        assert stream.query(q) in inserted


def test_reset_forgets_everything():
    stream = TargetedStream(OBJECTIVES)
    for v in range(1500):
        stream.insert(float(v))
    stream.reset()
    assert stream.count() == 0
    assert stream.query(0.9) == 0


def test_reuse_after_reset():
    stream = TargetedStream(OBJECTIVES)
    for v in range(1000, 3000):
        stream.insert(float(v))
    stream.reset()
    for v in (3.0, 1.0, 2.0):
        stream.insert(v)
    assert stream.count() == 3
    assert stream.query(0.5) == 2.0


def test_inserts_after_query_are_counted():
    stream = TargetedStream(OBJECTIVES)
    for v in range(700):
        stream.insert(float(v))
    stream.query(0.5)
    for v in range(700, 1000):
        stream.insert(float(v))
    assert stream.count() == 1000
    low, high = _bounds([float(v) for v in range(1000)], 0.5, 0.05)
    assert low <= stream.query(0.5) <= high