"""Streaming estimation of targeted quantiles with bounded error.

The stream keeps a compressed, sorted list of samples whose ranks are only
known approximately. For every target quantile ``q`` with allowed error
``e`` the value reported for ``q`` is the value of some rank between
``(q - e) * n`` and ``(q + e) * n``. Observations are buffered and merged
into the compressed list in sorted batches.
"""

from __future__ import annotations

import math
import sys
from dataclasses import dataclass
from typing import Mapping

_BUFFER_CAPACITY = 500


@dataclass(slots=True)
class _Sample:
    value: float
    width: float
    delta: float


class TargetedStream:
    """Approximate quantiles for a fixed set of targets and their errors."""

    def __init__(self, targets: Mapping[float, float]) -> None:
        self._targets = list(targets.items())
        self._n = 0.0
        self._samples: list[_Sample] = []
        self._buffer: list[_Sample] = []
        self._sorted = True

    def insert(self, value: float) -> None:
        """Add one observation."""
        self._buffer.append(_Sample(value, 1.0, 0.0))
        self._sorted = False
        if len(self._buffer) == _BUFFER_CAPACITY:
            self._flush()

    def query(self, q: float) -> float:
        """Return the estimated value at quantile ``q``; 0 if nothing was inserted."""
        if not self._samples:
            # Not enough data for a merge yet: answer exactly from the buffer.
            if not self._buffer:
                return 0.0
            index = math.ceil(len(self._buffer) * q)
            if index > 0:
                index -= 1
            self._maybe_sort()
            return self._buffer[index].value
        self._flush()
        return self._query_merged(q)

    def count(self) -> int:
        """Return the number of observations held."""
        return len(self._buffer) + int(self._n)

    def reset(self) -> None:
        """Forget every observation."""
        self._samples.clear()
        self._n = 0.0
        self._buffer.clear()

    def _invariant(self, rank: float) -> float:
        smallest = sys.float_info.max
        for quantile, epsilon in self._targets:
            if quantile * self._n <= rank:
                allowed = (2 * epsilon * rank) / quantile
            else:
                allowed = (2 * epsilon * (self._n - rank)) / (1 - quantile)
            smallest = min(smallest, allowed)
        return smallest

    def _maybe_sort(self) -> None:
        if not self._sorted:
            self._sorted = True
            self._buffer.sort(key=lambda s: s.value)

    def _flush(self) -> None:
        self._maybe_sort()
        self._merge(self._buffer)
        self._buffer = []

    def _merge(self, incoming: list[_Sample]) -> None:
        samples = self._samples
        rank = 0.0
        i = 0
        for sample in incoming:
            while i < len(samples):
                current = samples[i]
                if current.value > sample.value:
                    delta = max(sample.delta, math.floor(self._invariant(rank)) - 1)
                    samples.insert(i, _Sample(sample.value, sample.width, delta))
                    i += 1
                    break
                rank += current.width
                i += 1
            else:
                samples.append(_Sample(sample.value, sample.width, 0.0))
                i += 1
            self._n += sample.width
            rank += sample.width
        self._compress()

    def _query_merged(self, q: float) -> float:
        target = math.ceil(q * self._n)
        target += math.ceil(self._invariant(target) / 2)
        previous = self._samples[0]
        rank = 0.0
        for current in self._samples[1:]:
            rank += previous.width
            if rank + current.width + current.delta > target:
                return previous.value
            previous = current
        return previous.value

    def _compress(self) -> None:
        samples = self._samples
        if len(samples) < 2:
            return
        x_index = len(samples) - 1
        x = samples[x_index]
        rank = self._n - 1 - x.width
        for i in range(len(samples) - 2, -1, -1):
            current = samples[i]
            if current.width + x.width + x.delta <= self._invariant(rank):
                x.width += current.width
                del samples[i]
                x_index -= 1
            else:
                x = current
                x_index = i
            rank -= current.width