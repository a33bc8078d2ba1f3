from typing import List

import numpy as np


class SlidingWindow:
    """Fixed-capacity ring buffer of close prices with an O(1) running sum.

    ``count`` is the total number of pushes ever made, not the number of
    occupied slots; ``is_full`` and ``is_at_multiple_of`` are defined in terms
    of it.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError("SlidingWindow capacity must be positive")
        self._capacity = int(capacity)
        self._values: List[float] = [0.0] * self._capacity
        self._count = 0
        self._running_sum = 0.0

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def count(self) -> int:
        return self._count

    @property
    def size(self) -> int:
        return min(self._count, self._capacity)

    @property
    def running_sum(self) -> float:
        return self._running_sum

    @property
    def mean(self) -> float:
        size = self.size
        if size == 0:
            return 0.0
        return self._running_sum / size

    def push(self, value: float) -> None:
        value = float(value)
        slot = self._count % self._capacity
        evicted = self._values[slot] if self._count >= self._capacity else 0.0
        self._values[slot] = value
        self._running_sum += value - evicted
        self._count += 1

    def head(self) -> float:
        """Oldest sample still held; the first sample pushed until the buffer wraps."""
        if self._count == 0:
            raise IndexError("head() on an empty SlidingWindow")
        if self._count < self._capacity:
            return self._values[0]
        return self._values[self._count % self._capacity]

    def last_n(self, n: int) -> float:
        """Value pushed ``n`` pushes ago; ``last_n(1)`` is the newest."""
        if n < 1:
            raise ValueError("last_n() lookback must be >= 1")
        if self._count == 0:
            raise IndexError("last_n() on an empty SlidingWindow")
        if n >= self._capacity or n > self._count:
            return self.head()
        return self._values[(self._count - n) % self._capacity]

    def is_full(self) -> bool:
        return self.is_at_multiple_of(self._capacity)

    def is_at_multiple_of(self, m: int) -> bool:
        if m < 1:
            raise ValueError("multiple must be >= 1")
        return self._count > 0 and self._count % m == 0

    def values(self) -> List[float]:
        """Samples currently held, oldest first."""
        if self._count < self._capacity:
            return self._values[:self._count]
        start = self._count % self._capacity
        return self._values[start:] + self._values[:start]

    def get_std(self) -> float:
        # Population std over the samples actually pushed, around the running-sum mean.
        size = self.size
        if size == 0:
            return 0.0
        samples = np.asarray(self._values[:size], dtype=float)
        variance = float(np.mean((samples - self.mean) ** 2))
        return float(np.sqrt(max(variance, 0.0)))

    def __len__(self) -> int:
        return self.size
