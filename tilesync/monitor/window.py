from __future__ import annotations

from collections import deque

from tilesync.common.constants import METRIC_WINDOW_SIZE

PERCENTILES = (50, 90, 95, 99)


class MetricWindow:
    """Fixed-capacity FIFO of numeric samples; the oldest sample is evicted first."""

    __slots__ = ("capacity", "_samples")

    def __init__(self, capacity: int = METRIC_WINDOW_SIZE) -> None:
        if capacity < 1:
            raise ValueError("MetricWindow capacity must be positive")
        self.capacity = capacity
        self._samples: deque[float] = deque(maxlen=capacity)

    def add(self, value: float) -> None:
        self._samples.append(float(value))

    def values(self) -> list[float]:
        return list(self._samples)

    def __len__(self) -> int:
        return len(self._samples)

    def mean(self) -> float:
        if not self._samples:
            return 0.0
        return sum(self._samples) / len(self._samples)

    def percentile(self, pct: float) -> float:
        if not self._samples:
            return 0.0
        ordered = sorted(self._samples)
        index = min(len(ordered) - 1, int(len(ordered) * pct / 100))
        return ordered[index]

    def percentiles(self) -> dict[str, float]:
        return {f"p{p}": self.percentile(p) for p in PERCENTILES}

    def aggregate(self, with_percentiles: bool = False) -> dict[str, float]:
        data: dict[str, float] = {"count": len(self._samples), "mean": self.mean()}
        if with_percentiles:
            data.update(self.percentiles())
        return data
