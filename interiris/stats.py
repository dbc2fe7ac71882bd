from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from .models import DiscoveredTarget

# Upper bounds in seconds. A first hop normally answers in 1-20ms.
DEFAULT_BUCKETS: Tuple[float, ...] = (
    0.001, 0.0025, 0.005, 0.0075, 0.01, 0.015, 0.02, 0.03, 0.05,
    0.075, 0.1, 0.25, 0.5, 1.0, 2.5,
)


@dataclass(frozen=True)
class MetricsSnapshot:
    """
    Point-in-time copy of the store. `buckets` pairs each upper bound with the
    cumulative number of samples at or below it; the implicit +Inf bucket is
    `count`.
    """
    count: int = 0
    sum: float = 0.0
    buckets: Tuple[Tuple[float, int], ...] = ()
    drops: int = 0
    sent: int = 0
    rediscoveries: int = 0
    target: Optional[DiscoveredTarget] = None

    @property
    def mean(self) -> Optional[float]:
        if self.count == 0:
            return None
        return self.sum / self.count

    @property
    def loss_pct(self) -> float:
        if self.sent == 0:
            return 0.0
        return 100.0 * self.drops / self.sent

    def quantile(self, q: float) -> Optional[float]:
        """
        Estimate the q-quantile from the buckets, interpolating linearly inside
        the bucket that holds the rank (the way PromQL histogram_quantile does).
        Samples beyond the largest bound report that bound.
        """
        if not 0.0 <= q <= 1.0:
            raise ValueError("quantile must be within [0, 1]")
        if self.count == 0:
            return None
        rank = q * self.count
        lower_bound, lower_count = 0.0, 0
        for bound, cumulative in self.buckets:
            if cumulative >= rank and cumulative > lower_count:
                inside = cumulative - lower_count
                return lower_bound + (bound - lower_bound) * (rank - lower_count) / inside
            lower_bound, lower_count = bound, cumulative
        return lower_bound


@dataclass
class _Distribution:
    bounds: Tuple[float, ...]
    counts: List[int] = field(default_factory=list)
    count: int = 0
    sum: float = 0.0

    def __post_init__(self) -> None:
        self.counts = [0] * len(self.bounds)

    def observe(self, value: float) -> None:
        self.count += 1
        self.sum += value
        for i, bound in enumerate(self.bounds):
            if value <= bound:
                self.counts[i] += 1
                break

    def cumulative(self) -> Tuple[Tuple[float, int], ...]:
        out = []
        running = 0
        for bound, n in zip(self.bounds, self.counts):
            running += n
            out.append((bound, running))
        return tuple(out)


class MetricsStore:
    """
    Accumulates measurement samples for the scrape endpoint.

    The measurement loop is the only writer; the Prometheus server thread reads
    through `snapshot()`. One lock covers each recorded sample and the snapshot
    copy, so a reader sees either all of a sample or none of it.
    """

    def __init__(self, buckets: Sequence[float] = DEFAULT_BUCKETS) -> None:
        bounds = tuple(sorted(float(b) for b in buckets))
        if not bounds or any(math.isinf(b) for b in bounds):
            raise ValueError("buckets must be finite and non-empty")
        self._lock = threading.Lock()
        self._latency = _Distribution(bounds)
        self._drops = 0
        self._sent = 0
        self._discoveries = 0
        self._target: Optional[DiscoveredTarget] = None

    def record_latency(self, seconds: float) -> None:
        if seconds < 0:
            seconds = 0.0
        with self._lock:
            self._sent += 1
            self._latency.observe(seconds)

    def record_drop(self) -> None:
        with self._lock:
            self._sent += 1
            self._drops += 1

    def record_discovery(self, target: DiscoveredTarget) -> None:
        with self._lock:
            self._discoveries += 1
            self._target = target

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            return MetricsSnapshot(
                count=self._latency.count,
                sum=self._latency.sum,
                buckets=self._latency.cumulative(),
                drops=self._drops,
                sent=self._sent,
                # the first discovery is not a rediscovery
                rediscoveries=max(0, self._discoveries - 1),
                target=self._target,
            )
