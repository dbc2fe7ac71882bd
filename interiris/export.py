from __future__ import annotations

import logging
from typing import Iterable

from prometheus_client import CollectorRegistry, start_http_server
from prometheus_client.core import (
    CounterMetricFamily,
    GaugeMetricFamily,
    HistogramMetricFamily,
    Metric,
)
from prometheus_client.registry import Collector

from .stats import MetricsSnapshot, MetricsStore

logger = logging.getLogger(__name__)


# --- helpers ---------------------------------------------------------------

def _fmt_bound(bound: float) -> str:
    return repr(float(bound))


def _histogram_buckets(snap: MetricsSnapshot) -> list[tuple[str, float]]:
    buckets = [(_fmt_bound(bound), float(n)) for bound, n in snap.buckets]
    buckets.append(("+Inf", float(snap.count)))
    return buckets


# --- public API ------------------------------------------------------------

class StoreCollector(Collector):
    """
    Exposes a MetricsStore to prometheus_client. Each scrape takes one
    snapshot so every family in a response describes the same moment.
    """

    def __init__(self, store: MetricsStore) -> None:
        self._store = store

    def collect(self) -> Iterable[Metric]:
        snap = self._store.snapshot()

        yield CounterMetricFamily(
            "ping_count", "How many pings have been sent.", value=snap.sent
        )
        yield CounterMetricFamily(
            "ping_failed_count", "How many pings have timed out.", value=snap.drops
        )
        yield HistogramMetricFamily(
            "ping_seconds",
            "Ping latency to first public network hop in seconds.",
            buckets=_histogram_buckets(snap),
            sum_value=snap.sum,
            unit="seconds",
        )
        yield CounterMetricFamily(
            "rediscovery_count",
            "How many times the first public hop was discovered again.",
            value=snap.rediscoveries,
        )

        distance = GaugeMetricFamily(
            "first_hop_distance", "Hop limit at which the first public hop answered."
        )
        info = GaugeMetricFamily(
            "first_hop_info", "Address of the first public hop being monitored.", labels=["address"]
        )
        if snap.target is not None:
            distance.add_metric([], snap.target.hop_limit)
            info.add_metric([snap.target.address], 1)
        yield distance
        yield info


def build_registry(store: MetricsStore) -> CollectorRegistry:
    registry = CollectorRegistry(auto_describe=True)
    registry.register(StoreCollector(store))
    return registry


def serve_metrics(store: MetricsStore, port: int, addr: str = "0.0.0.0") -> CollectorRegistry:
    """Start the scrape endpoint in prometheus_client's daemon thread."""
    registry = build_registry(store)
    start_http_server(port, addr=addr, registry=registry)
    logger.info("serving metrics addr=%s port=%d", addr, port)
    return registry
