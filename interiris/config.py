from __future__ import annotations

import enum
from dataclasses import dataclass, replace

from .errors import ConfigurationError
from .util import resolve_host

DEFAULT_COUNT = 4
DEFAULT_DELAY_MS = 500
DEFAULT_LIMIT = 30
DEFAULT_EXPIRY_MS = 250
DEFAULT_DROP_THRESHOLD = 10
DEFAULT_METRICS_PORT = 9000
DEFAULT_METRICS_ADDR = "0.0.0.0"

# We only trace towards this address, we are unlikely to ever reach it.
DEFAULT_TRACE_TARGET = "1.1.1.1"

MAX_HOP_LIMIT = 255


class Protocol(str, enum.Enum):
    ICMP = "ICMP"
    UDP = "UDP"
    TCP = "TCP"

    @classmethod
    def parse(cls, value: str) -> "Protocol":
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ConfigurationError(f"unknown protocol {value!r}: expected ICMP, UDP or TCP") from None


@dataclass(frozen=True)
class ProbeConfig:
    """
    Startup configuration for discovery and measurement. Times are seconds.
    Built once from the command line and never mutated.
    """
    protocol: Protocol = Protocol.ICMP
    probe_port: int | None = None
    count: int = DEFAULT_COUNT
    delay: float = DEFAULT_DELAY_MS / 1000.0
    limit: int = DEFAULT_LIMIT
    expiry: float = DEFAULT_EXPIRY_MS / 1000.0
    trace_target: str = DEFAULT_TRACE_TARGET
    drop_threshold: int = DEFAULT_DROP_THRESHOLD
    metrics_port: int = DEFAULT_METRICS_PORT
    metrics_addr: str = DEFAULT_METRICS_ADDR

    def __post_init__(self) -> None:
        if self.protocol is not Protocol.ICMP:
            if not self.probe_port:
                raise ConfigurationError(
                    f"--probe-port is required for {self.protocol.value} probes"
                )
            if not 0 < self.probe_port < 65536:
                raise ConfigurationError(f"probe port out of range: {self.probe_port}")
        for value, name in (
            (self.count, "count"),
            (self.limit, "limit"),
            (self.drop_threshold, "drop threshold"),
        ):
            if value < 1:
                raise ConfigurationError(f"{name} must be > 0")
        if self.limit > MAX_HOP_LIMIT:
            raise ConfigurationError(f"limit must be <= {MAX_HOP_LIMIT}")
        if self.expiry <= 0:
            raise ConfigurationError("expiry must be > 0")
        if self.delay < 0:
            raise ConfigurationError("delay must be >= 0")
        if not 0 < self.metrics_port < 65536:
            raise ConfigurationError(f"metrics port out of range: {self.metrics_port}")


def build_config(
    *,
    proto: str = Protocol.ICMP.value,
    probe_port: int | None = None,
    count: int = DEFAULT_COUNT,
    delay_ms: int = DEFAULT_DELAY_MS,
    limit: int = DEFAULT_LIMIT,
    expiry_ms: int = DEFAULT_EXPIRY_MS,
    target: str = DEFAULT_TRACE_TARGET,
    drop_threshold: int = DEFAULT_DROP_THRESHOLD,
    metrics_port: int = DEFAULT_METRICS_PORT,
    metrics_addr: str = DEFAULT_METRICS_ADDR,
) -> ProbeConfig:
    """Translate command line values (milliseconds, names) into a ProbeConfig."""
    protocol = Protocol.parse(proto)
    config = ProbeConfig(
        protocol=protocol,
        probe_port=probe_port if protocol is not Protocol.ICMP else None,
        count=count,
        delay=delay_ms / 1000.0,
        limit=limit,
        expiry=expiry_ms / 1000.0,
        trace_target=target,
        drop_threshold=drop_threshold,
        metrics_port=metrics_port,
        metrics_addr=metrics_addr,
    )
    # resolve last so a bad port is reported before any DNS traffic
    resolved = resolve_host(target)
    if resolved is None:
        raise ConfigurationError(f"cannot resolve {target!r} to an IPv4 address")
    if resolved != target:
        config = replace(config, trace_target=resolved)
    return config
