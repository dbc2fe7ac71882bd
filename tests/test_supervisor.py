# tests/test_supervisor.py
import asyncio

import pytest

from interiris.config import ProbeConfig, Protocol
from interiris.errors import ConfigurationError
from interiris.fake import FakeTransport
from interiris.models import DiscoveredTarget, Outcome
from interiris.stats import MetricsStore
from interiris.supervisor import State, Supervisor
from interiris.transport import UNRESTRICTED_HOP_LIMIT


class SimulatedNetwork:
    """Hops 1-2 private, hop 3 is `first_hop`; pings answer only from the current first hop."""

    def __init__(self, store, first_hop="8.8.4.4"):
        self.store = store
        self.first_hop = first_hop
        self.dark = False
        self.samples_seen_during_discovery = []
        self.measurement_probes = 0
        self.transports = []
        self.on_measure = None

    def respond(self, dest, ttl):
        if ttl == UNRESTRICTED_HOP_LIMIT:
            self.measurement_probes += 1
            if self.on_measure is not None:
                self.on_measure(self)
            if dest == self.first_hop:
                return Outcome.replied(dest, 0.002, reached=True)
            return Outcome.timed_out()

        if self.dark:
            return Outcome.timed_out()
        self.samples_seen_during_discovery.append(self.store.snapshot().sent)
        if ttl == 1:
            return Outcome.replied("192.168.1.1", 0.001)
        if ttl == 2:
            return Outcome.replied("10.10.0.1", 0.002)
        return Outcome.replied(self.first_hop, 0.004)

    def factory(self, protocol):
        transport = FakeTransport(responder=self.respond)
        self.transports.append((protocol, transport))
        return transport


def make_supervisor(network, store, **cfg):
    opts = dict(count=1, limit=5, expiry=0.1, delay=0.001, drop_threshold=2)
    opts.update(cfg)
    return Supervisor(ProbeConfig(**opts), store, network.factory,
                      backoff_initial=0.001, backoff_max=0.004)


def test_discovers_then_monitors():
    store = MetricsStore()
    network = SimulatedNetwork(store)
    sup = make_supervisor(network, store)
    assert sup.state is State.IDLE

    asyncio.run(sup.run(count=3))

    assert sup.target == DiscoveredTarget("8.8.4.4", 3)
    assert sup.state is State.MONITORING
    snap = store.snapshot()
    assert snap.count == 3
    assert snap.drops == 0
    assert snap.target == DiscoveredTarget("8.8.4.4", 3)
    # nothing was recorded while discovery was still running
    assert network.samples_seen_during_discovery == [0, 0, 0]
    # discovery and measurement each had their own handle, both closed
    assert len(network.transports) == 2
    assert [p for p, _t in network.transports] == [Protocol.ICMP, Protocol.ICMP]
    assert all(t.opened and t.closed for _p, t in network.transports)


def test_discovery_failure_is_retried_with_backoff():
    store = MetricsStore()
    network = SimulatedNetwork(store)
    network.dark = True
    runs = []

    def factory(protocol):
        runs.append(protocol)
        # the third discovery run sees a working network
        if len(runs) == 3:
            network.dark = False
        return network.factory(protocol)

    sup = Supervisor(
        ProbeConfig(count=2, limit=4, expiry=0.01), store, factory,
        backoff_initial=0.001, backoff_max=0.002,
    )

    target = asyncio.run(sup.discover_with_backoff())

    assert target == DiscoveredTarget("8.8.4.4", 3)
    assert sup.discovery_failures == 2
    assert len(runs) == 3
    assert store.snapshot().sent == 0


def test_stale_target_triggers_rediscovery_and_swap():
    store = MetricsStore()
    network = SimulatedNetwork(store)

    def route_change(net):
        # after three good pings the ISP hands us a new first hop
        if net.measurement_probes == 4:
            net.first_hop = "9.9.9.9"

    network.on_measure = route_change
    sup = make_supervisor(network, store, drop_threshold=2)

    asyncio.run(sup.run(count=15))

    assert sup.target == DiscoveredTarget("9.9.9.9", 3)
    assert sup.measurement.target.address == "9.9.9.9"
    snap = store.snapshot()
    assert snap.rediscoveries == 1
    assert snap.drops >= 2
    assert snap.count >= 3
    assert snap.sent == 15
    assert snap.target.address == "9.9.9.9"
    # initial discovery, measurement, rediscovery
    assert len(network.transports) == 3


def test_configuration_error_from_transport_is_fatal():
    class Unprivileged(FakeTransport):
        def open(self):
            raise ConfigurationError("raw sockets need root")

    sup = Supervisor(ProbeConfig(), MetricsStore(), lambda p: Unprivileged())

    with pytest.raises(ConfigurationError):
        asyncio.run(sup.run(count=1))


def test_measurement_crash_during_rediscovery_is_raised():
    store = MetricsStore()
    network = SimulatedNetwork(store)

    def outage(net):
        # the route goes dark, then the measurement socket dies mid-rediscovery
        if net.measurement_probes == 1:
            net.dark = True
            net.first_hop = "9.9.9.9"
        elif net.measurement_probes == 3:
            raise RuntimeError("measurement socket closed")

    network.on_measure = outage
    sup = make_supervisor(network, store, drop_threshold=2)

    async def bounded():
        return await asyncio.wait_for(sup.run(), 5)

    with pytest.raises(RuntimeError, match="measurement socket closed"):
        asyncio.run(bounded())

    assert sup.discovery_failures >= 1
    assert store.snapshot().rediscoveries == 0
