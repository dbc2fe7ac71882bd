from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
from typing import Callable, Optional

from .config import ProbeConfig, Protocol
from .errors import DiscoveryFailed
from .models import DiscoveredTarget
from .pinger import MeasurementLoop
from .stats import MetricsStore
from .tracer import discover
from .transport import ProbeTransport, create_transport

logger = logging.getLogger(__name__)

BACKOFF_INITIAL = 1.0
BACKOFF_MAX = 10.0

TransportFactory = Callable[[Protocol], ProbeTransport]


class State(str, enum.Enum):
    IDLE = "idle"
    DISCOVERING = "discovering"
    MONITORING = "monitoring"


class Supervisor:
    """
    Owns the current DiscoveredTarget and keeps a measurement loop running
    against it.

    Discovery failures are retried with a bounded exponential backoff. When the
    loop reports a stale target, discovery runs again on a fresh transport while
    the loop keeps measuring the old address; the new target is swapped in once
    found.
    """

    def __init__(
        self,
        config: ProbeConfig,
        store: MetricsStore,
        transport_factory: Optional[TransportFactory] = None,
        *,
        backoff_initial: float = BACKOFF_INITIAL,
        backoff_max: float = BACKOFF_MAX,
    ) -> None:
        self.config = config
        self.store = store
        self._transport_factory = transport_factory or (lambda p: create_transport(p, config))
        self._backoff_initial = backoff_initial
        self._backoff_max = backoff_max
        self._stale = asyncio.Event()
        self.state = State.IDLE
        self.target: Optional[DiscoveredTarget] = None
        self.measurement: Optional[MeasurementLoop] = None
        self.discovery_failures = 0

    def signal_stale(self) -> None:
        self._stale.set()

    async def _discover_once(self) -> DiscoveredTarget:
        with self._transport_factory(self.config.protocol) as transport:
            return await discover(self.config, transport)

    async def discover_with_backoff(self) -> DiscoveredTarget:
        """Run discovery until it succeeds. Only cancellation stops it."""
        delay = self._backoff_initial
        while True:
            self.state = State.DISCOVERING
            try:
                return await self._discover_once()
            except DiscoveryFailed as e:
                self.discovery_failures += 1
                logger.warning("retrying discovery in %.1fs reason=%s", delay, e.reason)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._backoff_max)

    def _adopt(self, target: DiscoveredTarget) -> None:
        previous = self.target
        self.target = target
        self.store.record_discovery(target)
        if self.measurement is not None:
            self.measurement.retarget(target)
        if previous is not None and previous.address == target.address:
            logger.info("rediscovery confirmed target address=%s", target.address)

    async def run(self, count: Optional[int] = None) -> None:
        """
        Run the state machine until cancelled. `count` bounds the number of
        measurement ticks, after which run returns.
        """
        self._adopt(await self.discover_with_backoff())

        with self._transport_factory(Protocol.ICMP) as transport:
            self.measurement = MeasurementLoop(
                self.target,
                self.store,
                transport,
                delay=self.config.delay,
                expiry=self.config.expiry,
                drop_threshold=self.config.drop_threshold,
                on_stale=self.signal_stale,
            )
            self.state = State.MONITORING
            measuring = asyncio.create_task(self.measurement.run(count))
            try:
                await self._watch(measuring)
            finally:
                measuring.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await measuring

    async def _watch(self, measuring: asyncio.Task) -> None:
        while True:
            stale = asyncio.create_task(self._stale.wait())
            try:
                done, _pending = await asyncio.wait(
                    {measuring, stale}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                stale.cancel()
            if measuring in done:
                # re-raises anything unexpected from the loop
                measuring.result()
                return

            logger.info(
                "rediscovery triggered address=%s", self.target.address if self.target else None
            )
            rediscovery = asyncio.create_task(self.discover_with_backoff())
            try:
                done, _pending = await asyncio.wait(
                    {measuring, rediscovery}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                if not rediscovery.done():
                    rediscovery.cancel()
                    with contextlib.suppress(asyncio.CancelledError):
                        await rediscovery
            if rediscovery in done:
                self._adopt(rediscovery.result())
                self._stale.clear()
                self.state = State.MONITORING
            if measuring in done:
                # the loop ended while rediscovering
                measuring.result()
                return
