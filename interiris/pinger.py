from __future__ import annotations

import asyncio
import logging
import math
from typing import Callable, Optional

from .models import DiscoveredTarget, Outcome, Sample
from .stats import MetricsStore
from .transport import UNRESTRICTED_HOP_LIMIT, ProbeTransport

logger = logging.getLogger(__name__)


def classify(seq: int, outcome: Outcome) -> Sample:
    """Only an answer from the target itself is latency; everything else is a drop."""
    if outcome.ok and outcome.reached and outcome.rtt is not None:
        return Sample(seq=seq, latency=outcome.rtt)
    return Sample(seq=seq)


class MeasurementLoop:
    """
    Pings the discovered first hop on a fixed cadence and feeds the store.

    One probe is in flight at a time. Ticks are `delay` apart measured from the
    start of the previous probe; a tick that would fire while a probe is still
    waiting out its expiry is skipped rather than queued.

    After `drop_threshold` consecutive drops `on_stale` is called once for that
    streak. The loop keeps probing the old target until `retarget` is called.
    """

    def __init__(
        self,
        target: DiscoveredTarget,
        store: MetricsStore,
        transport: ProbeTransport,
        *,
        delay: float,
        expiry: float,
        drop_threshold: int,
        on_stale: Optional[Callable[[], None]] = None,
    ) -> None:
        self._target = target
        self._store = store
        self._transport = transport
        self._delay = delay
        self._expiry = expiry
        self._drop_threshold = drop_threshold
        self._on_stale = on_stale
        self.seq = 0
        self.consecutive_drops = 0
        self.skipped_ticks = 0

    @property
    def target(self) -> DiscoveredTarget:
        return self._target

    def retarget(self, target: DiscoveredTarget) -> None:
        if target.address != self._target.address:
            logger.info(
                "monitoring target changed old=%s new=%s hop_limit=%d",
                self._target.address, target.address, target.hop_limit,
            )
        self._target = target
        self.consecutive_drops = 0

    def _record(self, sample: Sample) -> None:
        if sample.dropped:
            self._store.record_drop()
            self.consecutive_drops += 1
            logger.debug("seq %d timeout", sample.seq)
            if self.consecutive_drops == self._drop_threshold:
                logger.warning(
                    "target may be stale address=%s consecutive_drops=%d",
                    self._target.address, self.consecutive_drops,
                )
                if self._on_stale is not None:
                    self._on_stale()
        else:
            self._store.record_latency(sample.latency)
            self.consecutive_drops = 0
            logger.debug("seq %d RTT %.2fms", sample.seq, sample.latency * 1000)

    async def tick(self) -> Sample:
        """Send one probe to the current target and record the result."""
        address = self._target.address
        outcome = await self._transport.send_probe(address, UNRESTRICTED_HOP_LIMIT, self._expiry)
        sample = classify(self.seq, outcome)
        self.seq += 1
        self._record(sample)
        return sample

    async def run(self, count: Optional[int] = None) -> None:
        """Probe until cancelled, or for `count` ticks."""
        loop = asyncio.get_running_loop()
        logger.info(
            "starting ping monitoring address=%s delay=%.3fs expiry=%.3fs",
            self._target.address, self._delay, self._expiry,
        )
        done = 0
        while count is None or done < count:
            started = loop.time()
            await self.tick()
            done += 1
            if count is not None and done >= count:
                break

            now = loop.time()
            ticks = 1
            if self._delay > 0 and now - started > self._delay:
                ticks = math.ceil((now - started) / self._delay)
                self.skipped_ticks += ticks - 1
                logger.debug("skipped %d tick(s) waiting on seq %d", ticks - 1, self.seq - 1)
            next_tick = started + ticks * self._delay
            # sleep can wake a hair early; never start the next probe before its tick
            while loop.time() < next_tick:
                await asyncio.sleep(next_tick - loop.time())
            if self._delay <= 0:
                await asyncio.sleep(0)
