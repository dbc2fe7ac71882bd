from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Dict, List, Optional, Tuple

from .config import Protocol
from .errors import TransportError
from .models import Outcome
from .transport import ProbeTransport

Responder = Callable[[str, int], Outcome]


class FakeTransport(ProbeTransport):
    """
    In-memory transport driven by a script of outcomes.

    script: dict[hop_limit] -> list of Outcomes (or TransportError instances
    to raise) returned one per call. Once a hop's list is used up, or for
    unscripted hops, `responder(dest, ttl)` is asked; without a responder the
    probe times out.

    A replied Outcome whose rtt exceeds the timeout is turned into a timeout
    after waiting the full timeout, like a real late reply.
    """

    protocol = Protocol.ICMP

    def __init__(
        self,
        script: Optional[Dict[int, List[Outcome]]] = None,
        responder: Optional[Responder] = None,
        *,
        simulate_rtt: bool = False,
    ) -> None:
        self.script = {k: deque(v) for k, v in (script or {}).items()}
        self.responder = responder
        self.simulate_rtt = simulate_rtt
        self.calls: List[Tuple[str, int, float, float]] = []  # (dest, ttl, timeout, sent_at)
        self.opened = False
        self.closed = False

    def open(self) -> None:
        self.opened = True

    def close(self) -> None:
        self.closed = True

    def _next(self, destination: str, hop_limit: int) -> Outcome:
        dq = self.script.get(hop_limit)
        if dq:
            return dq.popleft()
        if self.responder is not None:
            return self.responder(destination, hop_limit)
        return Outcome.timed_out()

    async def _probe(self, destination: str, hop_limit: int, timeout: float) -> Outcome:
        loop = asyncio.get_running_loop()
        self.calls.append((destination, hop_limit, timeout, loop.time()))
        outcome = self._next(destination, hop_limit)
        if isinstance(outcome, TransportError):
            raise outcome
        if outcome.ok and outcome.rtt is not None and outcome.rtt > timeout:
            await asyncio.sleep(timeout)
            return Outcome.timed_out()
        if self.simulate_rtt:
            await asyncio.sleep(outcome.rtt if outcome.ok and outcome.rtt else timeout)
        else:
            await asyncio.sleep(0)
        return outcome

    @property
    def hop_limits(self) -> List[int]:
        return [ttl for _dest, ttl, _timeout, _sent in self.calls]
