from __future__ import annotations

import asyncio
import logging
from typing import Dict, List

from .config import ProbeConfig
from .errors import DiscoveryFailed
from .models import DiscoveredTarget, HopAttempt, OutcomeKind
from .render import build_path_table, format_hop_line, render_table
from .transport import ProbeTransport
from .util import is_public_address

logger = logging.getLogger(__name__)

NO_PUBLIC_HOP = "no public hop found within hop limit"


async def discover(config: ProbeConfig, transport: ProbeTransport) -> DiscoveredTarget:
    """
    Walk the hop limit up from 1 towards `config.trace_target` and return the
    first hop whose address is public.

    At each hop limit up to `config.count` probes are sent. The first reply ends
    the retries for that hop: a public responder is accepted, a private one is
    rejected and the next hop limit is tried. Timeouts and transport errors just
    use up attempts. Raises DiscoveryFailed once `config.limit` is exhausted.
    """
    loop = asyncio.get_running_loop()
    destination = config.trace_target
    path: Dict[int, List[HopAttempt]] = {}

    logger.info(
        "discovery started proto=%s target=%s limit=%d count=%d",
        config.protocol.value, destination, config.limit, config.count,
    )

    try:
        for ttl in range(1, config.limit + 1):
            attempts = path.setdefault(ttl, [])
            for _ in range(config.count):
                sent_at = loop.time()
                outcome = await transport.send_probe(destination, ttl, config.expiry)
                attempts.append(HopAttempt(hop_limit=ttl, sent_at=sent_at, outcome=outcome))
                if outcome.kind is OutcomeKind.REPLIED:
                    break

            logger.info("%s", format_hop_line(ttl, attempts, config.count))

            reply = next((a.outcome for a in attempts if a.outcome.ok), None)
            if reply is None:
                continue
            if is_public_address(reply.address):
                target = DiscoveredTarget(address=reply.address, hop_limit=ttl)
                logger.info(
                    "discovery succeeded address=%s hop_limit=%d", target.address, ttl
                )
                return target
            if reply.reached:
                # the trace target itself answered from inside the network
                raise DiscoveryFailed(
                    f"reached {reply.address} at hop {ttl} without passing a public hop"
                )
            logger.debug("rejecting private hop address=%s hop_limit=%d", reply.address, ttl)

        raise DiscoveryFailed(NO_PUBLIC_HOP)
    except DiscoveryFailed as e:
        logger.warning("discovery failed reason=%s", e.reason)
        raise
    finally:
        if path and logger.isEnabledFor(logging.DEBUG):
            logger.debug("discovered path:\n%s", render_table(build_path_table(path, destination)))
