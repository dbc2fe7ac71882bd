from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import os
import signal
from typing import List, Optional

from rich.console import Console
from rich.logging import RichHandler

from .config import (
    DEFAULT_COUNT,
    DEFAULT_DELAY_MS,
    DEFAULT_DROP_THRESHOLD,
    DEFAULT_EXPIRY_MS,
    DEFAULT_LIMIT,
    DEFAULT_METRICS_ADDR,
    DEFAULT_METRICS_PORT,
    DEFAULT_TRACE_TARGET,
    ProbeConfig,
    Protocol,
    build_config,
)
from .errors import ConfigurationError
from .export import serve_metrics
from .stats import MetricsStore
from .supervisor import Supervisor
from .transport import check_privileges

logger = logging.getLogger("interiris")

LOG_LEVEL_ENV = "INTERIRIS_LOG_LEVEL"


# ---------- logging ----------

def setup_logging(level: str) -> None:
    handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[handler],
        force=True,
    )


# ---------- main async loop ----------

async def monitor(config: ProbeConfig, store: MetricsStore) -> None:
    """Run the supervisor until SIGINT/SIGTERM."""
    supervisor = Supervisor(config, store)
    task = asyncio.create_task(supervisor.run())

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(sig, task.cancel)

    try:
        await task
    except asyncio.CancelledError:
        logger.info("shutting down")


# ---------- CLI ----------

def build_argparser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        prog="interiris",
        description=(
            "Find the first hop outside your network and export the latency "
            "to it as Prometheus metrics."
        ),
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    ap.add_argument(
        "--proto", "-p", default=Protocol.ICMP.value,
        help="Protocol to use to find first public IP: ICMP, UDP, or TCP",
    )
    ap.add_argument(
        "--probe-port", "-P", type=int, default=None,
        help="Port the TCP or UDP trace probe will connect to. Required for TCP or UDP",
    )
    ap.add_argument("--count", "-c", type=int, default=DEFAULT_COUNT,
                    help="Retries while tracing to first public IP")
    ap.add_argument("--delay", "-d", type=int, default=DEFAULT_DELAY_MS,
                    help="Time between monitoring pings (milliseconds)")
    ap.add_argument("--limit", "-l", type=int, default=DEFAULT_LIMIT,
                    help="Max network hops before giving up finding a public IP")
    ap.add_argument("--expiry", "-e", type=int, default=DEFAULT_EXPIRY_MS,
                    help="Max time to wait for a network reply (milliseconds)")
    ap.add_argument("--target", "-t", default=DEFAULT_TRACE_TARGET,
                    help="Host or IPv4 address to trace towards")
    ap.add_argument("--drop-threshold", type=int, default=DEFAULT_DROP_THRESHOLD,
                    help="Consecutive dropped pings before looking for the first hop again")
    ap.add_argument("--metrics-port", type=int, default=DEFAULT_METRICS_PORT,
                    help="Port serving Prometheus metrics")
    ap.add_argument("--metrics-addr", default=DEFAULT_METRICS_ADDR,
                    help="Address serving Prometheus metrics")
    ap.add_argument("--log-level", default=os.environ.get(LOG_LEVEL_ENV, "INFO"),
                    choices=["DEBUG", "INFO", "WARNING", "ERROR"], type=str.upper,
                    help=f"Log verbosity (also ${LOG_LEVEL_ENV})")
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_argparser().parse_args(argv)
    setup_logging(args.log_level)

    try:
        config = build_config(
            proto=args.proto,
            probe_port=args.probe_port,
            count=args.count,
            delay_ms=args.delay,
            limit=args.limit,
            expiry_ms=args.expiry,
            target=args.target,
            drop_threshold=args.drop_threshold,
            metrics_port=args.metrics_port,
            metrics_addr=args.metrics_addr,
        )
    except ConfigurationError as e:
        logger.error("configuration error: %s", e)
        return 2

    try:
        check_privileges(config)
    except ConfigurationError as e:
        logger.error("configuration error: %s", e)
        return 1

    store = MetricsStore()
    try:
        serve_metrics(store, config.metrics_port, config.metrics_addr)
    except OSError as e:
        logger.error("cannot serve metrics on %s:%d: %s", config.metrics_addr, config.metrics_port, e)
        return 1

    try:
        asyncio.run(monitor(config, store))
    except KeyboardInterrupt:
        # graceful stop on Ctrl+C
        return 130
    except ConfigurationError as e:
        logger.error("configuration error: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
