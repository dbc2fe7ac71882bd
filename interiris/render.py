from __future__ import annotations

from typing import Dict, List, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from .models import HopAttempt
from .util import is_public_address

# Rendered into log records, so no colour codes.
_console = Console(color_system=None, force_terminal=False, width=100)

HEADERS = ["Hop", "Address", "Scope", "Sent", "Recv", "RTTs"]


def _fmt_ms(v: float | None) -> str:
    return f"{v * 1000:.2f}ms" if v is not None else "-"


def _group_replies(attempts: Sequence[HopAttempt]) -> Dict[str, List[float]]:
    """Replying address -> RTTs, in the order addresses first answered."""
    nodes: Dict[str, List[float]] = {}
    for a in attempts:
        if a.outcome.ok and a.outcome.address:
            nodes.setdefault(a.outcome.address, []).append(a.outcome.rtt or 0.0)
    return nodes


def format_hop_line(ttl: int, attempts: Sequence[HopAttempt], probes: int) -> str:
    """
    One log line per hop: "[  3] 100.64.0.1  4.10ms" with one "* " for every
    probe that went unanswered.
    """
    nodes = _group_replies(attempts)
    answered = sum(len(rtts) for rtts in nodes.values())
    parts = [
        f"{addr:32} {', '.join(_fmt_ms(r) for r in rtts)}" for addr, rtts in nodes.items()
    ]
    silent = min(len(attempts), probes) - answered
    if silent > 0:
        parts.append(("* " * silent).rstrip())
    return f"[{ttl:>3}] " + " | ".join(parts) if parts else f"[{ttl:>3}]"


def build_path_table(path: Dict[int, List[HopAttempt]], destination: str) -> Table:
    """Create a Rich Table of everything one discovery run saw, in TTL order."""
    t = Table(
        box=box.ASCII,
        show_edge=True,
        show_lines=False,
        title=f"path towards {destination}",
        pad_edge=False,
    )
    for h in HEADERS:
        if h in {"Hop", "Sent", "Recv"}:
            t.add_column(h, justify="right", no_wrap=True)
        else:
            t.add_column(h, justify="left")

    for ttl in sorted(path):
        attempts = path[ttl]
        nodes = _group_replies(attempts) or {"*": []}
        for n, (addr, rtts) in enumerate(nodes.items()):
            scope = "-" if addr == "*" else ("public" if is_public_address(addr) else "private")
            t.add_row(
                str(ttl) if n == 0 else "",
                addr,
                scope,
                str(len(attempts)) if n == 0 else "",
                str(len(rtts)),
                ", ".join(_fmt_ms(r) for r in rtts) or "-",
            )
    return t


def render_table(table: Table) -> str:
    """Render a Rich Table to a string for logging."""
    with _console.capture() as cap:
        _console.print(table)
    return cap.get()
