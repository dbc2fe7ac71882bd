from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Optional


class OutcomeKind(str, enum.Enum):
    REPLIED = "replied"
    TIMED_OUT = "timed_out"
    TRANSPORT_ERROR = "transport_error"


@dataclass(frozen=True)
class Outcome:
    """
    Result of a single probe.

    For REPLIED, `address` is the responder and `reached` says whether the
    responder was the probed destination itself (echo reply, port unreachable,
    TCP answer) rather than an intermediate router reporting TTL expiry.
    """
    kind: OutcomeKind
    address: Optional[str] = None
    rtt: Optional[float] = None
    reached: bool = False
    error: Optional[str] = None

    @classmethod
    def replied(cls, address: str, rtt: float, reached: bool = False) -> "Outcome":
        return cls(OutcomeKind.REPLIED, address=address, rtt=rtt, reached=reached)

    @classmethod
    def timed_out(cls) -> "Outcome":
        return cls(OutcomeKind.TIMED_OUT)

    @classmethod
    def transport_error(cls, error: str) -> "Outcome":
        return cls(OutcomeKind.TRANSPORT_ERROR, error=error)

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.REPLIED


@dataclass(frozen=True)
class HopAttempt:
    hop_limit: int
    sent_at: float
    outcome: Outcome


@dataclass(frozen=True)
class DiscoveredTarget:
    address: str
    hop_limit: int


@dataclass(frozen=True)
class Sample:
    seq: int
    latency: Optional[float] = None

    @property
    def dropped(self) -> bool:
        return self.latency is None
