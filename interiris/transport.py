from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
import os
import socket
from abc import ABC, abstractmethod
from typing import Callable, Optional, Tuple, TypeVar

from icmplib import (
    AsyncSocket,
    ICMPLibError,
    ICMPRequest,
    ICMPv4Socket,
    SocketPermissionError,
)

from .config import ProbeConfig, Protocol
from .errors import ConfigurationError, TransportError
from .models import Outcome
from .packet import ICMPEchoResponse, ICMPErrorMessage, parse_echo_response, parse_icmp_error

logger = logging.getLogger(__name__)

# Large enough to reach any first hop directly.
UNRESTRICTED_HOP_LIMIT = 64

_PRIVILEGE_HINT = "raw sockets need root or CAP_NET_RAW (setcap cap_net_raw=ep)"

# Each transport gets its own ICMP identifier so that concurrent handles in
# one process never claim each other's replies.
_IDENTIFIERS = itertools.count(os.getpid())

T = TypeVar("T")


async def _receive_matching(
    sock: socket.socket,
    parse: Callable[[bytes], Optional[T]],
    match: Callable[[T], bool],
    deadline: float,
) -> Optional[Tuple[T, str, float]]:
    """
    Read a raw ICMP socket until deadline for a packet that parses and matches;
    returns (message, source, received_at) with the source taken from recvfrom.
    """
    loop = asyncio.get_running_loop()
    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            return None
        try:
            data, (source, _port) = await asyncio.wait_for(
                loop.sock_recvfrom(sock, 1500), remaining
            )
        except asyncio.TimeoutError:
            return None
        except OSError as e:
            raise TransportError(f"receive failed: {e}") from e
        received = loop.time()
        message = parse(data)
        if message is not None and match(message):
            return message, source, received


class ProbeTransport(ABC):
    """
    Sends a single probe with a given hop limit and waits for its answer.

    Subclasses implement `_probe` and raise TransportError for socket failures;
    `send_probe` turns those into a failed Outcome so callers never see them.
    """

    protocol: Protocol

    def open(self) -> None:
        """Acquire sockets. Raises ConfigurationError when privilege is missing."""

    def close(self) -> None:
        pass

    def __enter__(self) -> "ProbeTransport":
        self.open()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    async def send_probe(self, destination: str, hop_limit: int, timeout: float) -> Outcome:
        try:
            return await self._probe(destination, hop_limit, timeout)
        except TransportError as e:
            logger.warning(
                "transport error proto=%s dest=%s ttl=%d error=%s",
                self.protocol.value, destination, hop_limit, e,
            )
            return Outcome.transport_error(str(e))

    @abstractmethod
    async def _probe(self, destination: str, hop_limit: int, timeout: float) -> Outcome:
        raise NotImplementedError


class IcmpTransport(ProbeTransport):
    """
    ICMP echo requests sent with icmplib. Replies are read from the same raw
    socket, so the IP header is present and the sender comes from recvfrom.
    """

    protocol = Protocol.ICMP

    def __init__(self) -> None:
        self._sock: Optional[AsyncSocket] = None
        self._id = next(_IDENTIFIERS) & 0xFFFF
        self._sequence = 0

    def open(self) -> None:
        if self._sock is not None:
            return
        try:
            self._sock = AsyncSocket(ICMPv4Socket(privileged=True))
        except SocketPermissionError as e:
            raise ConfigurationError(f"cannot open ICMP socket: {_PRIVILEGE_HINT}") from e
        except ICMPLibError as e:
            raise ConfigurationError(f"cannot open ICMP socket: {e}") from e

    def close(self) -> None:
        if self._sock is not None:
            self._sock.close()
            self._sock = None

    async def _probe(self, destination: str, hop_limit: int, timeout: float) -> Outcome:
        if self._sock is None:
            raise TransportError("transport is not open")
        loop = asyncio.get_running_loop()
        self._sequence = (self._sequence + 1) & 0xFFFF
        request = ICMPRequest(
            destination=destination,
            id=self._id,
            sequence=self._sequence,
            ttl=hop_limit,
        )
        sent = loop.time()
        try:
            self._sock.send(request)
        except ICMPLibError as e:
            raise TransportError(str(e)) from e

        # AsyncSocket.receive drops the sender address, so read the raw socket
        found = await _receive_matching(
            self._sock.sock, parse_echo_response, self._matcher(request), sent + timeout
        )
        if found is None:
            return Outcome.timed_out()
        response, source, received = found
        return Outcome.replied(source, received - sent, reached=response.reached)

    @staticmethod
    def _matcher(request: ICMPRequest) -> Callable[[ICMPEchoResponse], bool]:
        def match(response: ICMPEchoResponse) -> bool:
            return (
                response.id == request.id
                and response.sequence == request.sequence
                and response.destination in (None, request.destination)
            )
        return match


class _RawListenerTransport(ProbeTransport):
    """
    Base for UDP and TCP probes: the probe leaves through an ordinary socket
    with its TTL lowered, routers answer on a raw ICMP socket.
    """

    ip_proto: int

    def __init__(self, port: int) -> None:
        self._port = port
        self._icmp: Optional[socket.socket] = None

    def open(self) -> None:
        if self._icmp is not None:
            return
        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_RAW, socket.IPPROTO_ICMP)
        except PermissionError as e:
            raise ConfigurationError(f"cannot open raw ICMP socket: {_PRIVILEGE_HINT}") from e
        except OSError as e:
            raise ConfigurationError(f"cannot open raw ICMP socket: {e}") from e
        sock.setblocking(False)
        self._icmp = sock

    def close(self) -> None:
        if self._icmp is not None:
            self._icmp.close()
            self._icmp = None

    def _probe_socket(self, kind: int, hop_limit: int) -> Tuple[socket.socket, int]:
        sock = socket.socket(socket.AF_INET, kind)
        try:
            sock.setblocking(False)
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_TTL, hop_limit)
            sock.bind(("", 0))
        except OSError as e:
            sock.close()
            raise TransportError(f"cannot prepare probe socket: {e}") from e
        return sock, sock.getsockname()[1]

    async def _listen(
        self,
        match: Callable[[ICMPErrorMessage], bool],
        deadline: float,
    ) -> Optional[Tuple[ICMPErrorMessage, str, float]]:
        """Wait until deadline for a matching ICMP error; (message, source, received_at)."""
        if self._icmp is None:
            raise TransportError("transport is not open")
        return await _receive_matching(self._icmp, parse_icmp_error, match, deadline)

    def _matcher(self, destination: str, port: int) -> Callable[[ICMPErrorMessage], bool]:
        def match(message: ICMPErrorMessage) -> bool:
            return (
                message.protocol == self.ip_proto
                and message.source_port == port
                and message.destination == destination
            )
        return match


class UdpTransport(_RawListenerTransport):
    """UDP datagrams to a fixed port; the destination answers port-unreachable."""

    protocol = Protocol.UDP
    ip_proto = socket.IPPROTO_UDP
    payload = b"\x00" * 32

    async def _probe(self, destination: str, hop_limit: int, timeout: float) -> Outcome:
        loop = asyncio.get_running_loop()
        sock, port = self._probe_socket(socket.SOCK_DGRAM, hop_limit)
        with sock:
            sent = loop.time()
            try:
                sock.sendto(self.payload, (destination, self._port))
            except OSError as e:
                raise TransportError(f"send failed: {e}") from e
            found = await self._listen(self._matcher(destination, port), sent + timeout)

        if found is None:
            return Outcome.timed_out()
        message, source, received = found
        reached = not message.time_exceeded and source == destination
        return Outcome.replied(source, received - sent, reached=reached)


class TcpTransport(_RawListenerTransport):
    """
    TCP SYN through a non-blocking connect. A completed or refused connection
    means the destination answered; routers report TTL expiry over ICMP.
    """

    protocol = Protocol.TCP
    ip_proto = socket.IPPROTO_TCP

    async def _probe(self, destination: str, hop_limit: int, timeout: float) -> Outcome:
        loop = asyncio.get_running_loop()
        sock, port = self._probe_socket(socket.SOCK_STREAM, hop_limit)
        with sock:
            sent = loop.time()
            connect = asyncio.ensure_future(loop.sock_connect(sock, (destination, self._port)))
            listen = asyncio.ensure_future(
                self._listen(self._matcher(destination, port), sent + timeout)
            )
            try:
                done, _pending = await asyncio.wait(
                    {connect, listen},
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )
                received = loop.time()
            finally:
                for task in (connect, listen):
                    task.cancel()
                await asyncio.gather(connect, listen, return_exceptions=True)

        if listen in done and not listen.cancelled():
            found = listen.result()
            if found is not None:
                message, source, received = found
                reached = not message.time_exceeded and source == destination
                return Outcome.replied(source, received - sent, reached=reached)

        if connect in done and not connect.cancelled():
            error = connect.exception()
            if error is None or isinstance(error, ConnectionRefusedError):
                return Outcome.replied(destination, received - sent, reached=True)
            raise TransportError(f"connect failed: {error}")

        return Outcome.timed_out()


def create_transport(protocol: Protocol, config: ProbeConfig) -> ProbeTransport:
    if protocol is Protocol.ICMP:
        return IcmpTransport()
    if config.probe_port is None:
        raise ConfigurationError(f"--probe-port is required for {protocol.value} probes")
    if protocol is Protocol.UDP:
        return UdpTransport(config.probe_port)
    return TcpTransport(config.probe_port)


def check_privileges(config: ProbeConfig) -> None:
    """Open and close every transport the process will need; fail fast."""
    protocols = {config.protocol, Protocol.ICMP}
    for protocol in protocols:
        transport = create_transport(protocol, config)
        with contextlib.closing(transport):
            transport.open()
