from __future__ import annotations

import socket
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Optional


class ICMPTypes(IntEnum):
    ECHO_REPLY_MESSAGE = 0
    DESTINATION_UNREACHABLE = 3
    ECHO_MESSAGE = 8
    TIME_TO_EXCEEDED = 11


class ICMPDestinationUnreachableCodes(IntEnum):
    NET_UNREACHABLE = 0
    HOST_UNREACHABLE = 1
    PROTOCOL_UNREACHABLE = 2
    PORT_UNREACHABLE = 3


@dataclass(frozen=True)
class ICMPErrorMessage:
    """An ICMP error together with the headers of the datagram that caused it."""
    type: int
    code: int
    protocol: int
    destination: str
    source_port: int
    destination_port: int

    @property
    def time_exceeded(self) -> bool:
        return self.type == ICMPTypes.TIME_TO_EXCEEDED


def _ip_header_length(packet: bytes, offset: int = 0) -> int:
    return (packet[offset] & 0x0F) * 4


def parse_icmp_error(packet: bytes) -> Optional[ICMPErrorMessage]:
    """
    Parse a datagram read from a raw IPv4 ICMP socket.

    Only time-exceeded and destination-unreachable messages are returned; the
    quoted original header gives back the protocol, destination and ports of
    the probe that triggered it. Anything else or anything truncated is None.
    """
    try:
        # https://datatracker.ietf.org/doc/html/rfc792
        ihl = _ip_header_length(packet)
        icmp_type, icmp_code = struct.unpack_from("!BB", packet, ihl)
        if icmp_type not in (ICMPTypes.TIME_TO_EXCEEDED, ICMPTypes.DESTINATION_UNREACHABLE):
            return None

        # 8 byte ICMP header, then the original IP header and 8 bytes of payload
        inner = ihl + 8
        inner_ihl = _ip_header_length(packet, inner)
        protocol = packet[inner + 9]
        destination = socket.inet_ntoa(packet[inner + 16:inner + 20])
        source_port, destination_port = struct.unpack_from("!HH", packet, inner + inner_ihl)
    except (IndexError, struct.error, OSError):
        return None

    return ICMPErrorMessage(
        type=icmp_type,
        code=icmp_code,
        protocol=protocol,
        destination=destination,
        source_port=source_port,
        destination_port=destination_port,
    )


@dataclass(frozen=True)
class ICMPEchoResponse:
    """
    An answer to one of our echo requests: the echo reply itself, or an ICMP
    error quoting the request (then `destination` is where it was headed).
    """
    type: int
    code: int
    id: int
    sequence: int
    destination: Optional[str] = None

    @property
    def reached(self) -> bool:
        return self.type == ICMPTypes.ECHO_REPLY_MESSAGE


def parse_echo_response(packet: bytes) -> Optional[ICMPEchoResponse]:
    """
    Parse a datagram read from a raw IPv4 ICMP socket as a response to an echo
    request. Echo replies carry the identifier and sequence in their own
    header; errors carry them in the quoted request. Anything else is None.
    """
    try:
        ihl = _ip_header_length(packet)
        icmp_type, icmp_code = struct.unpack_from("!BB", packet, ihl)
        if icmp_type == ICMPTypes.ECHO_REPLY_MESSAGE:
            ident, sequence = struct.unpack_from("!HH", packet, ihl + 4)
            return ICMPEchoResponse(icmp_type, icmp_code, ident, sequence)
        if icmp_type not in (ICMPTypes.TIME_TO_EXCEEDED, ICMPTypes.DESTINATION_UNREACHABLE):
            return None

        inner = ihl + 8
        inner_ihl = _ip_header_length(packet, inner)
        if packet[inner + 9] != socket.IPPROTO_ICMP:
            return None
        destination = socket.inet_ntoa(packet[inner + 16:inner + 20])
        quoted_type, _code, _checksum, ident, sequence = struct.unpack_from(
            "!BBHHH", packet, inner + inner_ihl
        )
    except (IndexError, struct.error, OSError):
        return None

    if quoted_type != ICMPTypes.ECHO_MESSAGE:
        return None
    return ICMPEchoResponse(icmp_type, icmp_code, ident, sequence, destination)
