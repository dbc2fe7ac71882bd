from __future__ import annotations

import contextlib
import ipaddress
import socket
from typing import Optional

# Ranges that are still "inside" the local network. Carrier-grade NAT space
# (100.64.0.0/10) belongs to the ISP and is deliberately not listed.
LOCAL_NETWORKS = tuple(
    ipaddress.ip_network(n)
    for n in (
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "169.254.0.0/16",
        "127.0.0.0/8",
        "0.0.0.0/8",
        "fc00::/7",
        "fe80::/10",
        "::1/128",
        "::/128",
    )
)


def is_ip_literal(s: str) -> bool:
    try:
        socket.inet_pton(socket.AF_INET, s)
        return True
    except OSError:
        pass
    with contextlib.suppress(OSError, ValueError):
        socket.inet_pton(socket.AF_INET6, s)
        return True
    return False


def is_public_address(address: str) -> bool:
    """True when address lies outside the private, link-local and loopback ranges."""
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    return not any(ip.version == net.version and ip in net for net in LOCAL_NETWORKS)


def resolve_host(target: str) -> Optional[str]:
    """Resolve target to a numeric IPv4 address, or None."""
    if is_ip_literal(target):
        return target if ":" not in target else None
    try:
        infos = socket.getaddrinfo(target, None, family=socket.AF_INET)
    except socket.gaierror:
        return None
    for _family, _type, _proto, _canon, sockaddr in infos:
        return sockaddr[0]
    return None
