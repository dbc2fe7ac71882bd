# tests/test_util.py
import pytest

from interiris.util import is_ip_literal, is_public_address, resolve_host


@pytest.mark.parametrize("addr", [
    "10.0.0.1",
    "10.255.255.255",
    "172.16.0.1",
    "172.31.0.1",
    "192.168.0.1",
    "169.254.1.1",
    "127.0.0.1",
    "fd00::1",
    "fe80::1",
    "::1",
    "::ffff:192.168.1.1",
])
def test_local_addresses_are_not_public(addr):
    assert not is_public_address(addr)


@pytest.mark.parametrize("addr", [
    "1.1.1.1",
    "8.8.4.4",
    "172.32.0.1",
    "100.64.0.1",
    "81.2.69.142",
    "2001:4860:4860::8888",
])
def test_public_addresses(addr):
    assert is_public_address(addr)


def test_garbage_is_not_public():
    assert not is_public_address("not-an-address")
    assert not is_public_address("")


def test_ip_literal():
    assert is_ip_literal("1.1.1.1")
    assert is_ip_literal("::1")
    assert not is_ip_literal("example.invalid")


def test_resolve_literal_without_dns():
    assert resolve_host("9.9.9.9") == "9.9.9.9"
    assert resolve_host("::1") is None
