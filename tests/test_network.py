"""Tests for network-locality classification."""

from __future__ import annotations

import ipaddress

import pytest

from rendezvous.relay.network import (
    LAN_V6_GROUP,
    UNKNOWN_GROUP,
    group_key,
    parse_address,
    private_block,
)


# ---------------------------------------------------------------------------
# Private IPv4 blocks
# ---------------------------------------------------------------------------

class TestPrivateBlocks:
    def test_same_192_168_block_any_subnet(self):
        assert group_key("192.168.1.5") == group_key("192.168.50.9")
        assert group_key("192.168.1.5") == "LAN-192.168"

    def test_whole_10_block(self):
        assert group_key("10.0.0.1") == group_key("10.255.255.254") == "LAN-10"

    def test_172_16_to_31(self):
        assert group_key("172.16.0.1") == "LAN-172"
        assert group_key("172.31.255.1") == "LAN-172"

    def test_172_outside_private_range_is_public(self):
        assert group_key("172.15.1.1") == "172.15.1"
        assert group_key("172.32.1.1") == "172.32.1"

    def test_blocks_are_distinct(self):
        keys = {group_key("10.1.1.1"), group_key("172.20.1.1"), group_key("192.168.1.1")}
        assert len(keys) == 3

    def test_private_block_helper(self):
        assert private_block(ipaddress.IPv4Address("10.9.9.9")) == "LAN-10"
        assert private_block(ipaddress.IPv4Address("8.8.8.8")) is None


# ---------------------------------------------------------------------------
# Public IPv4
# ---------------------------------------------------------------------------

class TestPublicIPv4:
    def test_first_three_octets(self):
        assert group_key("8.8.8.8") == "8.8.8"
        assert group_key("8.8.4.4") == "8.8.4"

    def test_different_slash24_differ(self):
        assert group_key("8.8.8.8") != group_key("8.8.4.4")

    def test_same_slash24_share(self):
        assert group_key("203.0.113.5") == group_key("203.0.113.200")

    def test_deterministic(self):
        assert group_key("198.51.100.7") == group_key("198.51.100.7")


# ---------------------------------------------------------------------------
# IPv6 and odd input
# ---------------------------------------------------------------------------

class TestIPv6:
    def test_ipv4_mapped_is_unwrapped(self):
        assert group_key("::ffff:192.168.1.5") == "LAN-192.168"
        assert group_key("::ffff:8.8.8.8") == "8.8.8"

    def test_unique_local_and_link_local(self):
        assert group_key("fd12:3456:789a:1::1") == LAN_V6_GROUP
        assert group_key("fe80::1%eth0") == LAN_V6_GROUP

    def test_global_uses_slash64(self):
        assert group_key("2001:db8:1:2::5") == "2001:db8:1:2::/64"
        assert group_key("2001:db8:1:2:aaaa::1") == group_key("2001:db8:1:2::5")
        assert group_key("2001:db8:1:3::5") != group_key("2001:db8:1:2::5")

    def test_bracketed(self):
        assert group_key("[2001:db8:1:2::5]") == "2001:db8:1:2::/64"


class TestMalformed:
    @pytest.mark.parametrize("address", ["", "not-an-ip", "1.2.3", "999.1.1.1", "   "])
    def test_fallback_key(self, address):
        assert group_key(address) == UNKNOWN_GROUP

    def test_none_does_not_raise(self):
        assert group_key(None) == UNKNOWN_GROUP  # type: ignore[arg-type]

    def test_whitespace_is_stripped(self):
        assert group_key(" 192.168.0.2 ") == "LAN-192.168"

    def test_parse_address_returns_none(self):
        assert parse_address("garbage") is None
