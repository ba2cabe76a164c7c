"""Network-locality classification for discovery groups.

Every connection is bucketed by the address it connected from.  Devices in the
same bucket see each other in their discovery roster; devices in different
buckets never do.

Policy
------
- Private IPv4 (RFC 1918) → one fixed tag per block, regardless of subnet:
  ``LAN-10``, ``LAN-172``, ``LAN-192.168``.
- Public IPv4 → the first three octets (``"8.8.8"``), a /24 bucket.
- IPv4-mapped IPv6 (``::ffff:192.168.1.5``) → classified as the IPv4 inside.
- Unique-local and link-local IPv6 → ``LAN-v6``.
- Other IPv6 → the /64 prefix (``"2001:db8:1:2::/64"``).
- Anything unparseable → ``UNKNOWN_GROUP``.

The grouping is intentionally coarse: two unrelated households behind the same
carrier /24 end up in one group, and every device on a 10.x network shares one
group no matter how the network is subnetted.
"""

from __future__ import annotations

import ipaddress

UNKNOWN_GROUP = "unknown"
LAN_V6_GROUP = "LAN-v6"

# (network, tag), checked in order
_PRIVATE_V4_BLOCKS: tuple[tuple[ipaddress.IPv4Network, str], ...] = (
    (ipaddress.IPv4Network("10.0.0.0/8"), "LAN-10"),
    (ipaddress.IPv4Network("172.16.0.0/12"), "LAN-172"),
    (ipaddress.IPv4Network("192.168.0.0/16"), "LAN-192.168"),
)

_LOCAL_V6_BLOCKS: tuple[ipaddress.IPv6Network, ...] = (
    ipaddress.IPv6Network("fc00::/7"),
    ipaddress.IPv6Network("fe80::/10"),
)


def private_block(ip: ipaddress.IPv4Address) -> str | None:
    """Return the RFC 1918 tag for *ip*, or ``None`` if it is not private."""
    for network, tag in _PRIVATE_V4_BLOCKS:
        if ip in network:
            return tag
    return None


def parse_address(address: str) -> ipaddress.IPv4Address | ipaddress.IPv6Address | None:
    """Parse a peer address as reported by a socket or proxy header.

    Strips whitespace and an IPv6 zone id (``fe80::1%eth0``).  IPv4-mapped
    IPv6 addresses are unwrapped to plain IPv4.  Returns ``None`` for
    anything that is not an IP address.
    """
    if not isinstance(address, str):
        return None
    text = address.strip()
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1]
    text = text.split("%", 1)[0]
    try:
        ip = ipaddress.ip_address(text)
    except ValueError:
        return None
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        return ip.ipv4_mapped
    return ip


def group_key(address: str) -> str:
    """Map a peer address to its discovery group key.

    Pure and deterministic; never raises.

    >>> group_key("192.168.1.5") == group_key("192.168.50.9")
    True
    >>> group_key("8.8.8.8")
    '8.8.8'
    """
    ip = parse_address(address)
    if ip is None:
        return UNKNOWN_GROUP

    if isinstance(ip, ipaddress.IPv4Address):
        tag = private_block(ip)
        if tag is not None:
            return tag
        return ".".join(str(ip).split(".")[:3])

    if any(ip in block for block in _LOCAL_V6_BLOCKS):
        return LAN_V6_GROUP
    return str(ipaddress.IPv6Network((ip, 64), strict=False))
