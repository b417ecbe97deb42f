"""Source-address masking for audit entries."""

from __future__ import annotations

import ipaddress

IPV4_MASK = "xxx"
IPV6_SUFFIX = "::xxxx"
UNPARSEABLE = "unknown"


def mask_ip(ip: str | None) -> str | None:
    """
    Reduce a client address to its network part.

    IPv4 keeps three octets (``203.0.113.xxx``); IPv6 keeps the first four
    groups (``2001:db8:1:2::xxxx``); an IPv4-mapped IPv6 address is masked as
    IPv4 and re-wrapped (``::ffff:203.0.113.xxx``). Anything unparseable is
    replaced wholesale.
    """
    if not ip:
        return None
    candidate = ip.strip()
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]

    try:
        address = ipaddress.ip_address(candidate.split("%", 1)[0])
    except ValueError:
        return UNPARSEABLE

    if isinstance(address, ipaddress.IPv4Address):
        return _mask_v4(address)
    if address.ipv4_mapped is not None:
        return f"::ffff:{_mask_v4(address.ipv4_mapped)}"

    groups = address.exploded.split(":")[:4]
    return ":".join(format(int(group, 16), "x") for group in groups) + IPV6_SUFFIX


def _mask_v4(address: ipaddress.IPv4Address) -> str:
    octets = str(address).split(".")
    return ".".join(octets[:3] + [IPV4_MASK])
