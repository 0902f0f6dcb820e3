"""IP address and domain classification helpers."""

from __future__ import annotations

from collections.abc import Iterable
from ipaddress import IPv4Address, IPv4Network, IPv6Address, IPv6Network, ip_address, ip_network

from bson.binary import UUID_SUBTYPE, Binary

IPAddress = IPv4Address | IPv6Address
IPNetwork = IPv4Network | IPv6Network

PUBLIC_NETWORK_UUID = Binary(b"\xff" * 16, UUID_SUBTYPE)
PUBLIC_NETWORK_NAME = "Public"

UNKNOWN_PRIVATE_NETWORK_UUID = Binary(b"\xff" * 15 + b"\xfe", UUID_SUBTYPE)
UNKNOWN_PRIVATE_NETWORK_NAME = "Unknown Private"

_LOOPBACK_V4 = IPv4Network("127.0.0.0/8")
_LINK_LOCAL_V4 = IPv4Network("169.254.0.0/16")
_LINK_LOCAL_MULTICAST_V4 = IPv4Network("224.0.0.0/24")
_LINK_LOCAL_V6 = IPv6Network("fe80::/10")


def _as_address(ip: str | IPAddress) -> IPAddress:
    address = ip if isinstance(ip, (IPv4Address, IPv6Address)) else ip_address(ip)
    if isinstance(address, IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def _parse_cidr(text: str) -> IPNetwork:
    if "/" not in text:
        raise ValueError(f"missing prefix length in {text!r}")
    return ip_network(text, strict=False)


def parse_subnets(subnets: Iterable[str]) -> list[IPNetwork]:
    """Parse CIDR ranges; a bare address becomes a /32 range."""
    parsed = []
    for entry in subnets:
        try:
            block = _parse_cidr(entry)
        except ValueError:
            try:
                block = _parse_cidr(entry + "/32")
            except ValueError as exc:
                raise ValueError(f"Error parsing CIDR entry: {entry!r}") from exc
        parsed.append(block)
    return parsed


PRIVATE_IP_BLOCKS = tuple(
    parse_subnets(
        [
            "10.0.0.0/8",
            "172.16.0.0/12",
            "192.168.0.0/16",
            "fc00::/7",
        ]
    )
)


def _is_loopback(address: IPAddress) -> bool:
    if isinstance(address, IPv4Address):
        return address in _LOOPBACK_V4
    return address == IPv6Address("::1")


def _is_link_local_unicast(address: IPAddress) -> bool:
    if isinstance(address, IPv4Address):
        return address in _LINK_LOCAL_V4
    return address in _LINK_LOCAL_V6


def _is_link_local_multicast(address: IPAddress) -> bool:
    if isinstance(address, IPv4Address):
        return address in _LINK_LOCAL_MULTICAST_V4
    packed = address.packed
    return packed[0] == 0xFF and packed[1] & 0x0F == 0x02


def ip_is_publicly_routable(ip: str | IPAddress) -> bool:
    """Check whether an address is publicly routable."""
    address = _as_address(ip)
    if _is_loopback(address) or _is_link_local_unicast(address) or _is_link_local_multicast(address):
        return False
    return not contains_ip(PRIVATE_IP_BLOCKS, address)


def contains_ip(subnets: Iterable[IPNetwork], ip: str | IPAddress) -> bool:
    """Check whether any of the subnets contains the address."""
    address = _as_address(ip)
    return any(address in block for block in subnets)


def contains_domain(domains: Iterable[str], host: str) -> bool:
    """Check whether the host matches any exact or wildcard domain entry."""
    for entry in domains:
        if "*" in entry:
            wildcard = entry.removeprefix("*")
            if host.endswith(wildcard):
                return True
            if host == wildcard.removeprefix("."):
                return True
        elif host == entry:
            return True
    return False


def is_ip(address: str) -> bool:
    """Return True if the text is a valid IPv4 or IPv6 address."""
    if "%" in address:
        return False
    try:
        ip_address(address)
    except ValueError:
        return False
    return True


def is_ipv4(address: str) -> bool:
    """Treat an address as IPv4 when it holds fewer than two colons."""
    return address.count(":") < 2


def ipv4_to_binary(ip: str | IPAddress) -> int:
    """Integer value of the last four bytes of the address."""
    address = ip if isinstance(ip, (IPv4Address, IPv6Address)) else ip_address(ip)
    return int.from_bytes(address.packed[-4:], "big")