"""Network-aware IP address identities used across the analysis modules."""

from __future__ import annotations

import uuid
from collections.abc import Iterable, Iterator, Sequence
from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv6Address, ip_address

from bson.binary import UUID_SUBTYPE, Binary

from rita.netutil import (
    PUBLIC_NETWORK_NAME,
    PUBLIC_NETWORK_UUID,
    UNKNOWN_PRIVATE_NETWORK_NAME,
    UNKNOWN_PRIVATE_NETWORK_UUID,
    ip_is_publicly_routable,
)


def _normalize(ip: str | IPv4Address | IPv6Address) -> IPv4Address | IPv6Address:
    address = ip if isinstance(ip, (IPv4Address, IPv6Address)) else ip_address(ip)
    if isinstance(address, IPv6Address) and address.ipv4_mapped is not None:
        return address.ipv4_mapped
    return address


def _uuid_key(network_uuid: Binary) -> bytes:
    return bytes([network_uuid.subtype]) + bytes(network_uuid)


@dataclass(frozen=True)
class UniqueIP:
    """An IP bound to a network UUID; the network name does not affect equality."""

    ip: str
    network_uuid: Binary
    network_name: str = field(default="", compare=False)

    @classmethod
    def from_address(cls, ip, agent_uuid: str, agent_name: str) -> UniqueIP:
        """Build a UniqueIP, assigning the public or agent network as appropriate."""
        address = _normalize(ip)
        text = str(address)
        if ip_is_publicly_routable(address):
            return cls(text, PUBLIC_NETWORK_UUID, PUBLIC_NETWORK_NAME)
        if not agent_uuid or not agent_name:
            return cls(text, UNKNOWN_PRIVATE_NETWORK_UUID, UNKNOWN_PRIVATE_NETWORK_NAME)
        try:
            parsed = uuid.UUID(agent_uuid)
        except ValueError:
            return cls(text, UNKNOWN_PRIVATE_NETWORK_UUID, UNKNOWN_PRIVATE_NETWORK_NAME)
        return cls(text, Binary(parsed.bytes, UUID_SUBTYPE), agent_name)

    def equal(self, other: UniqueIP) -> bool:
        """True if both have the same IP and network UUID."""
        return self == other

    def map_key(self) -> bytes:
        """Index key built from the IP and network UUID."""
        return self.ip.encode() + _uuid_key(self.network_uuid)

    def bson_key(self) -> dict:
        """Query selector for this IP and network UUID."""
        return {"ip": self.ip, "network_uuid": self.network_uuid}

    def as_src(self) -> UniqueSrcIP:
        return UniqueSrcIP(self.ip, self.network_uuid, self.network_name)

    def as_dst(self) -> UniqueDstIP:
        return UniqueDstIP(self.ip, self.network_uuid, self.network_name)


@dataclass(frozen=True)
class UniqueSrcIP:
    """A UniqueIP acting as the source of a pair."""

    src_ip: str
    src_network_uuid: Binary
    src_network_name: str = ""

    def unpair(self) -> UniqueIP:
        return UniqueIP(self.src_ip, self.src_network_uuid, self.src_network_name)

    def bson_key(self) -> dict:
        return {"src": self.src_ip, "src_network_uuid": self.src_network_uuid}


@dataclass(frozen=True)
class UniqueDstIP:
    """A UniqueIP acting as the destination of a pair."""

    dst_ip: str
    dst_network_uuid: Binary
    dst_network_name: str = ""

    def unpair(self) -> UniqueIP:
        return UniqueIP(self.dst_ip, self.dst_network_uuid, self.dst_network_name)

    def bson_key(self) -> dict:
        return {"dst": self.dst_ip, "dst_network_uuid": self.dst_network_uuid}


@dataclass(frozen=True)
class UniqueIPPair:
    """An ordered source/destination pair of UniqueIPs."""

    src_ip: str
    src_network_uuid: Binary
    src_network_name: str
    dst_ip: str
    dst_network_uuid: Binary
    dst_network_name: str

    @classmethod
    def new(cls, source: UniqueIP, destination: UniqueIP) -> UniqueIPPair:
        return cls(
            source.ip,
            source.network_uuid,
            source.network_name,
            destination.ip,
            destination.network_uuid,
            destination.network_name,
        )

    @property
    def source(self) -> UniqueSrcIP:
        return UniqueSrcIP(self.src_ip, self.src_network_uuid, self.src_network_name)

    @property
    def destination(self) -> UniqueDstIP:
        return UniqueDstIP(self.dst_ip, self.dst_network_uuid, self.dst_network_name)

    def map_key(self) -> bytes:
        """Index key built from both IPs and both network UUIDs."""
        return (
            self.src_ip.encode()
            + self.dst_ip.encode()
            + _uuid_key(self.src_network_uuid)
            + _uuid_key(self.dst_network_uuid)
        )

    def bson_key(self) -> dict:
        return {
            "src": self.src_ip,
            "src_network_uuid": self.src_network_uuid,
            "dst": self.dst_ip,
            "dst_network_uuid": self.dst_network_uuid,
        }


class UniqueIPSet(Sequence):
    """An insertion-ordered collection holding each UniqueIP at most once."""

    def __init__(self, ips: Iterable[UniqueIP] = ()) -> None:
        self._items: list[UniqueIP] = []
        for ip in ips:
            self.insert(ip)

    def insert(self, ip: UniqueIP) -> None:
        """Add the IP unless an equal one is already present."""
        if not self.contains(ip):
            self._items.append(ip)

    def contains(self, ip: UniqueIP) -> bool:
        return any(item.equal(ip) for item in self._items)

    def __contains__(self, ip: object) -> bool:
        return isinstance(ip, UniqueIP) and self.contains(ip)

    def __getitem__(self, index):
        if isinstance(index, slice):
            return UniqueIPSet(self._items[index])
        return self._items[index]

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[UniqueIP]:
        return iter(self._items)

    def __eq__(self, other: object) -> bool:
        if isinstance(other, UniqueIPSet):
            return self._items == other._items
        return NotImplemented

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        return f"UniqueIPSet({self._items!r})"