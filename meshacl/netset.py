"""Sets of IP addresses built from single addresses and prefixes."""

from __future__ import annotations

import ipaddress
from typing import Iterable, Optional, Tuple, Union

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

# (ip version, first address as int, last address as int)
_Range = Tuple[int, int, int]


def _to_address(addr) -> IPAddress:
    if isinstance(addr, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return addr
    return ipaddress.ip_address(addr)


def _to_network(prefix) -> IPNetwork:
    if isinstance(prefix, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
        return prefix
    return ipaddress.ip_network(prefix, strict=False)


def _merge(ranges: Iterable[_Range]) -> Tuple[_Range, ...]:
    merged: list[_Range] = []
    for version, first, last in sorted(ranges):
        if merged:
            prev_version, prev_first, prev_last = merged[-1]
            if prev_version == version and first <= prev_last + 1:
                merged[-1] = (version, prev_first, max(prev_last, last))
                continue
        merged.append((version, first, last))
    return tuple(merged)


class IPSet:
    """An immutable set of IPv4 and IPv6 addresses."""

    __slots__ = ("_ranges",)

    def __init__(self, ranges: Iterable[_Range] = ()) -> None:
        self._ranges = _merge(ranges)

    @property
    def ranges(self) -> Tuple[_Range, ...]:
        """The merged, sorted address ranges of the set."""
        return self._ranges

    def contains(self, addr) -> bool:
        """Report whether the address is a member of the set."""
        try:
            ip = _to_address(addr)
        except ValueError:
            return False
        value = int(ip)
        return any(
            version == ip.version and first <= value <= last
            for version, first, last in self._ranges
        )

    __contains__ = contains

    def prefixes(self) -> list[IPNetwork]:
        """The minimal list of prefixes covering the set, IPv4 first."""
        result: list[IPNetwork] = []
        for version, first, last in self._ranges:
            cls = ipaddress.IPv4Address if version == 4 else ipaddress.IPv6Address
            result.extend(ipaddress.summarize_address_range(cls(first), cls(last)))
        return result

    def __bool__(self) -> bool:
        return bool(self._ranges)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, IPSet):
            return NotImplemented
        return self._ranges == other._ranges

    def __hash__(self) -> int:
        return hash(self._ranges)

    def __repr__(self) -> str:
        return f"IPSet({[str(p) for p in self.prefixes()]})"


class IPSetBuilder:
    """Accumulates addresses and prefixes into an IPSet."""

    def __init__(self) -> None:
        self._ranges: list[_Range] = []

    def add(self, addr) -> None:
        ip = _to_address(addr)
        self._ranges.append((ip.version, int(ip), int(ip)))

    def add_prefix(self, prefix) -> None:
        net = _to_network(prefix)
        self._ranges.append(
            (net.version, int(net.network_address), int(net.broadcast_address))
        )

    def add_set(self, other: Optional[IPSet]) -> None:
        if other is None:
            return
        self._ranges.extend(other.ranges)

    def build(self) -> IPSet:
        return IPSet(self._ranges)


def parse_ip_set(text: str, bits: Optional[int] = None) -> IPSet:
    """Parse "*", an address or a prefix into an IPSet.

    With ``bits`` given, a bare address is widened to a prefix of that length.
    Raises ValueError when the text cannot be parsed.
    """
    builder = IPSetBuilder()
    if text == "*":
        builder.add_prefix(ipaddress.IPv4Network("0.0.0.0/0"))
        builder.add_prefix(ipaddress.IPv6Network("::/0"))
    elif "/" in text:
        builder.add_prefix(ipaddress.ip_network(text, strict=False))
    else:
        ip = ipaddress.ip_address(text)
        if bits is None:
            builder.add(ip)
        else:
            builder.add_prefix(ipaddress.ip_network(f"{ip}/{bits}", strict=False))
    return builder.build()