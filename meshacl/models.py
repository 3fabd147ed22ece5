"""Nodes, users, keys and routes of the control server."""

from __future__ import annotations

import enum
import ipaddress
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from .matcher import match_from_filter_rule
from .netset import IPAddress, IPNetwork, IPSet
from .tailcfg import FilterRule, Hostinfo

HTTP_READ_TIMEOUT = timedelta(seconds=30)
HTTP_SHUTDOWN_TIMEOUT = timedelta(seconds=3)
TLS_ALPN01_CHALLENGE_TYPE = "TLS-ALPN-01"
HTTP01_CHALLENGE_TYPE = "HTTP-01"
JSON_LOG_FORMAT = "json"
TEXT_LOG_FORMAT = "text"
KEEP_ALIVE_INTERVAL = timedelta(seconds=60)
MAX_HOSTNAME_LENGTH = 255

EXIT_ROUTE_V4 = ipaddress.ip_network("0.0.0.0/0")
EXIT_ROUTE_V6 = ipaddress.ip_network("::/0")


class HostnameTooLongError(ValueError):
    """The fully qualified name of a node exceeds the DNS limit."""


def _utc(moment: datetime) -> datetime:
    return moment if moment.tzinfo else moment.replace(tzinfo=timezone.utc)


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int = 0
    name: str = ""
    created_at: Optional[datetime] = None


@dataclass
class PreAuthKeyACLTag:
    id: int = 0
    pre_auth_key_id: int = 0
    tag: str = ""


@dataclass
class PreAuthKey:
    id: int = 0
    key: str = ""
    user: User = field(default_factory=User)
    reusable: bool = False
    ephemeral: bool = False
    used: bool = False
    acl_tags: list[PreAuthKeyACLTag] = field(default_factory=list)
    created_at: Optional[datetime] = None
    expiration: Optional[datetime] = None


@dataclass
class APIKey:
    id: int = 0
    prefix: str = ""
    hash: bytes = b""
    created_at: Optional[datetime] = None
    expiration: Optional[datetime] = None
    last_seen: Optional[datetime] = None


def sort_addresses(addresses: Iterable[IPAddress]) -> list[IPAddress]:
    """Addresses ordered IPv4 first, then by value."""
    return sorted(addresses, key=lambda ip: (ip.version, int(ip)))


def address_strings(addresses: Iterable[IPAddress]) -> list[str]:
    return [str(ip) for ip in sort_addresses(addresses)]


def address_prefixes(addresses: Iterable[IPAddress]) -> list[IPNetwork]:
    """Each address as a single-host prefix."""
    return [ipaddress.ip_network(f"{ip}/{ip.max_prefixlen}") for ip in addresses]


def addresses_in_set(addresses: Iterable[IPAddress], ipset: IPSet) -> bool:
    return any(ipset.contains(ip) for ip in addresses)


def parse_addresses(text: str) -> list[IPAddress]:
    """Parse a comma separated address list; raises ValueError on bad input."""
    return [ipaddress.ip_address(part) for part in text.split(",") if part]


def format_addresses(addresses: Iterable[IPAddress]) -> str:
    return ",".join(address_strings(addresses))


@dataclass
class Node:
    """A client registered with the control server."""

    id: int = 0
    machine_key: str = ""
    node_key: str = ""
    disco_key: str = ""
    ip_addresses: list[IPAddress] = field(default_factory=list)
    hostname: str = ""
    given_name: str = ""
    user: User = field(default_factory=User)
    register_method: str = ""
    forced_tags: list[str] = field(default_factory=list)
    auth_key: Optional[PreAuthKey] = None
    last_seen: Optional[datetime] = None
    expiry: Optional[datetime] = None
    host_info: Hostinfo = field(default_factory=Hostinfo)
    endpoints: list[str] = field(default_factory=list)
    routes: list["Route"] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.ip_addresses = [ipaddress.ip_address(ip) for ip in self.ip_addresses]

    def __str__(self) -> str:
        return self.hostname

    def is_expired(self) -> bool:
        """A node without an expiry never expires."""
        if self.expiry is None:
            return False
        return _now() > _utc(self.expiry)

    def is_online(self) -> bool:
        if self.last_seen is None or self.is_expired():
            return False
        return _utc(self.last_seen) > _now() - KEEP_ALIVE_INTERVAL

    def is_ephemeral(self) -> bool:
        return self.auth_key is not None and self.auth_key.ephemeral

    def can_access(self, rules: Iterable[FilterRule], other: "Node") -> bool:
        """Report whether any rule lets this node reach the other."""
        for rule in rules:
            match = match_from_filter_rule(rule)
            if not match.srcs_contain_ips(self.ip_addresses):
                continue
            if match.dests_contain_ip(other.ip_addresses):
                return True
        return False

    def fqdn(self, magic_dns: bool, base_domain: str) -> str:
        """The DNS name of the node; qualified only when MagicDNS is on."""
        if not magic_dns:
            return self.given_name
        hostname = f"{self.given_name}.{self.user.name}.{base_domain}"
        if len(hostname) > MAX_HOSTNAME_LENGTH:
            raise HostnameTooLongError(
                f'hostname "{hostname}" is too long it cannot except 255 ASCII chars'
            )
        return hostname


def filter_by_ip(nodes: Iterable[Node], ip) -> list[Node]:
    target = ipaddress.ip_address(ip)
    return [node for node in nodes for addr in node.ip_addresses if addr == target]


def describe_nodes(nodes: Iterable[Node]) -> str:
    names = [node.hostname for node in nodes]
    return f"[ {', '.join(names)} ]({len(names)})"


def id_map(nodes: Iterable[Node]) -> dict[int, Node]:
    return {node.id: node for node in nodes}


def online_node_map(nodes: Iterable[Node]) -> dict[int, bool]:
    return {node.id: node.is_online() for node in nodes}


@dataclass
class Route:
    id: int = 0
    node_id: int = 0
    node: Node = field(default_factory=Node)
    prefix: IPNetwork = EXIT_ROUTE_V4
    advertised: bool = False
    enabled: bool = False
    is_primary: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.prefix = ipaddress.ip_network(self.prefix, strict=False)

    def __str__(self) -> str:
        return f"{self.node}:{self.prefix}"

    def is_exit_route(self) -> bool:
        return self.prefix in (EXIT_ROUTE_V4, EXIT_ROUTE_V6)


def route_prefixes(routes: Iterable[Route]) -> list[IPNetwork]:
    return [route.prefix for route in routes]


class StateUpdateType(enum.IntEnum):
    FULL_UPDATE = 0
    PEER_CHANGED = 1
    PEER_REMOVED = 2
    DERP_UPDATED = 3


@dataclass
class StateUpdate:
    """A change to the network that connected nodes must learn about."""

    type: StateUpdateType
    changed: list[Node] = field(default_factory=list)
    removed: list[int] = field(default_factory=list)
    derp_map: Optional[dict] = None