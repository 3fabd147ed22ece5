"""Wire-level data types shared by filter and SSH rule generation."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

PORT_RANGE_BEGIN = 0
PORT_RANGE_END = 65535


@dataclass(frozen=True)
class PortRange:
    first: int = 0
    last: int = 0


PORT_RANGE_ANY = PortRange(PORT_RANGE_BEGIN, PORT_RANGE_END)


@dataclass(frozen=True)
class NetPortRange:
    ip: str
    ports: PortRange = PortRange()


@dataclass
class FilterRule:
    src_ips: list[str] = field(default_factory=list)
    dst_ports: list[NetPortRange] = field(default_factory=list)
    ip_proto: Optional[list[int]] = None


@dataclass(frozen=True)
class SSHAction:
    message: str = ""
    reject: bool = False
    accept: bool = False
    session_duration: timedelta = timedelta(0)
    allow_agent_forwarding: bool = False
    hold_and_delegate: str = ""
    allow_local_port_forwarding: bool = False


@dataclass(frozen=True)
class SSHPrincipal:
    node_ip: str = ""
    user_login: str = ""
    any: bool = False


@dataclass
class SSHRule:
    principals: list[SSHPrincipal] = field(default_factory=list)
    ssh_users: dict[str, str] = field(default_factory=dict)
    action: Optional[SSHAction] = None


_HOSTINFO_KEYS = {
    "hostname": "Hostname",
    "os": "OS",
    "os_version": "OSVersion",
    "request_tags": "RequestTags",
    "routable_ips": "RoutableIPs",
}


@dataclass
class Hostinfo:
    """Information a client reports about its host."""

    hostname: str = ""
    os: str = ""
    os_version: str = ""
    request_tags: list[str] = field(default_factory=list)
    routable_ips: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialise to the JSON object form, leaving out empty fields."""
        result: dict[str, Any] = dict(self.extra)
        for attr, key in _HOSTINFO_KEYS.items():
            value = getattr(self, attr)
            if value:
                result[key] = list(value) if isinstance(value, list) else value
        return result

    @classmethod
    def from_dict(cls, data) -> "Hostinfo":
        """Build from a mapping, or from its JSON text as str or bytes."""
        if isinstance(data, (str, bytes, bytearray)):
            data = json.loads(data)
        if not isinstance(data, Mapping):
            raise TypeError(f"unexpected data type {type(data).__name__}")
        known = {key: attr for attr, key in _HOSTINFO_KEYS.items()}
        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in data.items():
            if key in known:
                attr = known[key]
                values[attr] = list(value or []) if attr in ("request_tags", "routable_ips") else (value or "")
            else:
                extra[key] = value
        return cls(extra=extra, **values)