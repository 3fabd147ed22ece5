"""Access control policies and the expansion of their aliases."""

from __future__ import annotations

import ipaddress
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from .models import Node, filter_by_ip
from .netset import IPNetwork, IPSet, IPSetBuilder, parse_ip_set

log = logging.getLogger(__name__)

_LABEL_MAX_LENGTH = 63
_INVALID_NAME_CHARS = re.compile(r"[^a-z0-9\-.]+")


class PolicyError(ValueError):
    """Base class for errors in an access control policy."""


class EmptyPolicyError(PolicyError):
    """The policy defines no groups, hosts or ACLs."""


class InvalidActionError(PolicyError):
    """An ACL uses an action other than accept."""


class InvalidGroupError(PolicyError):
    """A group is unknown or malformed."""


class InvalidTagError(PolicyError):
    """A tag has no owner."""


class InvalidPortFormatError(PolicyError):
    """A destination or port specification cannot be parsed."""


class WildcardRequiredError(PolicyError):
    """The protocol only allows a wildcard as port."""


def _is_wildcard(text: str) -> bool:
    return text == "*"


def _is_group(text: str) -> bool:
    return text.startswith("group:")


def _is_tag(text: str) -> bool:
    return text.startswith("tag:")


def _parse_prefix(text: str) -> IPNetwork:
    if "/" not in text:
        raise PolicyError(f'invalid prefix "{text}": no "/"')
    try:
        return ipaddress.ip_network(text, strict=False)
    except ValueError as exc:
        raise PolicyError(f'invalid prefix "{text}": {exc}') from exc


def parse_hosts(mapping: Optional[Mapping], default_suffix: Optional[str] = None) -> dict[str, IPNetwork]:
    """Parse host aliases into networks.

    With ``default_suffix`` set (such as "/32"), a value without a prefix
    length gets that suffix; otherwise such a value is an error. Values that
    are already networks are kept as they are.
    """
    hosts: dict[str, IPNetwork] = {}
    for name, value in (mapping or {}).items():
        if isinstance(value, (ipaddress.IPv4Network, ipaddress.IPv6Network)):
            hosts[name] = value
            continue
        if not isinstance(value, str):
            raise PolicyError(f"host {name!r}: expected a string, got {type(value).__name__}")
        if default_suffix is not None and "/" not in value:
            value += default_suffix
        hosts[name] = _parse_prefix(value)
    return hosts


def normalize_name(name: str, strip_email_domain: bool = False) -> str:
    """Lower-case a user name into a DNS-safe form.

    E-mail addresses lose their domain when ``strip_email_domain`` is set,
    otherwise the "@" becomes a dot. Raises ValueError when a label is
    longer than DNS allows.
    """
    name = name.lower().replace("'", "")
    at = name.find("@")
    if strip_email_domain and at > 0:
        name = name[:at]
    else:
        name = name.replace("@", ".")
    name = _INVALID_NAME_CHARS.sub("-", name)
    for label in name.split("."):
        if len(label) > _LABEL_MAX_LENGTH:
            raise ValueError(f'label "{label}" is longer than {_LABEL_MAX_LENGTH} characters')
    return name


def filter_nodes_by_user(nodes: Iterable[Node], user: str) -> list[Node]:
    return [node for node in nodes if node.user.name == user]


def _lookup(data: Mapping, key: str) -> Any:
    """Fetch a key, preferring an exact match over a case-insensitive one."""
    if key in data:
        return data[key]
    folded = key.casefold()
    for candidate, value in data.items():
        if isinstance(candidate, str) and candidate.casefold() == folded:
            return value
    return None


def _str(value: Any, what: str) -> str:
    if value is None:
        return ""
    if not isinstance(value, str):
        raise PolicyError(f"{what}: expected a string, got {type(value).__name__}")
    return value


def _str_list(value: Any, what: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise PolicyError(f"{what}: expected a list of strings")
    return list(value)


def _mapping(value: Any, what: str) -> Mapping:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise PolicyError(f"{what}: expected an object, got {type(value).__name__}")
    return value


def _list_of_mappings(value: Any, what: str) -> list[Mapping]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise PolicyError(f"{what}: expected a list")
    return [_mapping(item, what) for item in value]


def _str_list_map(value: Any, what: str) -> dict[str, list[str]]:
    return {key: _str_list(items, f"{what}[{key}]") for key, items in _mapping(value, what).items()}


@dataclass
class ACL:
    action: str = ""
    protocol: str = ""
    sources: list[str] = field(default_factory=list)
    destinations: list[str] = field(default_factory=list)


@dataclass
class ACLTest:
    source: str = ""
    accept: list[str] = field(default_factory=list)
    deny: list[str] = field(default_factory=list)


@dataclass
class SSH:
    action: str = ""
    sources: list[str] = field(default_factory=list)
    destinations: list[str] = field(default_factory=list)
    users: list[str] = field(default_factory=list)
    check_period: str = ""


@dataclass
class AutoApprovers:
    routes: dict[str, list[str]] = field(default_factory=dict)
    exit_node: list[str] = field(default_factory=list)

    def route_approvers(self, prefix) -> list[str]:
        """The users, groups or tags allowed to approve a route."""
        network = ipaddress.ip_network(prefix, strict=False)
        if network.prefixlen == 0:
            return list(self.exit_node)
        approvers: list[str] = []
        for approved_text, aliases in self.routes.items():
            approved = _parse_prefix(approved_text)
            if (
                network.prefixlen >= approved.prefixlen
                and network.network_address in approved
            ):
                approvers.extend(aliases)
        return approvers


@dataclass
class ACLPolicy:
    """A policy of groups, hosts, tag owners, ACLs and SSH rules."""

    groups: dict[str, list[str]] = field(default_factory=dict)
    hosts: dict[str, IPNetwork] = field(default_factory=dict)
    tag_owners: dict[str, list[str]] = field(default_factory=dict)
    acls: list[ACL] = field(default_factory=list)
    tests: list[ACLTest] = field(default_factory=list)
    auto_approvers: AutoApprovers = field(default_factory=AutoApprovers)
    ssh: list[SSH] = field(default_factory=list)
    strip_email_domain: bool = False

    @classmethod
    def from_dict(cls, data: Mapping) -> "ACLPolicy":
        """Build a policy from its document form; keys match case-insensitively."""
        data = _mapping(data, "policy")
        acls = [
            ACL(
                action=_str(_lookup(item, "action"), "acl action"),
                protocol=_str(_lookup(item, "proto"), "acl proto"),
                sources=_str_list(_lookup(item, "src"), "acl src"),
                destinations=_str_list(_lookup(item, "dst"), "acl dst"),
            )
            for item in _list_of_mappings(_lookup(data, "acls"), "acls")
        ]
        tests = [
            ACLTest(
                source=_str(_lookup(item, "src"), "test src"),
                accept=_str_list(_lookup(item, "accept"), "test accept"),
                deny=_str_list(_lookup(item, "deny"), "test deny"),
            )
            for item in _list_of_mappings(_lookup(data, "tests"), "tests")
        ]
        ssh = [
            SSH(
                action=_str(_lookup(item, "action"), "ssh action"),
                sources=_str_list(_lookup(item, "src"), "ssh src"),
                destinations=_str_list(_lookup(item, "dst"), "ssh dst"),
                users=_str_list(_lookup(item, "users"), "ssh users"),
                check_period=_str(_lookup(item, "checkPeriod"), "ssh checkPeriod"),
            )
            for item in _list_of_mappings(_lookup(data, "ssh"), "ssh")
        ]
        approvers = _mapping(_lookup(data, "autoApprovers"), "autoApprovers")
        return cls(
            groups=_str_list_map(_lookup(data, "groups"), "groups"),
            hosts=parse_hosts(_mapping(_lookup(data, "hosts"), "hosts")),
            tag_owners=_str_list_map(_lookup(data, "tagOwners"), "tagOwners"),
            acls=acls,
            tests=tests,
            auto_approvers=AutoApprovers(
                routes=_str_list_map(_lookup(approvers, "routes"), "autoApprovers routes"),
                exit_node=_str_list(_lookup(approvers, "exitNode"), "autoApprovers exitNode"),
            ),
            ssh=ssh,
        )

    def is_zero(self) -> bool:
        return not self.groups and not self.hosts and not self.acls

    def expand_users_from_group(self, group: str) -> list[str]:
        """The normalised user names in a group; groups may not nest."""
        if group not in self.groups:
            raise InvalidGroupError(f"group {group} isn't registered")
        users: list[str] = []
        for member in self.groups[group]:
            if _is_group(member):
                raise InvalidGroupError("a group cannot be composed of groups")
            try:
                users.append(normalize_name(member, self.strip_email_domain))
            except ValueError as exc:
                raise InvalidGroupError(f'failed to normalize group "{member}"') from exc
        return users

    def expand_owners_from_tag(self, tag: str) -> list[str]:
        """The users owning a tag, with owner groups expanded."""
        if tag not in self.tag_owners:
            raise InvalidTagError(f"{tag} isn't owned by a TagOwner, please add one first")
        owners: list[str] = []
        for owner in self.tag_owners[tag]:
            if _is_group(owner):
                owners.extend(self.expand_users_from_group(owner))
            else:
                owners.append(owner)
        return owners

    def expand_alias(self, nodes: Iterable[Node], alias: str) -> IPSet:
        """Turn a user, group, tag, host, address or prefix into an IPSet."""
        nodes = list(nodes)
        if _is_wildcard(alias):
            return parse_ip_set("*")
        if _is_group(alias):
            return self._expand_ips_from_group(alias, nodes)
        if _is_tag(alias):
            return self._expand_ips_from_tag(alias, nodes)
        user_ips = self._expand_ips_from_user(alias, nodes)
        if user_ips is not None:
            return user_ips
        if alias in self.hosts:
            return self.expand_alias(nodes, str(self.hosts[alias]))
        try:
            ip = ipaddress.ip_address(alias)
        except ValueError:
            pass
        else:
            return self._expand_ips_from_single_ip(ip, nodes)
        if "/" in alias:
            try:
                prefix = ipaddress.ip_network(alias, strict=False)
            except ValueError:
                pass
            else:
                return self._expand_ips_from_prefix(prefix, nodes)
        log.warning("No IPs found with the alias %s", alias)
        return IPSet()

    def _expand_ips_from_group(self, group: str, nodes: list[Node]) -> IPSet:
        builder = IPSetBuilder()
        for user in self.expand_users_from_group(group):
            for node in filter_nodes_by_user(nodes, user):
                for ip in node.ip_addresses:
                    builder.add(ip)
        return builder.build()

    def _expand_ips_from_tag(self, tag: str, nodes: list[Node]) -> IPSet:
        builder = IPSetBuilder()
        for node in nodes:
            if tag in node.forced_tags:
                for ip in node.ip_addresses:
                    builder.add(ip)
        try:
            owners = self.expand_owners_from_tag(tag)
        except InvalidTagError:
            forced = builder.build()
            if not forced:
                raise InvalidTagError(
                    f"{tag} isn't owned by a TagOwner and no forced tags are defined"
                ) from None
            return forced
        for user in owners:
            for node in filter_nodes_by_user(nodes, user):
                if tag in node.host_info.request_tags:
                    for ip in node.ip_addresses:
                        builder.add(ip)
        return builder.build()

    def _expand_ips_from_user(self, user: str, nodes: list[Node]) -> Optional[IPSet]:
        owned = exclude_correctly_tagged_nodes(self, filter_nodes_by_user(nodes, user), user)
        if not owned:
            return None
        builder = IPSetBuilder()
        for node in owned:
            for ip in node.ip_addresses:
                builder.add(ip)
        return builder.build()

    @staticmethod
    def _expand_ips_from_single_ip(ip, nodes: list[Node]) -> IPSet:
        builder = IPSetBuilder()
        builder.add(ip)
        for node in filter_by_ip(nodes, ip):
            for addr in node.ip_addresses:
                builder.add(addr)
        return builder.build()

    @staticmethod
    def _expand_ips_from_prefix(prefix: IPNetwork, nodes: list[Node]) -> IPSet:
        builder = IPSetBuilder()
        builder.add_prefix(prefix)
        # Pull in every address of a node inside the prefix, so the other
        # address family of that node is covered as well.
        for node in nodes:
            if any(ip in prefix for ip in node.ip_addresses):
                for ip in node.ip_addresses:
                    builder.add(ip)
        return builder.build()

    def tags_of_node(self, node: Node) -> tuple[list[str], list[str]]:
        """Split the node's requested tags into (valid, invalid).

        A tag is valid when the node's user is among its owners.
        """
        valid: dict[str, None] = {}
        invalid: dict[str, None] = {}
        for tag in node.host_info.request_tags:
            try:
                owners = self.expand_owners_from_tag(tag)
            except PolicyError:
                owners = []
            if node.user.name in owners:
                valid[tag] = None
            else:
                invalid[tag] = None
        return list(valid), list(invalid)


def exclude_correctly_tagged_nodes(policy: ACLPolicy, nodes: Iterable[Node], user: str) -> list[Node]:
    """Drop nodes that carry a forced tag or request a tag the policy owns.

    The nodes are assumed to belong to ``user``.
    """
    owned_tags = set(policy.tag_owners)
    return [
        node
        for node in nodes
        if not node.forced_tags
        and not any(tag in owned_tags for tag in node.host_info.request_tags)
    ]