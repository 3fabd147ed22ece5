"""Generation of packet filter and SSH rules from an access control policy."""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from .models import Node, addresses_in_set
from .netset import IPSetBuilder, parse_ip_set
from .policy import (
    ACLPolicy,
    InvalidActionError,
    InvalidPortFormatError,
    PolicyError,
    WildcardRequiredError,
)
from .tailcfg import (
    PORT_RANGE_ANY,
    PORT_RANGE_BEGIN,
    PORT_RANGE_END,
    FilterRule,
    NetPortRange,
    PortRange,
    SSHAction,
    SSHPrincipal,
    SSHRule,
)

log = logging.getLogger(__name__)

PROTOCOL_ICMP = 1
PROTOCOL_IGMP = 2
PROTOCOL_IPV4 = 4
PROTOCOL_TCP = 6
PROTOCOL_EGP = 8
PROTOCOL_IGP = 9
PROTOCOL_UDP = 17
PROTOCOL_GRE = 47
PROTOCOL_ESP = 50
PROTOCOL_AH = 51
PROTOCOL_IPV6_ICMP = 58
PROTOCOL_SCTP = 132
PROTOCOL_FC = 133

_NAMED_PROTOCOLS: dict[str, tuple[list[int], bool]] = {
    "igmp": ([PROTOCOL_IGMP], True),
    "ipv4": ([PROTOCOL_IPV4], True),
    "ip-in-ip": ([PROTOCOL_IPV4], True),
    "tcp": ([PROTOCOL_TCP], False),
    "egp": ([PROTOCOL_EGP], True),
    "igp": ([PROTOCOL_IGP], True),
    "udp": ([PROTOCOL_UDP], False),
    "gre": ([PROTOCOL_GRE], True),
    "esp": ([PROTOCOL_ESP], True),
    "ah": ([PROTOCOL_AH], True),
    "sctp": ([PROTOCOL_SCTP], False),
    "icmp": ([PROTOCOL_ICMP, PROTOCOL_IPV6_ICMP], True),
}

_PORT_PROTOCOLS = {PROTOCOL_TCP, PROTOCOL_UDP, PROTOCOL_SCTP}
_INTEGER = re.compile(r"[+-]?[0-9]+")
_DIGITS = re.compile(r"[0-9]+")
_DURATION_PART = re.compile(r"([0-9]*(?:\.[0-9]*)?)([^0-9.]+)")
_DURATION_UNITS = {
    "ns": 1,
    "us": 10**3,
    "\u00b5s": 10**3,
    "\u03bcs": 10**3,
    "ms": 10**6,
    "s": 10**9,
    "m": 60 * 10**9,
    "h": 3600 * 10**9,
}

_ACCEPT_ACTION = SSHAction(accept=True, allow_local_port_forwarding=True)
_REJECT_ACTION = SSHAction(reject=True)


def _allow_all() -> list[FilterRule]:
    return [FilterRule(src_ips=["*"], dst_ports=[NetPortRange("*", PORT_RANGE_ANY)])]


def parse_protocol(protocol: str) -> tuple[Optional[list[int]], bool]:
    """Map an ACL protocol to IP protocol numbers.

    Returns the protocol numbers (None for the default set) and whether the
    protocol demands a wildcard port. Raises PolicyError for unknown names.
    """
    if protocol == "":
        return None, False
    if protocol in _NAMED_PROTOCOLS:
        numbers, needs_wildcard = _NAMED_PROTOCOLS[protocol]
        return list(numbers), needs_wildcard
    if not _INTEGER.fullmatch(protocol):
        raise PolicyError(f'unknown protocol "{protocol}"')
    number = int(protocol)
    return [number], number not in _PORT_PROTOCOLS


def parse_destination(dest: str) -> tuple[str, str]:
    """Split an ACL destination into its alias and its port part."""
    tokens = dest.split(":")
    if len(tokens) < 2 or len(tokens) > 3:
        port = tokens[-1]
        suffix = ":" + port
        maybe_ipv6 = dest[: -len(suffix)] if dest.endswith(suffix) else dest
        address_part = maybe_ipv6.split("/")[0]
        try:
            import ipaddress

            ipaddress.ip_address(address_part)
        except ValueError:
            raise InvalidPortFormatError(
                f"failed to parse destination, tokens {tokens}"
            ) from None
        tokens = [maybe_ipv6, port]

    alias = tokens[0] if len(tokens) == 2 else f"{tokens[0]}:{tokens[1]}"
    return alias, tokens[-1]


def _parse_port(text: str) -> int:
    if not _DIGITS.fullmatch(text):
        raise InvalidPortFormatError(f'invalid port "{text}"')
    value = int(text)
    if value > PORT_RANGE_END:
        raise InvalidPortFormatError(f'port "{text}" out of range')
    return value


def expand_ports(ports: str, needs_wildcard: bool) -> list[PortRange]:
    """Parse "*", single ports and ranges separated by commas."""
    if ports == "*":
        return [PortRange(PORT_RANGE_BEGIN, PORT_RANGE_END)]
    if needs_wildcard:
        raise WildcardRequiredError("wildcard as port is required for the protocol")

    result: list[PortRange] = []
    for part in ports.split(","):
        bounds = part.split("-")
        if len(bounds) == 1:
            port = _parse_port(bounds[0])
            result.append(PortRange(port, port))
        elif len(bounds) == 2:
            result.append(PortRange(_parse_port(bounds[0]), _parse_port(bounds[1])))
        else:
            raise InvalidPortFormatError(f'invalid port range "{part}"')
    return result


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as "1h30m", "1.5s" or "300ms"."""
    rest = text
    sign = 1
    if rest and rest[0] in "+-":
        sign = -1 if rest[0] == "-" else 1
        rest = rest[1:]
    if rest == "0":
        return timedelta(0)
    if not rest:
        raise ValueError(f'invalid duration "{text}"')

    total = Decimal(0)
    pos = 0
    while pos < len(rest):
        match = _DURATION_PART.match(rest, pos)
        if not match or match.group(1) in ("", "."):
            raise ValueError(f'invalid duration "{text}"')
        number, unit = match.groups()
        if unit not in _DURATION_UNITS:
            raise ValueError(f'unknown unit "{unit}" in duration "{text}"')
        try:
            total += Decimal(number) * _DURATION_UNITS[unit]
        except InvalidOperation:
            raise ValueError(f'invalid duration "{text}"') from None
        pos = match.end()

    nanoseconds = int(total)
    magnitude = timedelta(
        seconds=nanoseconds // 10**9, microseconds=(nanoseconds % 10**9) // 1000
    )
    return magnitude if sign > 0 else -magnitude


def _all_nodes(node: Optional[Node], peers: Optional[Iterable[Node]]) -> list[Node]:
    nodes = list(peers or [])
    if node is not None:
        nodes.append(node)
    return nodes


def generate_filter_rules(
    policy: ACLPolicy, node: Optional[Node], peers: Optional[Iterable[Node]]
) -> list[FilterRule]:
    """Build the filter rules that allow traffic between the nodes."""
    nodes = _all_nodes(node, peers)
    rules: list[FilterRule] = []

    for index, acl in enumerate(policy.acls):
        if acl.action != "accept":
            raise InvalidActionError(f'invalid action "{acl.action}" in ACL {index}')

        src_ips: list[str] = []
        for src_index, src in enumerate(acl.sources):
            try:
                expanded = policy.expand_alias(nodes, src)
            except PolicyError:
                log.error("Error parsing ACL %d, source %d (%s)", index, src_index, src)
                raise
            src_ips.extend(str(prefix) for prefix in expanded.prefixes())

        try:
            protocols, needs_wildcard = parse_protocol(acl.protocol)
        except PolicyError:
            log.error("Error parsing ACL %d, protocol unknown %s", index, acl.protocol)
            raise

        dst_ports: list[NetPortRange] = []
        for dest in acl.destinations:
            alias, port = parse_destination(dest)
            expanded = policy.expand_alias(nodes, alias)
            ports = expand_ports(port, needs_wildcard)
            dst_ports.extend(
                NetPortRange(str(prefix), port_range)
                for prefix in expanded.prefixes()
                for port_range in ports
            )

        rules.append(FilterRule(src_ips=src_ips, dst_ports=dst_ports, ip_proto=protocols))

    return rules


def _ssh_action(ssh_acl, index: int) -> Optional[SSHAction]:
    if ssh_acl.action == "accept":
        return _ACCEPT_ACTION
    if ssh_acl.action == "check":
        try:
            duration = parse_duration(ssh_acl.check_period)
        except ValueError:
            log.error(
                "Error parsing SSH %d, check action with unparsable duration '%s'",
                index,
                ssh_acl.check_period,
            )
            return _REJECT_ACTION
        return SSHAction(
            accept=True, session_duration=duration, allow_local_port_forwarding=True
        )
    log.error("Error parsing SSH %d, unknown action '%s', skipping", index, ssh_acl.action)
    return None


def generate_ssh_rules(
    policy: ACLPolicy, node: Node, peers: Optional[Iterable[Node]]
) -> list[SSHRule]:
    """Build the SSH rules whose destinations include the node."""
    peers = list(peers or [])
    everyone = _all_nodes(node, peers)
    rules: list[SSHRule] = []

    for index, ssh_acl in enumerate(policy.ssh):
        builder = IPSetBuilder()
        for dest in ssh_acl.destinations:
            builder.add_set(policy.expand_alias(everyone, dest))
        if not addresses_in_set(node.ip_addresses, builder.build()):
            continue

        action = _ssh_action(ssh_acl, index)
        if action is None:
            continue

        principals: list[SSHPrincipal] = []
        for src in ssh_acl.sources:
            if src == "*":
                principals.append(SSHPrincipal(any=True))
            elif src.startswith("group:"):
                principals.extend(
                    SSHPrincipal(user_login=user)
                    for user in policy.expand_users_from_group(src)
                )
            else:
                expanded = policy.expand_alias(peers, src)
                principals.extend(
                    SSHPrincipal(node_ip=str(prefix.network_address))
                    for prefix in expanded.prefixes()
                )

        rules.append(
            SSHRule(
                principals=principals,
                ssh_users={user: "=" for user in ssh_acl.users},
                action=action,
            )
        )

    return rules


def generate_filter_and_ssh_rules(
    policy: Optional[ACLPolicy], node: Node, peers: Optional[Iterable[Node]]
) -> tuple[list[FilterRule], list[SSHRule]]:
    """Filter and SSH rules for a node; without a policy everything is allowed."""
    if policy is None:
        return _allow_all(), []
    peers = list(peers or [])
    rules = generate_filter_rules(policy, node, peers)
    log.debug("ACL rules for %s: %s", node.given_name, rules)
    ssh_rules = generate_ssh_rules(policy, node, peers)
    log.debug("SSH rules for %s: %s", node.given_name, ssh_rules)
    return rules, ssh_rules


def reduce_filter_rules(node: Node, rules: Iterable[FilterRule]) -> list[FilterRule]:
    """Keep only the rules and destinations that concern the node."""
    reduced: list[FilterRule] = []
    for rule in rules:
        dests: list[NetPortRange] = []
        for dest in rule.dst_ports:
            try:
                expanded = parse_ip_set(dest.ip)
            except ValueError:
                # Fail closed on destinations that cannot be parsed.
                continue
            if addresses_in_set(node.ip_addresses, expanded):
                dests.append(dest)
        if dests:
            reduced.append(
                FilterRule(src_ips=rule.src_ips, dst_ports=dests, ip_proto=rule.ip_proto)
            )
    return reduced


def filter_nodes_by_acl(
    node: Node, nodes: Iterable[Node], rules: list[FilterRule]
) -> list[Node]:
    """The peers the node may reach or be reached from."""
    return [
        peer
        for peer in nodes
        if peer.id != node.id
        and (node.can_access(rules, peer) or peer.can_access(rules, node))
    ]