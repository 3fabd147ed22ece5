"""Source and destination matching for filter rules."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from .netset import IPSet, IPSetBuilder, parse_ip_set
from .tailcfg import FilterRule


@dataclass(frozen=True)
class Match:
    srcs: IPSet = field(default_factory=IPSet)
    dests: IPSet = field(default_factory=IPSet)

    def srcs_contain_ips(self, ips: Iterable) -> bool:
        """Report whether any of the addresses is a source."""
        return any(self.srcs.contains(ip) for ip in ips)

    def dests_contain_ip(self, ips: Iterable) -> bool:
        """Report whether any of the addresses is a destination."""
        return any(self.dests.contains(ip) for ip in ips)


def _build(entries: Iterable[str]) -> IPSet:
    builder = IPSetBuilder()
    for entry in entries:
        try:
            builder.add_set(parse_ip_set(entry))
        except ValueError:
            continue
    return builder.build()


def match_from_strings(sources: Iterable[str], destinations: Iterable[str]) -> Match:
    """Build a Match; entries that do not parse are ignored."""
    return Match(srcs=_build(sources), dests=_build(destinations))


def match_from_filter_rule(rule: FilterRule) -> Match:
    return match_from_strings(rule.src_ips, [dest.ip for dest in rule.dst_ports])