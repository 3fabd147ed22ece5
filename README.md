# meshacl

`meshacl` evaluates access-control policies for the coordination server of
a mesh VPN. It reads a policy written in HuJSON or in YAML. HuJSON is JSON
that allows `//` and `/* */` comments and trailing commas. From the policy it
computes the packet filter rules and the SSH rules that apply to each node.

## Installation

```
pip install meshacl
```

## Loading a policy

```python
from meshacl.loader import load_policy_from_bytes, load_policy_from_path

# Files ending in .yml or .yaml are read as YAML; any other file is read as HuJSON.
policy = load_policy_from_path("acl.hujson")

policy = load_policy_from_bytes(b"""
{
    // hosts without a prefix length are taken as /32
    "hosts": {"host-1": "100.100.100.100"},
    "acls": [
        {"action": "accept", "src": ["*"], "proto": "tcp", "dst": ["host-1:22"]},
    ],
}
""", "hujson")
```

The second argument can be `"yaml"`; any other value means HuJSON. Keys in
the document are matched without regard to case. In HuJSON, a host that has
no prefix length gets `/32` added. In YAML, every host needs an explicit
prefix length.

A document that cannot be parsed raises `PolicyError`. A policy that defines
no groups, no hosts and no ACLs raises `EmptyPolicyError`. You can also build
a policy in code with `ACLPolicy(...)` or `ACLPolicy.from_dict(mapping)`.

## Generating rules

```python
from ipaddress import ip_address

from meshacl.models import Node, User
from meshacl.rules import (
    filter_nodes_by_acl,
    generate_filter_and_ssh_rules,
    reduce_filter_rules,
)

node = Node(id=1, ip_addresses=[ip_address("100.100.100.100")], user=User(name="alice"))
peer = Node(id=2, ip_addresses=[ip_address("100.64.0.2")], user=User(name="bob"))

rules, ssh_rules = generate_filter_and_ssh_rules(policy, node, [peer])

# Keep only the rules and destinations that include this node.
relevant = reduce_filter_rules(node, rules)

# Find the peers this node may reach, or be reached from.
visible = filter_nodes_by_acl(node, [node, peer], rules)
```

`generate_filter_and_ssh_rules` returns a list of `FilterRule` and a list of
`SSHRule`, both from `meshacl.tailcfg`. If the policy is `None`, it returns a
single rule that lets every source reach every destination on every port,
and no SSH rules. You can also call `generate_filter_rules` and
`generate_ssh_rules` on their own.

SSH rules support the actions `accept` and `check`:

* `check` takes its session length from `checkPeriod`, using durations such
  as `"12h"` or `"1h30m"`. `parse_duration` does the parsing.
* A `check` rule whose period cannot be parsed becomes a reject.
* A rule with any other action is skipped.

## Aliases

Sources and destinations in an ACL can be any of these:

* `*`, which matches every IPv4 and IPv6 address;
* a user name, meaning the user's nodes that carry no forced tag and request
  no tag that the policy owns;
* a group, written `group:name`;
* a tag, written `tag:name`, meaning nodes that carry it as a forced tag, or
  nodes of its owners that request it;
* a host alias from `hosts`;
* a single IP address;
* a CIDR prefix.

`ACLPolicy.expand_alias(nodes, alias)` resolves an alias into an `IPSet` from
`meshacl.netset`. Group members are lower-cased and `@` becomes `.` in them.
Set `strip_email_domain=True` on the policy to drop the domain instead.

A destination adds a port part, such as `host:22`, `host:80,443`,
`host:5400-5500` or `host:*`. IPv6 addresses and prefixes work as well, for
example `fd7a:115c:a1e0::2/128:22`. The protocol (`proto`) may be a name or a
number:

* A name is one of `tcp`, `udp`, `sctp`, `icmp`, `igmp`, `ipv4`,
  `ip-in-ip`, `egp`, `igp`, `gre`, `esp` or `ah`.
* Protocols other than TCP, UDP and SCTP only accept `*` as their port.
* An empty protocol leaves `ip_proto` unset.

## Errors

Every policy error derives from `PolicyError`, which is a `ValueError`. All
of these live in `meshacl.policy`:

* `InvalidActionError`: an ACL action other than `accept`.
* `InvalidGroupError`: an unknown group, or a group that contains a group.
* `InvalidTagError`: a tag with no owner and no forced tags.
* `InvalidPortFormatError`: a destination or port that cannot be parsed.
* `WildcardRequiredError`: a port other than `*` given for a protocol that
  only accepts `*`.
* `EmptyPolicyError`: a policy that defines nothing.

## What it does not do

`meshacl` is a library only. It has no command-line tool, runs no server and
stores nothing: it does not handle client connections or map requests, and it
keeps no database of nodes. The `Node`, `User`, `Route` and `StateUpdate`
classes in `meshacl.models` are plain in-memory data classes. You build them
yourself and pass them to the rule functions.

## Running the tests

```
pip install "meshacl[test]"
pytest
```