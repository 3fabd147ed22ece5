import ipaddress

import pytest

from meshacl.models import Node, User
from meshacl.netset import IPSetBuilder
from meshacl.policy import (
    ACLPolicy,
    AutoApprovers,
    InvalidGroupError,
    InvalidTagError,
    PolicyError,
    exclude_correctly_tagged_nodes,
    filter_nodes_by_user,
    normalize_name,
    parse_hosts,
)
from meshacl.tailcfg import Hostinfo


def ipset(ips=(), prefixes=()):
    builder = IPSetBuilder()
    for ip in ips:
        builder.add(ipaddress.ip_address(ip))
    for prefix in prefixes:
        builder.add_prefix(ipaddress.ip_network(prefix))
    return builder.build()


def node(ip=None, user="", tags=None, forced=None, node_id=0, hostname="foo"):
    return Node(
        id=node_id,
        ip_addresses=[] if ip is None else ([ip] if isinstance(ip, str) else list(ip)),
        user=User(name=user),
        host_info=Hostinfo(os="centos", hostname=hostname, request_tags=tags or []),
        forced_tags=forced or [],
    )


def four_nodes(third_user="marc", fourth_user="mickael"):
    return [
        node("100.64.0.1", "joe"),
        node("100.64.0.2", "joe"),
        node("100.64.0.3", third_user),
        node("100.64.0.4", fourth_user),
    ]


# --- groups -----------------------------------------------------------------

GROUPS = {"group:test": ["user1", "user2", "user3"], "group:foo": ["user2", "user3"]}


def test_expand_group_simple():
    pol = ACLPolicy(groups=GROUPS)
    assert pol.expand_users_from_group("group:test") == ["user1", "user2", "user3"]


def test_expand_group_inexistent():
    pol = ACLPolicy(groups=GROUPS)
    with pytest.raises(InvalidGroupError):
        pol.expand_users_from_group("group:undefined")


def test_expand_group_strip_email_domains():
    pol = ACLPolicy(
        groups={"group:admin": ["joe.bar@example.com", "john.doe@example.com"]},
        strip_email_domain=True,
    )
    assert pol.expand_users_from_group("group:admin") == ["joe.bar", "john.doe"]


def test_expand_group_emails():
    pol = ACLPolicy(groups={"group:admin": ["joe.bar@example.com", "john.doe@example.com"]})
    assert pol.expand_users_from_group("group:admin") == [
        "joe.bar.example.com",
        "john.doe.example.com",
    ]


def test_group_of_groups_is_invalid():
    pol = ACLPolicy(groups={"group:test": ["foo"], "group:error": ["foo", "group:test"]})
    with pytest.raises(InvalidGroupError):
        pol.expand_alias([], "group:error")


# --- tag owners ---------------------------------------------------------------


@pytest.mark.parametrize(
    "groups,tag_owners,want",
    [
        ({}, {"tag:test": ["user1"]}, ["user1"]),
        ({"group:foo": ["user1", "user2"]}, {"tag:test": ["group:foo"]}, ["user1", "user2"]),
        (
            {"group:foo": ["user1", "user2"]},
            {"tag:test": ["group:foo", "user3"]},
            ["user1", "user2", "user3"],
        ),
    ],
)
def test_expand_tag_owners(groups, tag_owners, want):
    pol = ACLPolicy(groups=groups, tag_owners=tag_owners)
    assert pol.expand_owners_from_tag("tag:test") == want


def test_expand_tag_owners_invalid_tag():
    pol = ACLPolicy(tag_owners={"tag:foo": ["group:foo", "user1"]})
    with pytest.raises(InvalidTagError):
        pol.expand_owners_from_tag("tag:test")


def test_expand_tag_owners_invalid_group():
    pol = ACLPolicy(
        groups={"group:bar": ["user1", "user2"]},
        tag_owners={"tag:test": ["group:foo", "user2"]},
    )
    with pytest.raises(InvalidGroupError):
        pol.expand_owners_from_tag("tag:test")


# --- filtering by user ----------------------------------------------------------


def test_filter_nodes_by_user_one():
    nodes = [Node(user=User(name="joe"))]
    assert filter_nodes_by_user(nodes, "joe") == [Node(user=User(name="joe"))]


def test_filter_nodes_by_user_two_of_three():
    nodes = [
        Node(id=1, user=User(name="joe")),
        Node(id=2, user=User(name="marc")),
        Node(id=3, user=User(name="marc")),
    ]
    assert filter_nodes_by_user(nodes, "marc") == [
        Node(id=2, user=User(name="marc")),
        Node(id=3, user=User(name="marc")),
    ]


def test_filter_nodes_by_user_none():
    nodes = [Node(id=i, user=User(name="joe" if i == 1 else "marc")) for i in range(1, 6)]
    assert filter_nodes_by_user(nodes, "mickael") == []


# --- alias expansion ---------------------------------------------------------------


def test_expand_alias_wildcard():
    nodes = [node("100.64.0.1"), node("100.78.84.227")]
    assert ACLPolicy().expand_alias(nodes, "*") == ipset(prefixes=["0.0.0.0/0", "::/0"])


def test_expand_alias_simple_group():
    pol = ACLPolicy(groups={"group:accountant": ["joe", "marc"]})
    got = pol.expand_alias(four_nodes(), "group:accountant")
    assert got == ipset(["100.64.0.1", "100.64.0.2", "100.64.0.3"])


def test_expand_alias_wrong_group():
    pol = ACLPolicy(groups={"group:accountant": ["joe", "marc"]})
    with pytest.raises(InvalidGroupError):
        pol.expand_alias(four_nodes(), "group:hr")


@pytest.mark.parametrize("alias", ["10.0.0.3", "10.0.0.1"])
def test_expand_alias_plain_address(alias):
    assert ACLPolicy().expand_alias([], alias) == ipset([alias])


def test_expand_alias_single_ipv4():
    nodes = [node("10.0.0.1", "mickael")]
    assert ACLPolicy().expand_alias(nodes, "10.0.0.1") == ipset(["10.0.0.1"])


@pytest.mark.parametrize("alias", ["10.0.0.1", "fd7a:115c:a1e0:ab12:4843:2222:6273:2222"])
def test_expand_alias_dual_stack(alias):
    nodes = [node(["10.0.0.1", "fd7a:115c:a1e0:ab12:4843:2222:6273:2222"], "mickael")]
    assert ACLPolicy().expand_alias(nodes, alias) == ipset(
        ["10.0.0.1", "fd7a:115c:a1e0:ab12:4843:2222:6273:2222"]
    )


def test_expand_alias_hostname():
    pol = ACLPolicy(hosts={"testy": ipaddress.ip_network("10.0.0.132/32")})
    assert pol.expand_alias([], "testy") == ipset(prefixes=["10.0.0.132/32"])


def test_expand_alias_private_network():
    pol = ACLPolicy(hosts={"homeNetwork": ipaddress.ip_network("192.168.1.0/24")})
    assert pol.expand_alias([], "homeNetwork") == ipset(prefixes=["192.168.1.0/24"])


def test_expand_alias_cidr():
    assert ACLPolicy().expand_alias([], "10.0.0.0/16") == ipset(prefixes=["10.0.0.0/16"])


def test_expand_alias_cidr_pulls_other_family():
    nodes = [node(["10.0.0.5", "fd7a::5"], "joe")]
    assert ACLPolicy().expand_alias(nodes, "10.0.0.0/24") == ipset(
        ["fd7a::5"], ["10.0.0.0/24"]
    )


def test_expand_alias_simple_tag():
    pol = ACLPolicy(tag_owners={"tag:hr-webserver": ["joe"]})
    nodes = [
        node("100.64.0.1", "joe", tags=["tag:hr-webserver"]),
        node("100.64.0.2", "joe", tags=["tag:hr-webserver"]),
        node("100.64.0.3", "marc"),
        node("100.64.0.4", "joe"),
    ]
    assert pol.expand_alias(nodes, "tag:hr-webserver") == ipset(["100.64.0.1", "100.64.0.2"])


def test_expand_alias_no_tag_defined():
    pol = ACLPolicy(
        groups={"group:accountant": ["joe", "marc"]},
        tag_owners={"tag:accountant-webserver": ["group:accountant"]},
    )
    with pytest.raises(InvalidTagError):
        pol.expand_alias(four_nodes(), "tag:hr-webserver")


def test_expand_alias_forced_tag():
    nodes = [
        node("100.64.0.1", "joe", forced=["tag:hr-webserver"]),
        node("100.64.0.2", "joe", forced=["tag:hr-webserver"]),
        node("100.64.0.3", "marc"),
        node("100.64.0.4", "mickael"),
    ]
    assert ACLPolicy().expand_alias(nodes, "tag:hr-webserver") == ipset(
        ["100.64.0.1", "100.64.0.2"]
    )


def test_expand_alias_forced_tag_with_owner():
    pol = ACLPolicy(tag_owners={"tag:hr-webserver": ["joe"]})
    nodes = [
        node("100.64.0.1", "joe", forced=["tag:hr-webserver"]),
        node("100.64.0.2", "joe", tags=["tag:hr-webserver"]),
        node("100.64.0.3", "marc"),
        node("100.64.0.4", "mickael"),
    ]
    assert pol.expand_alias(nodes, "tag:hr-webserver") == ipset(["100.64.0.1", "100.64.0.2"])


def test_expand_alias_user_without_tagged_servers():
    pol = ACLPolicy(tag_owners={"tag:accountant-webserver": ["joe"]})
    nodes = [
        node("100.64.0.1", "joe", tags=["tag:accountant-webserver"]),
        node("100.64.0.2", "joe", tags=["tag:accountant-webserver"]),
        node("100.64.0.3", "marc"),
        node("100.64.0.4", "joe"),
    ]
    assert pol.expand_alias(nodes, "joe") == ipset(["100.64.0.4"])


def test_expand_alias_unknown_gives_empty_set():
    got = ACLPolicy().expand_alias([], "nobody-here")
    assert got.prefixes() == []


# --- excluding tagged nodes -----------------------------------------------------


def test_exclude_nodes_with_valid_tags():
    pol = ACLPolicy(tag_owners={"tag:accountant-webserver": ["joe"]})
    kept = node("100.64.0.4", "joe")
    nodes = [
        node("100.64.0.1", "joe", tags=["tag:accountant-webserver"]),
        node("100.64.0.2", "joe", tags=["tag:accountant-webserver"]),
        kept,
    ]
    assert exclude_correctly_tagged_nodes(pol, nodes, "joe") == [kept]


def test_exclude_nodes_with_valid_tags_owner_in_group():
    pol = ACLPolicy(
        groups={"group:accountant": ["joe", "bar"]},
        tag_owners={"tag:accountant-webserver": ["group:accountant"]},
    )
    kept = node("100.64.0.4", "joe")
    nodes = [
        node("100.64.0.1", "joe", tags=["tag:accountant-webserver"]),
        node("100.64.0.2", "joe", tags=["tag:accountant-webserver"]),
        kept,
    ]
    assert exclude_correctly_tagged_nodes(pol, nodes, "joe") == [kept]


def test_exclude_nodes_with_forced_tags():
    pol = ACLPolicy(tag_owners={"tag:accountant-webserver": ["joe"]})
    kept = node("100.64.0.4", "joe")
    nodes = [
        node("100.64.0.1", "joe", tags=["tag:accountant-webserver"]),
        node("100.64.0.2", "joe", forced=["tag:accountant-webserver"]),
        kept,
    ]
    assert exclude_correctly_tagged_nodes(pol, nodes, "joe") == [kept]


def test_exclude_keeps_nodes_with_invalid_tags():
    pol = ACLPolicy(tag_owners={"tag:accountant-webserver": ["joe"]})
    nodes = [
        node("100.64.0.1", "joe", tags=["tag:hr-webserver"], hostname="hr-web1"),
        node("100.64.0.2", "joe", tags=["tag:hr-webserver"], hostname="hr-web2"),
        node("100.64.0.4", "joe"),
    ]
    assert exclude_correctly_tagged_nodes(pol, nodes, "joe") == nodes


# --- tags of a node ---------------------------------------------------------------


@pytest.mark.parametrize(
    "tag_owners,requested,want_valid,want_invalid",
    [
        ({"tag:valid": ["joe"]}, ["tag:valid"], ["tag:valid"], []),
        ({"tag:valid": ["joe"]}, ["tag:valid", "tag:invalid"], ["tag:valid"], ["tag:invalid"]),
        (
            {"tag:valid": ["joe"]},
            ["tag:invalid", "tag:valid", "tag:invalid"],
            ["tag:valid"],
            ["tag:invalid"],
        ),
        ({"tag:valid": ["joe"]}, ["tag:invalid", "very-invalid"], [], ["tag:invalid", "very-invalid"]),
        ({}, ["tag:invalid", "very-invalid"], [], ["tag:invalid", "very-invalid"]),
    ],
)
def test_tags_of_node(tag_owners, requested, want_valid, want_invalid):
    pol = ACLPolicy(tag_owners=tag_owners)
    valid, invalid = pol.tags_of_node(node(user="joe", tags=requested))
    assert sorted(valid) == sorted(want_valid)
    assert sorted(invalid) == sorted(want_invalid)


# --- hosts, names and approvers ------------------------------------------------------


def test_parse_hosts_with_default_suffix():
    hosts = parse_hosts({"host-1": "100.100.100.100", "subnet-1": "100.100.101.100/24"}, "/32")
    assert hosts == {
        "host-1": ipaddress.ip_network("100.100.100.100/32"),
        "subnet-1": ipaddress.ip_network("100.100.101.0/24"),
    }


def test_parse_hosts_requires_prefix_without_suffix():
    with pytest.raises(PolicyError):
        parse_hosts({"host-1": "100.100.100.100"})


def test_parse_hosts_rejects_bad_length():
    with pytest.raises(PolicyError):
        parse_hosts({"example-host-1": "100.100.100.100/42"}, "/32")


def test_normalize_name():
    assert normalize_name("Joe.Bar@example.com") == "joe.bar.example.com"
    assert normalize_name("Joe.Bar@example.com", True) == "joe.bar"
    assert normalize_name("o'neil smith") == "oneil-smith"


def test_normalize_name_label_too_long():
    with pytest.raises(ValueError):
        normalize_name("a" * 64)


def test_route_approvers():
    approvers = AutoApprovers(
        routes={"10.0.0.0/16": ["group:admins"], "192.168.0.0/24": ["joe"]},
        exit_node=["tag:exit"],
    )
    assert approvers.route_approvers("10.0.1.0/24") == ["group:admins"]
    assert approvers.route_approvers("10.0.0.0/8") == []
    assert approvers.route_approvers("0.0.0.0/0") == ["tag:exit"]
    assert approvers.route_approvers("::/0") == ["tag:exit"]


def test_route_approvers_bad_prefix():
    approvers = AutoApprovers(routes={"not-a-prefix": ["joe"]})
    with pytest.raises(PolicyError):
        approvers.route_approvers("10.0.0.0/24")


# --- building policies ------------------------------------------------------------------


def test_from_dict_case_insensitive_keys():
    pol = ACLPolicy.from_dict(
        {
            "Groups": {"group:example": ["testuser"]},
            "hosts": {"host-1": "100.100.100.100/32"},
            "tagOwners": {"tag:web": ["testuser"]},
            "acls": [{"Action": "accept", "src": ["*"], "proto": "tcp", "dst": ["host-1:*"]}],
            "ssh": [
                {
                    "action": "check",
                    "src": ["group:example"],
                    "dst": ["host-1"],
                    "users": ["root"],
                    "checkPeriod": "1h",
                }
            ],
            "autoApprovers": {"routes": {"10.0.0.0/8": ["testuser"]}, "exitNode": ["tag:web"]},
            "tests": [{"src": "testuser", "accept": ["host-1:22"]}],
        }
    )
    assert pol.groups == {"group:example": ["testuser"]}
    assert pol.hosts == {"host-1": ipaddress.ip_network("100.100.100.100/32")}
    assert pol.acls[0].action == "accept"
    assert pol.acls[0].protocol == "tcp"
    assert pol.acls[0].destinations == ["host-1:*"]
    assert pol.ssh[0].check_period == "1h"
    assert pol.auto_approvers.exit_node == ["tag:web"]
    assert pol.tests[0].accept == ["host-1:22"]
    assert pol.tests[0].deny == []
    assert not pol.is_zero()


def test_from_dict_without_policy_content_is_zero():
    pol = ACLPolicy.from_dict({"valid_json": True, "but_a_policy_though": False})
    assert pol.is_zero()


def test_from_dict_rejects_wrong_types():
    with pytest.raises(PolicyError):
        ACLPolicy.from_dict({"acls": [{"action": "accept", "src": "*"}]})