from ipaddress import IPv4Network, ip_address

import pytest

from rita.netutil import (
    PRIVATE_IP_BLOCKS,
    contains_domain,
    contains_ip,
    ip_is_publicly_routable,
    ipv4_to_binary,
    is_ip,
    is_ipv4,
    parse_subnets,
)


@pytest.mark.parametrize(
    "ip, expected",
    [
        ("10.1.2.3", False),
        ("172.16.1.2", False),
        ("192.168.1.2", False),
        ("fc00:1234::", False),
        ("127.0.0.5", False),
        ("::1", False),
        ("169.254.1.2", False),
        ("fe80:1234::", False),
        ("224.0.0.1", False),
        ("ff12:1234::", False),
        ("8.8.8.8", True),
        ("2001:4860:4860::8888", True),
    ],
)
def test_ip_is_publicly_routable(ip, expected):
    assert ip_is_publicly_routable(ip) is expected


def test_ip_is_publicly_routable_accepts_address_objects():
    assert ip_is_publicly_routable(ip_address("10.1.2.3")) is False
    assert ip_is_publicly_routable(ip_address("::ffff:8.8.8.8")) is True


def test_is_ip():
    assert is_ip("1.1.1.1") is True
    assert is_ip("a.b.c.d") is False
    assert is_ip("::1") is True


def test_is_ipv4():
    assert is_ipv4("1.2.3.4") is True
    assert is_ipv4("::1") is False
    assert is_ipv4("fe80::1") is False


def test_parse_subnets_cidr_and_single_host():
    assert parse_subnets(["10.0.0.0/8", "192.168.1.5"]) == [
        IPv4Network("10.0.0.0/8"),
        IPv4Network("192.168.1.5/32"),
    ]


def test_parse_subnets_masks_host_bits():
    assert parse_subnets(["10.1.2.3/8"]) == [IPv4Network("10.0.0.0/8")]


def test_parse_subnets_rejects_garbage():
    with pytest.raises(ValueError):
        parse_subnets(["garbage"])


def test_contains_ip():
    blocks = parse_subnets(["10.0.0.0/8"])
    assert contains_ip(blocks, "10.200.1.1") is True
    assert contains_ip(blocks, "11.0.0.1") is False
    assert contains_ip(PRIVATE_IP_BLOCKS, "fc00::1") is True


@pytest.mark.parametrize(
    "host, expected",
    [
        ("a.mydomain.com", True),
        ("mydomain.com", True),
        ("exact.org", True),
        ("sub.exact.org", False),
        ("other.com", False),
    ],
)
def test_contains_domain(host, expected):
    assert contains_domain(["*.mydomain.com", "exact.org"], host) is expected


def test_ipv4_to_binary():
    assert ipv4_to_binary("0.0.0.1") == 1
    assert ipv4_to_binary("255.255.255.255") == 0xFFFFFFFF
    assert ipv4_to_binary("::ffff:0.0.0.1") == 1