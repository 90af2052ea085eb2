"""
测试 Policy 的构造与只读性。
"""

from ipaddress import ip_address

import pytest
from pydantic import ValidationError

from src.approver.config import Config
from src.approver.csr.policy import ConfigError, Policy, build_policy


def test_build_policy_compiles_inputs():
    policy = build_policy(r"^.+\.cluster\.local$", "10.0.0.0/16, fd00::/8", 3600, 2)

    assert policy.name_pattern.fullmatch("worker-1.cluster.local")
    assert [str(n) for n in policy.ip_networks] == ["10.0.0.0/16", "fd00::/8"]
    assert policy.max_expiration_seconds == 3600
    assert policy.allowed_dns_names == 2
    assert not policy.bypass_dns_resolution


def test_host_bits_are_allowed_in_prefix():
    policy = build_policy(".*", "192.168.1.1/24")
    assert str(policy.ip_networks[0]) == "192.168.1.0/24"


@pytest.mark.parametrize(
    "kwargs",
    [
        {"regex": "", "ip_prefixes": "0.0.0.0/0"},
        {"regex": "(", "ip_prefixes": "0.0.0.0/0"},
        {"regex": ".*", "ip_prefixes": "not-a-prefix"},
        {"regex": ".*", "ip_prefixes": "10.0.0.0/8,"},
        {"regex": ".*", "ip_prefixes": "fc00/7"},
        {"regex": ".*", "ip_prefixes": "0.0.0.0/0", "max_expiration_seconds": -1},
        {"regex": ".*", "ip_prefixes": "0.0.0.0/0", "max_expiration_seconds": 367 * 24 * 3600 + 1},
        {"regex": ".*", "ip_prefixes": "0.0.0.0/0", "allowed_dns_names": 0},
        {"regex": ".*", "ip_prefixes": "0.0.0.0/0", "allowed_dns_names": 1001},
    ],
)
def test_invalid_inputs_raise_config_error(kwargs):
    with pytest.raises(ConfigError):
        build_policy(**kwargs)


def test_allows_ip_checks_ip_version():
    """IPv4 地址不应被 IPv6 的 ::/0 网段放行"""
    policy = build_policy(".*", "::/0")
    assert not policy.allows_ip(ip_address("10.0.1.5"))
    assert policy.allows_ip(ip_address("fd00::1"))

    policy = build_policy(".*", "0.0.0.0/0,::/0")
    assert policy.allows_ip(ip_address("10.0.1.5"))


def test_policy_is_immutable():
    policy = build_policy(".*", "0.0.0.0/0")
    with pytest.raises(ValidationError):
        policy.allowed_dns_names = 5


def test_policy_from_config():
    config = Config(
        provider_regex=r"^.+\.example\.com$",
        provider_ip_prefixes="10.0.0.0/8",
        max_expiration_sec=7200,
        allowed_dns_names=3,
        bypass_dns_resolution=True,
        ignore_non_system_node=True,
    )
    policy = Policy.from_config(config)

    assert policy.name_pattern.pattern == r"^.+\.example\.com$"
    assert policy.max_expiration_seconds == 7200
    assert policy.allowed_dns_names == 3
    assert policy.bypass_dns_resolution
    assert policy.bypass_identity_check
    assert not policy.bypass_hostname_check
