"""
文件功能：
    校验策略 Policy 的定义与构造。Policy 在启动时由配置构造一次，之后只读。

公开接口：
    - Policy: 预编译好的只读校验参数
    - build_policy: 从原始参数构造 Policy
    - ConfigError: 参数非法（启动期致命错误）

内部方法：
    - _parse_ip_prefixes: 解析逗号分隔的 CIDR 列表
"""

from __future__ import annotations

import re
from ipaddress import IPv4Network, IPv6Network, ip_network
from re import Pattern
from typing import TYPE_CHECKING, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

from .schemas import IPAddress

if TYPE_CHECKING:
    from src.approver.config import Config

IPNetwork = Union[IPv4Network, IPv6Network]

MAX_EXPIRATION_LIMIT = 367 * 24 * 3600
MAX_ALLOWED_DNS_NAMES = 1000


class ConfigError(ValueError):
    """策略参数非法，进程应在启动时退出。"""


class Policy(BaseModel):
    """预编译的校验策略，构造后不可修改，可被多个 worker 无锁并发读取。"""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name_pattern: Pattern[str] = Field(description="SAN DNS 名称需完整匹配的正则")
    ip_networks: Tuple[IPNetwork, ...] = Field(description="允许的 IP 网段")
    max_expiration_seconds: int = Field(description="允许的最长有效期（秒）")
    allowed_dns_names: int = Field(description="允许的 SAN DNS 名称数量上限")
    bypass_dns_resolution: bool = Field(default=False, description="跳过 DNS 解析一致性校验")
    bypass_hostname_check: bool = Field(default=False, description="跳过主机名一致性校验")
    bypass_identity_check: bool = Field(default=False, description="跳过 system:node 身份校验")

    def allows_ip(self, address: IPAddress) -> bool:
        """地址落在任一允许网段内（IP 版本必须一致）。"""
        return any(
            address.version == network.version and address in network
            for network in self.ip_networks
        )

    @classmethod
    def from_config(cls, config: "Config") -> "Policy":
        return build_policy(
            regex=config.provider_regex,
            ip_prefixes=config.provider_ip_prefixes,
            max_expiration_seconds=config.max_expiration_sec,
            allowed_dns_names=config.allowed_dns_names,
            bypass_dns_resolution=config.bypass_dns_resolution,
            bypass_hostname_check=config.bypass_hostname_check,
            bypass_identity_check=config.ignore_non_system_node,
        )


def _parse_ip_prefixes(ip_prefixes: str) -> Tuple[IPNetwork, ...]:
    networks = []
    for item in ip_prefixes.split(","):
        prefix = item.strip()
        if not prefix:
            raise ConfigError(f"IP 网段列表中存在空项: {ip_prefixes!r}")
        try:
            networks.append(ip_network(prefix, strict=False))
        except ValueError as e:
            raise ConfigError(f"无法解析 IP 网段: {prefix}") from e
    return tuple(networks)


def build_policy(
    regex: str,
    ip_prefixes: str,
    max_expiration_seconds: int = MAX_EXPIRATION_LIMIT,
    allowed_dns_names: int = 1,
    bypass_dns_resolution: bool = False,
    bypass_hostname_check: bool = False,
    bypass_identity_check: bool = False,
) -> Policy:
    """
    构造 Policy。
    :param regex: SAN DNS 名称需完整匹配的正则。
    :param ip_prefixes: 逗号分隔的允许网段，如 "10.0.0.0/16,fc00::/7"。
    :param max_expiration_seconds: 最长有效期，范围 [0, 367 天]。
    :param allowed_dns_names: SAN DNS 名称数量上限，范围 [1, 1000]。
    :return: 只读的 Policy。
    :raises ConfigError: 任一参数非法。
    """
    if not regex:
        raise ConfigError("必须指定 provider regex")
    try:
        pattern = re.compile(regex)
    except re.error as e:
        raise ConfigError(f"无法编译 provider regex {regex!r}: {e}") from e

    if max_expiration_seconds < 0 or max_expiration_seconds > MAX_EXPIRATION_LIMIT:
        raise ConfigError("最大有效期不能小于 0 秒，也不能超过 367 天")
    if allowed_dns_names < 1 or allowed_dns_names > MAX_ALLOWED_DNS_NAMES:
        raise ConfigError("允许的 DNS 名称数量必须在 1 到 1000 之间")

    return Policy(
        name_pattern=pattern,
        ip_networks=_parse_ip_prefixes(ip_prefixes),
        max_expiration_seconds=max_expiration_seconds,
        allowed_dns_names=allowed_dns_names,
        bypass_dns_resolution=bypass_dns_resolution,
        bypass_hostname_check=bypass_hostname_check,
        bypass_identity_check=bypass_identity_check,
    )
