"""
文件功能：
    对解析后的 CSR 执行策略校验，汇总所有未通过项（不短路），供批准/拒绝决策使用。

公开接口：
    - validate: 按固定顺序执行全部适用校验，返回 ValidationResult
    - CHECK_ORDER: 校验名称及其顺序

内部方法：
    - check_*: 单项校验谓词，每个只依赖显式入参
    - node_name_from_username: 从 system:node:<name> 中提取节点名
"""

from __future__ import annotations

from typing import List, Optional, Set

from .dns import ResolutionError, Resolver
from .policy import Policy
from .schemas import CheckResult, IPAddress, ParsedRequest, ValidationResult

NODE_USER_PREFIX = "system:node:"

IDENTITY_SCOPE = "identity_scope"
DNS_NAME_COUNT = "dns_name_count"
NAME_PATTERN = "name_pattern"
RESOLUTION_CONSISTENCY = "resolution_consistency"
HOSTNAME_CONSISTENCY = "hostname_consistency"
IP_RANGE = "ip_range"
DURATION = "duration"

CHECK_ORDER = (
    IDENTITY_SCOPE,
    DNS_NAME_COUNT,
    NAME_PATTERN,
    RESOLUTION_CONSISTENCY,
    HOSTNAME_CONSISTENCY,
    IP_RANGE,
    DURATION,
)


def _passed(name: str) -> CheckResult:
    return CheckResult(name=name, passed=True)


def _failed(name: str, reason: str) -> CheckResult:
    return CheckResult(name=name, passed=False, reason=reason)


def node_name_from_username(username: str) -> Optional[str]:
    """`system:node:worker-1` -> `worker-1`；不符合格式时返回 None。"""
    if not username.startswith(NODE_USER_PREFIX):
        return None
    node_name = username[len(NODE_USER_PREFIX):]
    return node_name or None


def check_identity_scope(username: str) -> CheckResult:
    if node_name_from_username(username) is None:
        return _failed(IDENTITY_SCOPE, f"请求主体 {username!r} 不是 system:node:<节点名> 格式")
    return _passed(IDENTITY_SCOPE)


def check_dns_name_count(dns_names: tuple, allowed: int) -> CheckResult:
    count = len(dns_names)
    if count == 0:
        return _failed(DNS_NAME_COUNT, "CSR 未包含任何 SAN DNS 名称")
    if count > allowed:
        return _failed(DNS_NAME_COUNT, f"CSR 包含 {count} 个 SAN DNS 名称，超过允许的 {allowed} 个")
    return _passed(DNS_NAME_COUNT)


def check_name_pattern(dns_names: tuple, policy: Policy) -> CheckResult:
    mismatched = [name for name in dns_names if policy.name_pattern.fullmatch(name) is None]
    if mismatched:
        return _failed(
            NAME_PATTERN,
            f"SAN DNS 名称 {', '.join(mismatched)} 不匹配 provider regex {policy.name_pattern.pattern!r}",
        )
    return _passed(NAME_PATTERN)


def check_resolution_consistency(
    dns_names: tuple, ip_addresses: frozenset, resolver: Resolver
) -> CheckResult:
    resolved: Set[IPAddress] = set()
    errors: List[str] = []
    for name in dns_names:
        try:
            resolved |= resolver.resolve(name)
        except ResolutionError as e:
            errors.append(str(e))
    if errors:
        return _failed(RESOLUTION_CONSISTENCY, f"DNS 解析失败: {'; '.join(errors)}")
    if not resolved & ip_addresses:
        resolved_text = ", ".join(sorted(str(a) for a in resolved)) or "无"
        requested_text = ", ".join(sorted(str(a) for a in ip_addresses)) or "无"
        return _failed(
            RESOLUTION_CONSISTENCY,
            f"SAN DNS 名称解析得到的地址 [{resolved_text}] 与 SAN IP [{requested_text}] 无交集",
        )
    return _passed(RESOLUTION_CONSISTENCY)


def check_hostname_consistency(node_name: Optional[str], dns_names: tuple) -> CheckResult:
    if node_name is None:
        return _failed(HOSTNAME_CONSISTENCY, "无法从请求主体中提取节点名，不能校验主机名")
    wanted = node_name.lower()
    for name in dns_names:
        lowered = name.lower()
        if lowered == wanted or lowered.split(".", 1)[0] == wanted:
            return _passed(HOSTNAME_CONSISTENCY)
    return _failed(
        HOSTNAME_CONSISTENCY,
        f"节点名 {node_name!r} 与任何 SAN DNS 名称（或其主机名部分）都不一致",
    )


def check_ip_range(ip_addresses: frozenset, policy: Policy) -> CheckResult:
    outside = sorted(str(a) for a in ip_addresses if not policy.allows_ip(a))
    if outside:
        return _failed(IP_RANGE, f"SAN IP {', '.join(outside)} 不在允许的网段内")
    return _passed(IP_RANGE)


def check_duration(expiration_seconds: int, maximum: int) -> CheckResult:
    if expiration_seconds <= 0:
        return _failed(DURATION, f"请求的有效期 {expiration_seconds}s 必须大于 0")
    if expiration_seconds > maximum:
        return _failed(DURATION, f"请求的有效期 {expiration_seconds}s 超过允许的最大值 {maximum}s")
    return _passed(DURATION)


def validate(parsed: ParsedRequest, policy: Policy, resolver: Resolver) -> ValidationResult:
    """
    执行全部适用的校验并汇总结果。
    :param parsed: 解析后的 CSR。
    :param policy: 只读校验策略。
    :param resolver: DNS 解析协作者。
    :return: 每项已执行校验一条记录；全部通过才批准。
    :raises ResolutionAborted: 进程关闭中止了 DNS 解析，此时不给出结论。
    """
    checks: List[CheckResult] = []

    node_name: Optional[str] = None
    if not policy.bypass_identity_check:
        checks.append(check_identity_scope(parsed.username))
        node_name = node_name_from_username(parsed.username)

    checks.append(check_dns_name_count(parsed.dns_names, policy.allowed_dns_names))
    checks.append(check_name_pattern(parsed.dns_names, policy))

    if not policy.bypass_dns_resolution:
        checks.append(
            check_resolution_consistency(parsed.dns_names, parsed.ip_addresses, resolver)
        )

    # 身份校验被跳过时没有可比对的节点名
    if not policy.bypass_hostname_check and not policy.bypass_identity_check:
        checks.append(check_hostname_consistency(node_name, parsed.dns_names))

    checks.append(check_ip_range(parsed.ip_addresses, policy))
    checks.append(check_duration(parsed.expiration_seconds, policy.max_expiration_seconds))

    return ValidationResult(checks=checks)
