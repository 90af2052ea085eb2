"""
文件功能：
    定义 CSR 审批流程使用的数据模型（Pydantic）。

公开接口：
    - CSRCondition: CSR 状态中的一条条件（Approved / Denied / Failed）
    - CSRResource: 集群中一个 CertificateSigningRequest 的快照
    - ParsedRequest: 从 PKCS#10 请求中解析出的身份与 SAN 信息
    - CheckResult: 单项校验结果
    - ValidationResult: 全部校验结果的汇总

内部方法：
    无
"""

from __future__ import annotations

from ipaddress import IPv4Address, IPv6Address
from typing import Any, Dict, FrozenSet, List, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

IPAddress = Union[IPv4Address, IPv6Address]

APPROVED = "Approved"
DENIED = "Denied"
FAILED = "Failed"
TERMINAL_CONDITION_TYPES = frozenset({APPROVED, DENIED})


class CSRCondition(BaseModel):
    """CSR status.conditions 中的一项。"""

    type: str = Field(description="条件类型：Approved / Denied / Failed")
    status: str = Field(default="True", description="条件状态")
    reason: str = Field(default="", description="机器可读的原因")
    message: str = Field(default="", description="给运维人员看的说明")

    @property
    def is_terminal(self) -> bool:
        return self.type in TERMINAL_CONDITION_TYPES and self.status == "True"


class CSRResource(BaseModel):
    """集群中 CertificateSigningRequest 对象的只读快照。"""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str = Field(description="对象名称")
    uid: str = Field(default="", description="对象 UID")
    resource_version: str = Field(default="", description="乐观并发使用的版本号")
    username: str = Field(default="", description="提交请求的主体，如 system:node:worker-1")
    signer_name: str = Field(description="签发者名称")
    request: bytes = Field(description="PEM 编码的 PKCS#10 请求")
    usages: List[str] = Field(default_factory=list, description="请求的密钥用途")
    expiration_seconds: int | None = Field(default=None, description="请求的有效期（秒）")
    conditions: List[CSRCondition] = Field(default_factory=list, description="当前条件集合")
    raw: Any = Field(default=None, exclude=True, repr=False, description="kubernetes 客户端原始对象")


class ParsedRequest(BaseModel):
    """一次调和过程中从 CSR 解析出的请求内容，用完即弃。"""

    model_config = ConfigDict(frozen=True)

    common_name: str = Field(description="主题 CN")
    dns_names: Tuple[str, ...] = Field(default=(), description="按原顺序排列的 SAN DNS 名称")
    ip_addresses: FrozenSet[IPAddress] = Field(default=frozenset(), description="SAN IP 地址集合")
    email_addresses: Tuple[str, ...] = Field(default=(), description="SAN 邮箱地址")
    uris: Tuple[str, ...] = Field(default=(), description="SAN URI")
    expiration_seconds: int = Field(description="生效的请求有效期（秒）")
    username: str = Field(description="提交请求的主体")


class CheckResult(BaseModel):
    """单项校验结果。"""

    model_config = ConfigDict(frozen=True)

    name: str = Field(description="校验名称")
    passed: bool = Field(description="是否通过")
    reason: str = Field(default="", description="未通过时的原因")


class ValidationResult(BaseModel):
    """按固定顺序记录每一项已执行的校验；全部通过才批准。"""

    checks: List[CheckResult] = Field(default_factory=list, description="已执行的校验，按执行顺序")

    @property
    def approved(self) -> bool:
        return all(check.passed for check in self.checks)

    @property
    def failures(self) -> List[CheckResult]:
        return [check for check in self.checks if not check.passed]

    @property
    def reasons(self) -> List[str]:
        return [check.reason for check in self.failures]

    @property
    def by_name(self) -> Dict[str, CheckResult]:
        return {check.name: check for check in self.checks}
