"""
决策执行：把校验结果映射为终态条件，并通过 approval 子资源写回。
已有终态条件的对象不会再被写入，保证每个 CSR 最多一次决策。
"""

from __future__ import annotations

from typing import Optional

from src.approver.csr.schemas import APPROVED, DENIED, CSRCondition, CSRResource, ValidationResult

from .kube import CSRApi

APPROVED_REASON = "AutoApproved"
DENIED_REASON = "AutoDenied"


def terminal_condition(csr: CSRResource) -> Optional[CSRCondition]:
    """返回已存在的 Approved/Denied 条件，没有则返回 None。"""
    for condition in csr.conditions:
        if condition.is_terminal:
            return condition
    return None


def build_condition(result: ValidationResult) -> CSRCondition:
    if result.approved:
        return CSRCondition(
            type=APPROVED,
            reason=APPROVED_REASON,
            message=f"kubelet 服务证书自动批准：{len(result.checks)} 项校验全部通过",
        )
    return CSRCondition(
        type=DENIED,
        reason=DENIED_REASON,
        message="kubelet 服务证书自动拒绝：" + "；".join(result.reasons),
    )


def apply_decision(api: CSRApi, csr: CSRResource, result: ValidationResult) -> Optional[CSRCondition]:
    """
    写入决策。
    :return: 写入的条件；对象已有终态条件时不写入并返回 None。
    :raises ConflictError / TransientAPIError / MalformedRequestError: 写入失败。
    """
    if terminal_condition(csr) is not None:
        return None
    condition = build_condition(result)
    api.update_approval(csr, condition)
    return condition
