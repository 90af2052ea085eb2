"""
文件功能：
    单个 CSR 的调和流程：读取 -> 解析 -> 校验 -> 决策写入。
    写入冲突或临时故障时，整个“读取并决策”步骤在新版本上重试。

公开接口：
    - Reconciler: 持有只读 Policy 与各协作者，reconcile(name) 返回 ReconcileReport

内部方法：
    - Reconciler._evaluate_and_decide: 单次尝试
"""

from __future__ import annotations

import time
from typing import Callable

from src.approver.csr.core import DEFAULT_EXPIRATION_SECONDS, ParseError, decode_request
from src.approver.csr.dns import ResolutionAborted, Resolver
from src.approver.csr.policy import Policy
from src.approver.csr.validator import validate

from .applier import apply_decision, terminal_condition
from .kube import CSRApi, MalformedRequestError
from .retry import retry_transient
from .schemas import Backoff, Outcome, ReconcileReport


class Reconciler:
    def __init__(
        self,
        api: CSRApi,
        policy: Policy,
        resolver: Resolver,
        signer_name: str,
        backoff: Backoff | None = None,
        sleep: Callable[[float], None] = time.sleep,
        default_expiration_seconds: int = DEFAULT_EXPIRATION_SECONDS,
    ) -> None:
        self.api = api
        self.policy = policy
        self.resolver = resolver
        self.signer_name = signer_name
        self.backoff = backoff or Backoff()
        self.sleep = sleep
        self.default_expiration_seconds = default_expiration_seconds

    def reconcile(self, name: str) -> ReconcileReport:
        """
        调和一个 CSR。
        :param name: CSR 名称。
        :return: 本次调和的结果。
        :raises TransientAPIError: 本地重试用尽，由调用方重新入队。
        """
        return retry_transient(
            lambda attempt: self._evaluate_and_decide(name, attempt),
            self.backoff,
            sleep=self.sleep,
        )

    def _evaluate_and_decide(self, name: str, attempt: int) -> ReconcileReport:
        csr = self.api.get(name)
        if csr is None:
            return ReconcileReport(name=name, outcome=Outcome.IGNORED, message="CSR 不存在", attempts=attempt)
        if csr.signer_name != self.signer_name:
            return ReconcileReport(
                name=name,
                outcome=Outcome.IGNORED,
                message=f"签发者 {csr.signer_name} 不受本控制器管理",
                attempts=attempt,
            )

        existing = terminal_condition(csr)
        if existing is not None:
            return ReconcileReport(
                name=name,
                outcome=Outcome.ALREADY_DECIDED,
                message=f"已存在终态条件 {existing.type}",
                attempts=attempt,
            )

        try:
            parsed = decode_request(
                csr.request,
                username=csr.username,
                expiration_seconds=csr.expiration_seconds,
                default_expiration_seconds=self.default_expiration_seconds,
            )
        except ParseError as e:
            return ReconcileReport(name=name, outcome=Outcome.PARSE_ERROR, message=str(e), attempts=attempt)

        try:
            result = validate(parsed, self.policy, self.resolver)
        except ResolutionAborted as e:
            # 关闭期间的中止不是校验结论，不写入任何条件
            return ReconcileReport(name=name, outcome=Outcome.ABORTED, message=str(e), attempts=attempt)

        try:
            condition = apply_decision(self.api, csr, result)
        except MalformedRequestError as e:
            return ReconcileReport(
                name=name,
                outcome=Outcome.MALFORMED,
                checks=result.checks,
                message=str(e),
                attempts=attempt,
            )

        return ReconcileReport(
            name=name,
            outcome=Outcome.APPROVED if result.approved else Outcome.DENIED,
            checks=result.checks,
            message=condition.message if condition else "",
            attempts=attempt,
        )
