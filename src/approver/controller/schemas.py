"""
文件功能：
    定义调和控制器对外暴露的数据模型（Pydantic）。

公开接口：
    - Outcome: 单次调和的结果类别
    - ReconcileReport: 单次调和的可观测结果（供日志与指标使用）
    - Backoff: 指数退避参数
"""

from __future__ import annotations

from enum import Enum
from typing import List

from pydantic import BaseModel, ConfigDict, Field

from src.approver.csr.schemas import CheckResult


class Outcome(str, Enum):
    APPROVED = "approved"
    DENIED = "denied"
    PARSE_ERROR = "parse_error"
    MALFORMED = "malformed"
    TRANSIENT_ERROR = "transient_error"
    ABORTED = "aborted"
    ALREADY_DECIDED = "already_decided"
    IGNORED = "ignored"


class ReconcileReport(BaseModel):
    """单次调和结果。"""

    name: str = Field(description="CSR 名称")
    outcome: Outcome = Field(description="结果类别")
    checks: List[CheckResult] = Field(default_factory=list, description="按顺序排列的校验结果")
    message: str = Field(default="", description="写入条件的消息或诊断信息")
    attempts: int = Field(default=1, description="完成本次调和所用的尝试次数")


class Backoff(BaseModel):
    """指数退避：第 n 次重试前等待 min(initial_delay * factor**n, max_delay) 秒。"""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = Field(default=5, ge=1, description="包括首次在内的最多尝试次数")
    initial_delay: float = Field(default=0.05, ge=0, description="首次重试前的等待（秒）")
    factor: float = Field(default=2.0, ge=1, description="每次重试的放大倍数")
    max_delay: float = Field(default=2.0, ge=0, description="单次等待上限（秒）")

    def delay(self, retry: int) -> float:
        return min(self.initial_delay * (self.factor ** retry), self.max_delay)
