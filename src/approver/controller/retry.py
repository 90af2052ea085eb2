"""
显式的有界重试封装。

只对 TransientAPIError（含写入冲突）重试，其他异常原样抛出；
sleep 可注入，便于测试中使用假时钟。
"""

from __future__ import annotations

import time
from typing import Callable, TypeVar

from loguru import logger

from .kube import TransientAPIError
from .schemas import Backoff

T = TypeVar("T")


def retry_transient(
    fn: Callable[[int], T],
    backoff: Backoff,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    以指数退避重试 fn，直到成功或尝试次数用尽。
    :param fn: 接收当前尝试序号（从 1 开始）的操作。
    :param backoff: 退避参数。
    :param sleep: 等待函数。
    :return: fn 的返回值。
    :raises TransientAPIError: 最后一次尝试仍失败。
    """
    attempt = 1
    while True:
        try:
            return fn(attempt)
        except TransientAPIError as e:
            if attempt >= backoff.max_attempts:
                raise
            delay = backoff.delay(attempt - 1)
            logger.debug(f"第 {attempt} 次尝试失败（{e}），{delay:.2f}s 后重试")
            sleep(delay)
            attempt += 1
