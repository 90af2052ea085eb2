"""
DNS 解析协作者。

校验器只依赖 `resolve(name) -> set[IPAddress]` 这一个操作，失败时抛出
ResolutionError；进程关闭时抛出 ResolutionAborted。生产环境使用 SystemResolver，测试使用 StaticResolver。
"""

from __future__ import annotations

import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from ipaddress import ip_address
from typing import Dict, Iterable, Mapping, Optional, Protocol, Set

from .schemas import IPAddress

# 等待解析结果时检查关闭信号的间隔
_POLL_INTERVAL = 0.05


class ResolutionError(OSError):
    """名称解析失败（超时或不存在）。"""


class ResolutionAborted(Exception):
    """进程关闭时中止了解析。不是校验结论，调用方应保持 CSR 为 Pending。"""


class Resolver(Protocol):
    def resolve(self, name: str) -> Set[IPAddress]: ...


def _lookup(name: str) -> Set[IPAddress]:
    addresses: Set[IPAddress] = set()
    for _family, _type, _proto, _canon, sockaddr in socket.getaddrinfo(name, None):
        # IPv6 链路本地地址可能带 %scope 后缀
        host = str(sockaddr[0]).split("%", 1)[0]
        addresses.add(ip_address(host))
    return addresses


class SystemResolver:
    """
    使用系统解析器（getaddrinfo）的实现。
    每次解析在线程池中执行，等待时间受 timeout 约束；stop_event 置位后立即放弃等待。
    """

    def __init__(
        self,
        timeout: float = 1.0,
        stop_event: Optional[threading.Event] = None,
        max_workers: int = 4,
    ) -> None:
        self.timeout = timeout
        self.stop_event = stop_event or threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="dns")

    def resolve(self, name: str) -> Set[IPAddress]:
        if self.stop_event.is_set():
            raise ResolutionAborted(f"解析 {name} 被中止：进程正在关闭")
        future: Future = self._executor.submit(_lookup, name)
        remaining = self.timeout
        while True:
            wait = min(_POLL_INTERVAL, remaining)
            try:
                return future.result(timeout=wait)
            except FutureTimeoutError:
                remaining -= wait
            except (OSError, ValueError) as e:
                raise ResolutionError(f"解析 {name} 失败: {e}") from e
            if self.stop_event.is_set():
                future.cancel()
                raise ResolutionAborted(f"解析 {name} 被中止：进程正在关闭")
            if remaining <= 0:
                future.cancel()
                raise ResolutionError(f"解析 {name} 超时（{self.timeout}s）")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


class StaticResolver:
    """基于固定映射的确定性解析器；未知名称视为不存在。"""

    def __init__(self, records: Mapping[str, Iterable[str]] | None = None) -> None:
        self._records: Dict[str, Set[IPAddress]] = {
            name.lower(): {ip_address(a) for a in addrs} for name, addrs in (records or {}).items()
        }
        self.calls: list[str] = []

    def resolve(self, name: str) -> Set[IPAddress]:
        self.calls.append(name)
        try:
            return set(self._records[name.lower()])
        except KeyError:
            raise ResolutionError(f"解析 {name} 失败: 名称不存在") from None
