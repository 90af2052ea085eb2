"""
按键去重的工作队列。

- 同一个键在任一时刻最多被一个 worker 处理；
- 处理期间再次到达的通知会被合并，处理结束后重新入队一次；
- 支持延迟重新入队（临时故障后的 requeue）。
"""

from __future__ import annotations

import threading
from collections import deque
from typing import Deque, Optional, Set


class WorkQueue:
    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._queue: Deque[str] = deque()
        self._dirty: Set[str] = set()
        self._processing: Set[str] = set()
        self._timers: Set[threading.Timer] = set()
        self._shutting_down = False

    def add(self, key: str) -> None:
        with self._cond:
            if self._shutting_down or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def add_after(self, key: str, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return

        def fire() -> None:
            with self._cond:
                self._timers.discard(timer)
            self.add(key)

        timer = threading.Timer(delay, fire)
        timer.daemon = True
        with self._cond:
            if self._shutting_down:
                return
            self._timers.add(timer)
        timer.start()

    def get(self, timeout: Optional[float] = None) -> Optional[str]:
        """取出一个键；队列关闭或等待超时返回 None。"""
        with self._cond:
            if not self._queue and not self._shutting_down:
                self._cond.wait(timeout)
            if not self._queue:
                return None
            key = self._queue.popleft()
            self._processing.add(key)
            self._dirty.discard(key)
            return key

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            timers = list(self._timers)
            self._timers.clear()
            self._queue.clear()
            self._cond.notify_all()
        for timer in timers:
            timer.cancel()

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)
