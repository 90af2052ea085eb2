"""
调和驱动：监听 CSR 变化 -> 工作队列 -> worker 线程池 -> Reconciler。

负责记录每次调和结果（日志与 Prometheus 指标）、临时故障后的重新入队，以及进程关闭时
停止接收新任务、中止 DNS 解析并在宽限期内等待进行中的写入完成。
"""

from __future__ import annotations

import threading
import time
from typing import Iterator, List, Optional, Protocol

from loguru import logger
from prometheus_client import Counter

from .kube import MalformedRequestError, TransientAPIError
from .queue import WorkQueue
from .reconciler import Reconciler
from .schemas import Outcome, ReconcileReport

RECONCILE_TOTAL = Counter(
    "kubelet_csr_approver_reconcile_total",
    "Number of CSR reconciliations by outcome",
    ["outcome"],
)
CHECK_FAILURES = Counter(
    "kubelet_csr_approver_check_failures_total",
    "Number of failed validation checks by check name",
    ["check"],
)


class CSRWatcher(Protocol):
    def watch_names(self, signer_name: str, stop_event: threading.Event) -> Iterator[str]: ...


def record_report(report: ReconcileReport) -> None:
    """把调和结果写入日志与指标。"""
    RECONCILE_TOTAL.labels(outcome=report.outcome.value).inc()
    for check in report.checks:
        if not check.passed:
            CHECK_FAILURES.labels(check=check.name).inc()

    summary = ", ".join(f"{c.name}={'ok' if c.passed else 'fail'}" for c in report.checks)
    if report.outcome == Outcome.APPROVED:
        logger.info(f"已批准 CSR {report.name}（{summary}）")
    elif report.outcome == Outcome.DENIED:
        logger.info(f"已拒绝 CSR {report.name}（{summary}）：{report.message}")
    elif report.outcome in (Outcome.PARSE_ERROR, Outcome.MALFORMED):
        logger.error(f"CSR {report.name} 保持 Pending，需要人工处理：{report.message}")
    elif report.outcome == Outcome.ABORTED:
        logger.warning(f"CSR {report.name} 的校验被关闭信号中止，保持 Pending：{report.message}")
    else:
        logger.debug(f"跳过 CSR {report.name}：{report.message}")


class ReconcileDriver:
    def __init__(
        self,
        watcher: CSRWatcher,
        reconciler: Reconciler,
        signer_name: str,
        workers: int = 2,
        requeue_delay: float = 5.0,
        watch_retry_delay: float = 5.0,
        stop_event: Optional[threading.Event] = None,
    ) -> None:
        self.watcher = watcher
        self.reconciler = reconciler
        self.signer_name = signer_name
        self.workers = workers
        self.requeue_delay = requeue_delay
        self.watch_retry_delay = watch_retry_delay
        self.stop_event = stop_event or threading.Event()
        self.queue = WorkQueue()
        self._threads: List[threading.Thread] = []

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self.stop_event.is_set()

    def start(self) -> None:
        logger.info(f"启动调和驱动：signer={self.signer_name}, workers={self.workers}")
        watch_thread = threading.Thread(target=self._watch_loop, name="csr-watch", daemon=True)
        watch_thread.start()
        self._threads.append(watch_thread)
        for i in range(self.workers):
            t = threading.Thread(target=self._worker_loop, name=f"csr-worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)

    def stop(self, grace: float = 10.0) -> bool:
        """
        停止驱动。
        :param grace: 等待进行中调和完成的宽限期（秒）。
        :return: 宽限期内所有 worker 是否都已退出。
        """
        logger.info("正在停止调和驱动...")
        self.stop_event.set()
        self.queue.shut_down()
        deadline = time.monotonic() + grace
        workers = [t for t in self._threads if t.name.startswith("csr-worker")]
        for t in workers:
            t.join(max(0.0, deadline - time.monotonic()))
        alive = [t.name for t in workers if t.is_alive()]
        if alive:
            logger.warning(f"宽限期内仍有 worker 未退出: {alive}")
            return False
        logger.info("调和驱动已停止")
        return True

    def enqueue(self, name: str) -> None:
        if not self.stop_event.is_set():
            self.queue.add(name)

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """处理队列中的一个 CSR；队列为空或已关闭时返回 False。"""
        name = self.queue.get(timeout)
        if name is None:
            return False
        try:
            report = self.reconciler.reconcile(name)
            record_report(report)
            if report.outcome == Outcome.ABORTED:
                self.queue.add_after(name, self.requeue_delay)
        except TransientAPIError as e:
            RECONCILE_TOTAL.labels(outcome=Outcome.TRANSIENT_ERROR.value).inc()
            logger.warning(f"CSR {name} 调和遇到临时错误，{self.requeue_delay}s 后重新入队：{e}")
            self.queue.add_after(name, self.requeue_delay)
        except Exception:
            RECONCILE_TOTAL.labels(outcome=Outcome.TRANSIENT_ERROR.value).inc()
            logger.exception(f"CSR {name} 调和出现未预期错误，{self.requeue_delay}s 后重新入队")
            self.queue.add_after(name, self.requeue_delay)
        finally:
            self.queue.done(name)
        return True

    def _worker_loop(self) -> None:
        while not self.queue.shutting_down:
            self.process_next(timeout=0.5)

    def _watch_loop(self) -> None:
        while not self.stop_event.is_set():
            try:
                for name in self.watcher.watch_names(self.signer_name, self.stop_event):
                    self.enqueue(name)
            except (TransientAPIError, MalformedRequestError) as e:
                logger.warning(f"CSR 监听中断，{self.watch_retry_delay}s 后重新建立：{e}")
                self.stop_event.wait(self.watch_retry_delay)
            except Exception:
                logger.exception(f"CSR 监听出现未预期错误，{self.watch_retry_delay}s 后重新建立")
                self.stop_event.wait(self.watch_retry_delay)
