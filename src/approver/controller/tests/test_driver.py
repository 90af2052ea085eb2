"""
测试调和驱动：入队、重新入队、日志指标记录与启停。
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from src.approver.controller import driver as driver_module
from src.approver.controller.driver import ReconcileDriver, record_report
from src.approver.controller.kube import TransientAPIError
from src.approver.controller.reconciler import Reconciler
from src.approver.controller.schemas import Backoff, Outcome, ReconcileReport
from src.approver.csr.dns import StaticResolver
from src.approver.csr.policy import build_policy

SIGNER = "kubernetes.io/kubelet-serving"


class FakeWatcher:
    def __init__(self, names):
        self.names = list(names)
        self.calls = 0

    def watch_names(self, signer_name, stop_event):
        self.calls += 1
        if self.calls == 1:
            yield from self.names
        stop_event.wait(0.05)


@pytest.fixture
def reconciler(fake_api):
    return Reconciler(
        api=fake_api,
        policy=build_policy(r"^.+\.cluster\.local$", "10.0.0.0/16", 31536000, 1),
        resolver=StaticResolver({"worker-1.cluster.local": ["10.0.1.5"]}),
        signer_name=SIGNER,
        backoff=Backoff(max_attempts=1),
        sleep=lambda _: None,
    )


def _counter(outcome):
    return driver_module.RECONCILE_TOTAL.labels(outcome=outcome)._value.get()


def test_process_next_reconciles_and_records(reconciler, fake_api, make_resource):
    fake_api.put(make_resource())
    d = ReconcileDriver(FakeWatcher([]), reconciler, SIGNER)
    before = _counter("approved")

    d.enqueue("csr-worker-1")
    assert d.process_next(timeout=0)

    assert len(fake_api.writes) == 1
    assert _counter("approved") == before + 1
    assert not d.process_next(timeout=0)


def test_transient_error_requeues():
    failing = MagicMock()
    failing.reconcile.side_effect = TransientAPIError("apiserver unavailable")
    d = ReconcileDriver(FakeWatcher([]), failing, SIGNER, requeue_delay=0.05)

    d.enqueue("csr-worker-1")
    assert d.process_next(timeout=0)
    assert d.process_next(timeout=0) is False

    assert d.process_next(timeout=1)
    assert failing.reconcile.call_count == 2
    d.queue.shut_down()


def test_unexpected_error_does_not_kill_worker():
    broken = MagicMock()
    broken.reconcile.side_effect = RuntimeError("boom")
    d = ReconcileDriver(FakeWatcher([]), broken, SIGNER, requeue_delay=10)

    d.enqueue("csr-worker-1")
    assert d.process_next(timeout=0)
    d.queue.shut_down()


def test_record_report_counts_failed_checks():
    from src.approver.csr.schemas import CheckResult

    before = driver_module.CHECK_FAILURES.labels(check="ip_range")._value.get()
    record_report(
        ReconcileReport(
            name="csr-x",
            outcome=Outcome.DENIED,
            checks=[
                CheckResult(name="dns_name_count", passed=True),
                CheckResult(name="ip_range", passed=False, reason="outside"),
            ],
            message="outside",
        )
    )
    assert driver_module.CHECK_FAILURES.labels(check="ip_range")._value.get() == before + 1


def test_start_and_stop(reconciler, fake_api, make_resource):
    fake_api.put(make_resource())
    d = ReconcileDriver(FakeWatcher(["csr-worker-1"]), reconciler, SIGNER, workers=2)

    d.start()
    assert d.running
    deadline = time.monotonic() + 5
    while not fake_api.writes and time.monotonic() < deadline:
        time.sleep(0.01)

    assert d.stop(grace=2)
    assert not d.running
    assert len(fake_api.writes) == 1
    d.enqueue("csr-worker-1")
    assert len(d.queue) == 0


def test_stop_sets_shared_event():
    stop_event = threading.Event()
    d = ReconcileDriver(FakeWatcher([]), MagicMock(), SIGNER, workers=1, stop_event=stop_event)
    d.start()
    d.stop(grace=2)
    assert stop_event.is_set()


def test_aborted_report_requeues_without_decision():
    aborting = MagicMock()
    aborting.reconcile.return_value = ReconcileReport(
        name="csr-worker-1", outcome=Outcome.ABORTED, message="进程正在关闭"
    )
    d = ReconcileDriver(FakeWatcher([]), aborting, SIGNER, requeue_delay=0.05)
    before = _counter("aborted")

    d.enqueue("csr-worker-1")
    assert d.process_next(timeout=0)
    assert _counter("aborted") == before + 1

    assert d.process_next(timeout=1)
    assert aborting.reconcile.call_count == 2
    d.queue.shut_down()
