"""
测试 FastAPI 应用：生命周期中驱动的启停、健康检查与指标端点。
"""

from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from src.approver.config import Config
from src.approver.csr.policy import ConfigError
from src.approver.main import build_driver, create_app


class FakeDriver:
    def __init__(self):
        self.started = False
        self.stopped_with = None
        self.reconciler = MagicMock()

    @property
    def running(self):
        return self.started and self.stopped_with is None

    def start(self):
        self.started = True

    def stop(self, grace):
        self.stopped_with = grace
        return True


def test_lifespan_starts_and_stops_driver():
    driver = FakeDriver()
    app = create_app(driver=driver, config=Config(shutdown_grace_seconds=3))

    with TestClient(app) as client:
        assert driver.started
        assert client.get("/healthz").json() == {"status": "ok"}
        assert client.get("/readyz").status_code == 200

    assert driver.stopped_with == 3
    driver.reconciler.resolver.close.assert_called_once()


def test_readyz_without_driver():
    client = TestClient(create_app(driver=FakeDriver(), config=Config()))
    # 未进入 lifespan 时驱动尚未装配
    assert client.get("/readyz").status_code == 503


def test_metrics_endpoint():
    with TestClient(create_app(driver=FakeDriver(), config=Config())) as client:
        response = client.get("/metrics/")
    assert response.status_code == 200
    assert "kubelet_csr_approver_reconcile" in response.text


def test_build_driver_rejects_invalid_policy():
    with pytest.raises(ConfigError):
        build_driver(Config(provider_ip_prefixes="not-a-prefix"))


def test_build_driver_wires_collaborators():
    config = Config(workers=3, retry_attempts=7, signer_name="kubernetes.io/kubelet-serving")
    with patch("src.approver.main.KubeCSRApi.from_kubeconfig") as from_kubeconfig:
        driver = build_driver(config)

    from_kubeconfig.assert_called_once_with(None)
    assert driver.workers == 3
    assert driver.reconciler.backoff.max_attempts == 7
    assert driver.reconciler.resolver.stop_event is driver.stop_event
    driver.reconciler.resolver.close()
