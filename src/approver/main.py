"""
FastAPI 应用入口点：装配调和驱动，并提供健康检查与指标端点。
"""

from __future__ import annotations

import asyncio
import threading
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from loguru import logger
from prometheus_client import make_asgi_app

from src.approver.config import Config, get_config
from src.approver.controller.driver import ReconcileDriver
from src.approver.controller.kube import KubeCSRApi
from src.approver.controller.reconciler import Reconciler
from src.approver.controller.schemas import Backoff
from src.approver.csr.dns import SystemResolver
from src.approver.csr.policy import Policy


def build_driver(config: Config) -> ReconcileDriver:
    """由配置构造 Policy 与各协作者；Policy 非法时抛出 ConfigError。"""
    policy = Policy.from_config(config)
    stop_event = threading.Event()
    resolver = SystemResolver(timeout=config.dns_timeout_seconds, stop_event=stop_event)
    api = KubeCSRApi.from_kubeconfig(config.kubeconfig)
    reconciler = Reconciler(
        api=api,
        policy=policy,
        resolver=resolver,
        signer_name=config.signer_name,
        backoff=Backoff(
            max_attempts=config.retry_attempts,
            initial_delay=config.retry_initial_delay,
            max_delay=config.retry_max_delay,
        ),
    )
    return ReconcileDriver(
        watcher=api,
        reconciler=reconciler,
        signer_name=config.signer_name,
        workers=config.workers,
        requeue_delay=config.requeue_delay_seconds,
        stop_event=stop_event,
    )


def create_app(driver: Optional[ReconcileDriver] = None, config: Optional[Config] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = config or get_config()
        try:
            active = driver or build_driver(cfg)
        except Exception as e:
            logger.error(f"调和驱动初始化失败：{e}")
            raise
        logger.info(f"config: {cfg.model_dump_json(indent=4)}")
        app.state.driver = active
        active.start()
        try:
            yield
        finally:
            await asyncio.to_thread(active.stop, cfg.shutdown_grace_seconds)
            close = getattr(active.reconciler.resolver, "close", None)
            if callable(close):
                close()

    app = FastAPI(title="Kubelet CSR Approver", lifespan=lifespan)
    app.state.driver = None

    @app.get("/healthz")
    async def healthz():
        return {"status": "ok"}

    @app.get("/readyz")
    async def readyz():
        active = app.state.driver
        if active is None or not active.running:
            return JSONResponse(status_code=503, content={"status": "not ready"})
        return {"status": "ready"}

    app.mount("/metrics", make_asgi_app())
    return app


app = create_app()
