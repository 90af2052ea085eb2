"""
文件功能：
    集群 API 适配层：读取 CSR、写入审批条件、监听 CSR 变化，并把 kubernetes 客户端的
    异常统一转换为本项目的错误分类。

公开接口：
    - CSRApi: 调和流程依赖的最小接口
    - KubeCSRApi: 基于 kubernetes 官方客户端的实现
    - to_resource: V1CertificateSigningRequest -> CSRResource
    - TransientAPIError / ConflictError / MalformedRequestError: 错误分类

内部方法：
    - _translate: ApiException -> 错误分类
"""

from __future__ import annotations

import base64
import binascii
import copy
import threading
from datetime import datetime, timezone
from typing import Iterator, Optional, Protocol

from kubernetes import client, watch
from kubernetes import config as kube_config
from kubernetes.client.exceptions import ApiException
from kubernetes.config.config_exception import ConfigException
from loguru import logger
from urllib3.exceptions import HTTPError

from src.approver.csr.schemas import CSRCondition, CSRResource

WATCH_TIMEOUT_SECONDS = 60


class TransientAPIError(RuntimeError):
    """可重试的 API 错误：网络故障、服务端 5xx、限流。"""


class ConflictError(TransientAPIError):
    """对象版本过期导致的写入冲突（HTTP 409）。"""


class MalformedRequestError(RuntimeError):
    """不可重试的 4xx 错误，CSR 保持 Pending 并记录诊断。"""


class CSRApi(Protocol):
    def get(self, name: str) -> Optional[CSRResource]: ...

    def update_approval(self, csr: CSRResource, condition: CSRCondition) -> None: ...


def _translate(e: ApiException, action: str) -> Exception:
    status = e.status or 0
    detail = f"{action} 失败 (HTTP {status}): {e.reason}"
    if status == 409:
        return ConflictError(detail)
    if 400 <= status < 500 and status != 429:
        return MalformedRequestError(detail)
    return TransientAPIError(detail)


def _decode_request(value) -> bytes:
    """客户端把 format=byte 字段保留为 base64 字符串。"""
    if value is None:
        return b""
    if isinstance(value, bytes):
        return value
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return value.encode("utf-8")


def to_resource(obj: client.V1CertificateSigningRequest) -> CSRResource:
    metadata = obj.metadata
    spec = obj.spec
    status = obj.status
    conditions = [
        CSRCondition(
            type=c.type,
            status=c.status or "True",
            reason=c.reason or "",
            message=c.message or "",
        )
        for c in ((status.conditions if status else None) or [])
    ]
    return CSRResource(
        name=metadata.name,
        uid=metadata.uid or "",
        resource_version=metadata.resource_version or "",
        username=spec.username or "",
        signer_name=spec.signer_name,
        request=_decode_request(spec.request),
        usages=list(spec.usages or []),
        expiration_seconds=spec.expiration_seconds,
        conditions=conditions,
        raw=obj,
    )


class KubeCSRApi:
    """基于 CertificatesV1Api 的实现。"""

    def __init__(self, certificates_api: client.CertificatesV1Api) -> None:
        self.certificates_api = certificates_api
        # 上一次监听看到的 resourceVersion；为空时从全量列表开始
        self._resource_version: Optional[str] = None

    @classmethod
    def from_kubeconfig(cls, kubeconfig: str | None = None) -> "KubeCSRApi":
        """优先使用指定的 kubeconfig，否则尝试集群内配置，最后回退到默认 kubeconfig。"""
        if kubeconfig:
            kube_config.load_kube_config(config_file=kubeconfig)
        else:
            try:
                kube_config.load_incluster_config()
            except ConfigException:
                logger.debug("未检测到集群内配置，回退到默认 kubeconfig")
                kube_config.load_kube_config()
        return cls(client.CertificatesV1Api())

    def get(self, name: str) -> Optional[CSRResource]:
        try:
            obj = self.certificates_api.read_certificate_signing_request(name)
        except ApiException as e:
            if e.status == 404:
                return None
            raise _translate(e, f"读取 CSR {name}") from e
        except HTTPError as e:
            raise TransientAPIError(f"读取 CSR {name} 失败: {e}") from e
        return to_resource(obj)

    def update_approval(self, csr: CSRResource, condition: CSRCondition) -> None:
        """
        通过 approval 子资源写入一条条件；携带读取时的 resourceVersion，版本过期时返回 409。
        """
        if csr.raw is None:
            raise MalformedRequestError(f"CSR {csr.name} 缺少原始对象，无法写入审批结果")
        body = copy.deepcopy(csr.raw)
        if body.status is None:
            body.status = client.V1CertificateSigningRequestStatus()
        body.status.conditions = list(body.status.conditions or []) + [
            client.V1CertificateSigningRequestCondition(
                type=condition.type,
                status=condition.status,
                reason=condition.reason,
                message=condition.message,
                last_update_time=datetime.now(timezone.utc),
            )
        ]
        try:
            self.certificates_api.replace_certificate_signing_request_approval(csr.name, body)
        except ApiException as e:
            raise _translate(e, f"更新 CSR {csr.name} 审批状态") from e
        except HTTPError as e:
            raise TransientAPIError(f"更新 CSR {csr.name} 审批状态失败: {e}") from e

    def watch_names(self, signer_name: str, stop_event: threading.Event) -> Iterator[str]:
        """
        监听指定签发者的 CSR 变化，逐个产出对象名称；流超时后返回，由调用方重新建立。
        重新建立时从上次看到的 resourceVersion 继续；版本过期（HTTP 410）时清空，下次从全量列表开始。
        :raises TransientAPIError: 监听失败。
        """
        kwargs = {}
        if self._resource_version:
            kwargs["resource_version"] = self._resource_version
        w = watch.Watch()
        try:
            for event in w.stream(
                self.certificates_api.list_certificate_signing_request,
                field_selector=f"spec.signerName={signer_name}",
                timeout_seconds=WATCH_TIMEOUT_SECONDS,
                **kwargs,
            ):
                if stop_event.is_set():
                    break
                metadata = event["object"].metadata
                if metadata.resource_version:
                    self._resource_version = metadata.resource_version
                if event.get("type") == "DELETED":
                    continue
                yield metadata.name
        except ApiException as e:
            if e.status == 410:
                logger.info(f"监听的 resourceVersion {self._resource_version} 已过期，重新列出 CSR")
                self._resource_version = None
                return
            raise _translate(e, "监听 CSR") from e
        except HTTPError as e:
            raise TransientAPIError(f"监听 CSR 失败: {e}") from e
        finally:
            w.stop()
