"""
测试公共夹具：生成真实的 kubelet CSR、假的集群 API。
"""

from __future__ import annotations

import ipaddress
from typing import Dict, List, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from src.approver.controller.kube import ConflictError
from src.approver.csr.schemas import CSRCondition, CSRResource

SIGNER = "kubernetes.io/kubelet-serving"


def build_csr_pem(
    common_name: str = "system:node:worker-1",
    dns_names: tuple = ("worker-1.cluster.local",),
    ip_addresses: tuple = ("10.0.1.5",),
) -> bytes:
    """生成 kubelet 风格的 CSR（EC P-256，O=system:nodes）。"""
    key = ec.generate_private_key(ec.SECP256R1())
    builder = x509.CertificateSigningRequestBuilder().subject_name(
        x509.Name(
            [
                x509.NameAttribute(NameOID.ORGANIZATION_NAME, "system:nodes"),
                x509.NameAttribute(NameOID.COMMON_NAME, common_name),
            ]
        )
    )
    general_names: List[x509.GeneralName] = [x509.DNSName(n) for n in dns_names]
    general_names += [x509.IPAddress(ipaddress.ip_address(a)) for a in ip_addresses]
    if general_names:
        builder = builder.add_extension(x509.SubjectAlternativeName(general_names), critical=False)
    csr = builder.sign(key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM)


class FakeCSRApi:
    """内存中的集群 API，可配置前若干次写入返回冲突。"""

    def __init__(self) -> None:
        self.objects: Dict[str, CSRResource] = {}
        self.writes: List[tuple] = []
        self.gets: List[str] = []
        self.conflicts_remaining = 0
        self.write_error: Optional[Exception] = None

    def put(self, csr: CSRResource) -> CSRResource:
        self.objects[csr.name] = csr
        return csr

    def get(self, name: str) -> Optional[CSRResource]:
        self.gets.append(name)
        csr = self.objects.get(name)
        return csr.model_copy(deep=True) if csr is not None else None

    def update_approval(self, csr: CSRResource, condition: CSRCondition) -> None:
        if self.write_error is not None:
            raise self.write_error
        current = self.objects[csr.name]
        if self.conflicts_remaining > 0 or csr.resource_version != current.resource_version:
            self.conflicts_remaining = max(0, self.conflicts_remaining - 1)
            # 模拟其他写入者更新了对象
            current.resource_version = str(int(current.resource_version or "0") + 1)
            raise ConflictError(f"CSR {csr.name} 版本已过期")
        self.writes.append((csr.name, condition))
        current.conditions.append(condition)
        current.resource_version = str(int(current.resource_version or "0") + 1)


@pytest.fixture
def make_csr_pem():
    return build_csr_pem


@pytest.fixture
def make_resource():
    def _make(
        name: str = "csr-worker-1",
        username: str = "system:node:worker-1",
        signer_name: str = SIGNER,
        expiration_seconds: Optional[int] = 86400,
        conditions: Optional[List[CSRCondition]] = None,
        **csr_kwargs,
    ) -> CSRResource:
        return CSRResource(
            name=name,
            uid=f"uid-{name}",
            resource_version="1",
            username=username,
            signer_name=signer_name,
            request=build_csr_pem(**csr_kwargs),
            usages=["digital signature", "server auth"],
            expiration_seconds=expiration_seconds,
            conditions=list(conditions or []),
        )

    return _make


@pytest.fixture
def fake_api():
    return FakeCSRApi()
