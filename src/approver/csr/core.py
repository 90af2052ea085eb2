"""
CSR 解析的核心逻辑。
将 kubelet 提交的 PKCS#10 请求解析为 ParsedRequest，不做任何 I/O。
"""

from __future__ import annotations

from ipaddress import IPv4Address, IPv6Address

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.x509.oid import NameOID

from .schemas import ParsedRequest

# kube-controller-manager --cluster-signing-duration 的默认值（365 天）
DEFAULT_EXPIRATION_SECONDS = 365 * 24 * 3600

PEM_MARKER = b"-----BEGIN CERTIFICATE REQUEST-----"


class ParseError(ValueError):
    """CSR 无法解析。不可重试，需要运维人员介入。"""


def _load_csr(request: bytes) -> x509.CertificateSigningRequest:
    """
    按 PEM 或 DER 加载 CSR。
    :param request: PEM 文本或 DER 二进制。
    :return: 解析得到的 CSR 对象。
    :raises ParseError: 如果不是合法的证书请求。
    """
    try:
        if PEM_MARKER in request:
            return x509.load_pem_x509_csr(request.strip())
        return x509.load_der_x509_csr(request)
    except ValueError as e:
        raise ParseError(f"无效的 CSR 格式: {e}") from e


def _subject_common_name(csr: x509.CertificateSigningRequest) -> str:
    try:
        attributes = csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
    except ValueError as e:
        raise ParseError(f"CSR 主题无法解析: {e}") from e
    if not attributes:
        return ""
    value = attributes[0].value
    return value if isinstance(value, str) else value.decode("utf-8", errors="replace")


def _subject_alternative_names(csr: x509.CertificateSigningRequest) -> x509.SubjectAlternativeName | None:
    try:
        return csr.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return None
    except (ValueError, x509.DuplicateExtension, x509.UnsupportedGeneralNameType) as e:
        raise ParseError(f"CSR 的 SAN 扩展无法解析: {e}") from e


def decode_request(
    request: bytes | str,
    username: str,
    expiration_seconds: int | None = None,
    default_expiration_seconds: int = DEFAULT_EXPIRATION_SECONDS,
) -> ParsedRequest:
    """
    解析 CSR 并提取身份与请求的 SAN 信息。
    :param request: PEM 或 DER 编码的 PKCS#10 请求。
    :param username: CSR 对象中记录的请求主体。
    :param expiration_seconds: 请求的有效期，未指定时使用签发者默认值。
    :param default_expiration_seconds: 签发者默认有效期。
    :return: ParsedRequest。
    :raises ParseError: 请求格式错误、签名无效、缺少主题或公钥、SAN 无法解码。
    """
    if isinstance(request, str):
        request = request.encode("utf-8")
    if not request:
        raise ParseError("CSR 内容为空")

    csr = _load_csr(request)

    if len(csr.subject) == 0:
        raise ParseError("CSR 缺少主题 (subject)")

    try:
        csr.public_key()
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise ParseError(f"CSR 公钥无法加载: {e}") from e

    try:
        signature_ok = csr.is_signature_valid
    except (ValueError, UnsupportedAlgorithm) as e:
        raise ParseError(f"CSR 签名无法校验: {e}") from e
    if not signature_ok:
        raise ParseError("CSR 签名校验失败")

    common_name = _subject_common_name(csr)
    san = _subject_alternative_names(csr)

    dns_names: tuple[str, ...] = ()
    ip_addresses: frozenset = frozenset()
    email_addresses: tuple[str, ...] = ()
    uris: tuple[str, ...] = ()
    if san is not None:
        dns_names = tuple(san.get_values_for_type(x509.DNSName))
        ip_values = san.get_values_for_type(x509.IPAddress)
        if not all(isinstance(ip, (IPv4Address, IPv6Address)) for ip in ip_values):
            raise ParseError("CSR 的 SAN IP 条目不是单个地址")
        ip_addresses = frozenset(ip_values)
        email_addresses = tuple(san.get_values_for_type(x509.RFC822Name))
        uris = tuple(san.get_values_for_type(x509.UniformResourceIdentifier))

    return ParsedRequest(
        common_name=common_name,
        dns_names=dns_names,
        ip_addresses=ip_addresses,
        email_addresses=email_addresses,
        uris=uris,
        expiration_seconds=(
            default_expiration_seconds if expiration_seconds is None else expiration_seconds
        ),
        username=username,
    )
