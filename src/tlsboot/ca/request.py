"""
证书签名请求（CSR）构建。

CSR 携带服务端公钥、主体、请求的扩展（basicConstraints=CA:FALSE、keyUsage、subjectAltName），
并由服务端自己的私钥签名，作为持有私钥的证明（proof of possession）。
"""

from __future__ import annotations

import hashlib
import ipaddress
from typing import Iterable, List, Optional, Sequence, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509.oid import ObjectIdentifier
from loguru import logger
from pydantic import BaseModel, ConfigDict

from .errors import ValidationError
from .keys import KeyPair, PublicKey, verify_signature
from .template import DistinguishedName

# Netscape Comment 扩展，内容为 DER 编码的 IA5String
NS_COMMENT_OID = ObjectIdentifier("2.16.840.1.113730.1.13")
NS_COMMENT = "Certificate"

SanEntry = Union[str, x509.DNSName, x509.IPAddress]


def _ns_comment_extension(comment: str) -> x509.UnrecognizedExtension:
    raw = comment.encode("ascii")
    if len(raw) > 127:
        raise ValidationError("证书注释过长")
    return x509.UnrecognizedExtension(NS_COMMENT_OID, bytes([0x16, len(raw)]) + raw)


def parse_san_entry(entry: SanEntry) -> x509.GeneralName:
    """
    将单个 SAN 条目解析为 GeneralName。
    可解析为 IPv4/IPv6 的字符串视为 IP 地址，DNS:/IP: 前缀可强制类型，其余视为 DNS 名称。
    :raises ValidationError: 条目为空或格式非法。
    """
    if isinstance(entry, (x509.DNSName, x509.IPAddress)):
        return entry

    text = str(entry).strip()
    lowered = text.lower()
    if lowered.startswith("ip:"):
        try:
            return x509.IPAddress(ipaddress.ip_address(text[3:].strip()))
        except ValueError:
            raise ValidationError(f"无效的 IP SAN 条目: {entry}")
    if lowered.startswith("dns:"):
        text = text[4:].strip()
    else:
        try:
            return x509.IPAddress(ipaddress.ip_address(text))
        except ValueError:
            pass

    if not text or not text.isascii() or any(ch.isspace() for ch in text):
        raise ValidationError(f"无效的 DNS SAN 条目: {entry!r}")
    return x509.DNSName(text)


def parse_san_set(san_set: Iterable[SanEntry]) -> List[x509.GeneralName]:
    """解析 SAN 列表，保持顺序；重复条目允许但会记录警告。"""
    names: List[x509.GeneralName] = []
    for entry in san_set:
        name = parse_san_entry(entry)
        if name in names:
            logger.warning(f"SAN 条目重复: {name.value}")
        names.append(name)
    if not names:
        raise ValidationError("SAN 列表不能为空：服务端证书至少需要一个备用名称")
    return names


class CertificateRequest(BaseModel):
    """
    已签名的 CSR 及其请求的有效期。构建后不可修改。
    proof_signature / signed_body 即持有私钥的证明，可用 verify_proof 独立验证。
    """

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    csr: x509.CertificateSigningRequest
    subject: DistinguishedName
    requested_validity_days: int

    @property
    def public_key(self) -> PublicKey:
        return self.csr.public_key()

    @property
    def extensions(self) -> x509.Extensions:
        return self.csr.extensions

    @property
    def proof_signature(self) -> bytes:
        return self.csr.signature

    @property
    def signed_body(self) -> bytes:
        return self.csr.tbs_certrequest_bytes

    @property
    def subject_alt_names(self) -> List[x509.GeneralName]:
        try:
            ext = self.csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        except x509.ExtensionNotFound:
            return []
        return list(ext.value)

    @property
    def fingerprint(self) -> str:
        return hashlib.sha256(self.to_der()).hexdigest()

    def verify_proof(self) -> bool:
        """用 CSR 内嵌的公钥验证其自签名。"""
        return verify_signature(
            self.public_key,
            self.proof_signature,
            self.signed_body,
            self.csr.signature_hash_algorithm,
        )

    def to_pem(self) -> bytes:
        return self.csr.public_bytes(serialization.Encoding.PEM)

    def to_der(self) -> bytes:
        return self.csr.public_bytes(serialization.Encoding.DER)

    @classmethod
    def from_csr(cls, csr: x509.CertificateSigningRequest, validity_days: int) -> "CertificateRequest":
        if validity_days <= 0:
            raise ValidationError(f"有效期必须为正数: {validity_days}")
        return cls(
            csr=csr,
            subject=DistinguishedName.from_x509_name(csr.subject),
            requested_validity_days=validity_days,
        )

    @classmethod
    def from_pem(cls, data: bytes, validity_days: int) -> "CertificateRequest":
        """
        包装外部生成的 PEM 格式 CSR。
        :raises ValidationError: CSR 无法解析或主体不合法。
        """
        try:
            csr = x509.load_pem_x509_csr(data)
        except ValueError as e:
            raise ValidationError("无效的 CSR 格式") from e
        return cls.from_csr(csr, validity_days)

    @classmethod
    def from_der(cls, data: bytes, validity_days: int) -> "CertificateRequest":
        try:
            csr = x509.load_der_x509_csr(data)
        except ValueError as e:
            raise ValidationError("无效的 CSR 格式") from e
        return cls.from_csr(csr, validity_days)


def build_request(
    server_key_pair: KeyPair,
    dn: DistinguishedName,
    san_set: Sequence[SanEntry],
    validity_days: int,
    comment: Optional[str] = NS_COMMENT,
) -> CertificateRequest:
    """
    为服务端密钥对构建 CSR，并用服务端私钥签名。
    :param server_key_pair: 服务端密钥对，私钥只用于 CSR 自签名。
    :param dn: 物化后的证书主体。
    :param san_set: SAN 条目（DNS 名称或 IP 地址），至少一个。
    :param validity_days: 请求的有效期（天）。
    :param comment: Netscape Comment 扩展内容，None 表示不添加。
    :return: CertificateRequest。
    :raises ValidationError: SAN 为空或非法，或有效期非正数。
    """
    if validity_days <= 0:
        raise ValidationError(f"有效期必须为正数: {validity_days}")
    alt_names = parse_san_set(san_set)

    builder = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(dn.to_x509_name())
        .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=True,
                key_encipherment=True,
                data_encipherment=False,
                key_agreement=False,
                key_cert_sign=False,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(x509.SubjectAlternativeName(alt_names), critical=False)
    )
    if comment:
        builder = builder.add_extension(_ns_comment_extension(comment), critical=False)

    csr = builder.sign(server_key_pair.private_key, hashes.SHA256())
    logger.debug(
        f"已构建 CSR: subject={csr.subject.rfc4514_string()}, "
        f"san={[str(n.value) for n in alt_names]}"
    )
    return CertificateRequest(csr=csr, subject=dn, requested_validity_days=validity_days)
