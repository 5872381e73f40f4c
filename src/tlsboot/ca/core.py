"""
本地 CA 的核心逻辑实现。
包括自签根证书的引导、CSR 的校验与签发、证书签名验证。
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Set, Union

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import Encoding
from loguru import logger

from . import keys
from .errors import ExpiredPolicy, InvalidProofOfPossession, PolicyViolation, ValidationError
from .keys import KeyPair, PublicKey
from .request import CertificateRequest
from .template import CA_DEFAULTS, materialize

# CA 有效期两端各留出的时钟偏差余量，同一次引导中签发的同期限证书不会超出 CA 寿命
CLOCK_SKEW = timedelta(minutes=5)


class CertificateAuthority:
    """
    自签根证书、CA 密钥对与序列号计数器。
    序列号从 1 开始单调递增，分配过程由实例自己的锁保护，多个 CA 实例互不影响。
    """

    def __init__(self, certificate: x509.Certificate, key_pair: KeyPair, next_serial: int = 1):
        self.certificate = certificate
        self.key_pair = key_pair
        self._next_serial = next_serial
        self._consumed: Set[str] = set()
        self._lock = threading.Lock()

    @property
    def subject(self) -> x509.Name:
        return self.certificate.subject

    @property
    def public_key(self) -> PublicKey:
        return self.key_pair.public_key

    @property
    def not_valid_after(self) -> datetime:
        return self.certificate.not_valid_after_utc

    def remaining_lifetime(self, now: Optional[datetime] = None) -> timedelta:
        """CA 剩余寿命；已过期返回 0。"""
        now = now or datetime.now(timezone.utc)
        return max(self.not_valid_after - now, timedelta(0))

    def allocate_serial(self, fingerprint: Optional[str] = None) -> int:
        """
        分配下一个序列号；给出 CSR 指纹时同时登记该 CSR 已被使用。
        :raises PolicyViolation: 该 CSR 已由本 CA 签发过。
        """
        with self._lock:
            if fingerprint is not None:
                if fingerprint in self._consumed:
                    raise PolicyViolation("该 CSR 已被本 CA 签发过，不能重复使用")
                self._consumed.add(fingerprint)
            serial = self._next_serial
            self._next_serial += 1
            return serial

    def certificate_pem(self) -> bytes:
        return self.certificate.public_bytes(Encoding.PEM)

    def subject_key_identifier(self) -> Optional[x509.SubjectKeyIdentifier]:
        try:
            return self.certificate.extensions.get_extension_for_class(
                x509.SubjectKeyIdentifier
            ).value
        except x509.ExtensionNotFound:
            return None


def bootstrap(
    template_overrides: Optional[Mapping[str, Optional[str]]],
    validity_days: int,
    key_pair: Optional[KeyPair] = None,
    key_algorithm: str = "rsa",
    key_parameters: Optional[Dict[str, Any]] = None,
) -> CertificateAuthority:
    """
    创建新的自签根 CA。
    :param template_overrides: 覆盖 CA_DEFAULTS 的主体字段。
    :param validity_days: 根证书有效期（天）。
    :param key_pair: 使用已有密钥对；为 None 时新生成。
    :return: 序列号计数器从 1 开始的 CertificateAuthority。
    :raises ValidationError: 有效期非正数或主体不合法。
    :raises CryptoError: 密钥生成失败。
    """
    if validity_days <= 0:
        raise ValidationError(f"CA 有效期必须为正数: {validity_days}")

    subject = materialize(template_overrides, defaults=CA_DEFAULTS).to_x509_name()
    if key_pair is None:
        key_pair = keys.generate(key_algorithm, key_parameters)

    now = datetime.now(timezone.utc)
    ca_cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key_pair.public_key)
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - CLOCK_SKEW)
        .not_valid_after(now + timedelta(days=validity_days) + CLOCK_SKEW)
        .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=False,
                key_cert_sign=True,
                crl_sign=True,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        .add_extension(
            x509.SubjectKeyIdentifier.from_public_key(key_pair.public_key), critical=False
        )
        .sign(private_key=key_pair.private_key, algorithm=hashes.SHA256())
    )
    logger.debug(
        f"已创建根 CA: subject={subject.rfc4514_string()}, "
        f"not_after={ca_cert.not_valid_after_utc.isoformat()}"
    )
    return CertificateAuthority(ca_cert, key_pair)


def _enforce_policy(csr: x509.CertificateSigningRequest) -> None:
    """只允许签发终端实体证书，不合规的扩展直接拒绝而不是剔除。"""
    for ext in csr.extensions:
        value = ext.value
        if isinstance(value, x509.BasicConstraints) and value.ca:
            raise PolicyViolation("终端实体 CSR 不能请求 CA:TRUE")
        if isinstance(value, x509.KeyUsage) and (value.key_cert_sign or value.crl_sign):
            raise PolicyViolation("终端实体 CSR 不能请求 keyCertSign / cRLSign")
        if isinstance(value, x509.AuthorityKeyIdentifier):
            raise PolicyViolation("authorityKeyIdentifier 只能由 CA 设置")
    try:
        csr.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        raise PolicyViolation("CSR 缺少 subjectAltName 扩展")


def issue(
    ca: CertificateAuthority,
    csr: CertificateRequest,
    validity_days: Optional[int] = None,
) -> x509.Certificate:
    """
    使用 CA 对 CSR 签发终端实体证书。
    :param ca: 签发用的 CertificateAuthority。
    :param csr: 待签发的 CertificateRequest。
    :param validity_days: 有效期（天），默认使用 CSR 请求的有效期。
    :return: 签发的 x509.Certificate。
    :raises InvalidProofOfPossession: CSR 自签名验证失败。
    :raises PolicyViolation: CSR 请求了不允许的扩展，或已被签发过。
    :raises ExpiredPolicy: 有效期超出 CA 的剩余寿命。
    :raises ValidationError: 有效期非正数。
    """
    if validity_days is None:
        validity_days = csr.requested_validity_days
    if validity_days <= 0:
        raise ValidationError(f"有效期必须为正数: {validity_days}")

    if not csr.verify_proof():
        logger.error("CSR 自签名验证失败，拒绝签发")
        raise InvalidProofOfPossession("CSR 自签名无法用其内嵌公钥验证")

    _enforce_policy(csr.csr)

    now = datetime.now(timezone.utc)
    not_after = now + timedelta(days=validity_days)
    if not_after > ca.not_valid_after:
        raise ExpiredPolicy(
            f"请求的有效期 {validity_days} 天超出 CA 剩余寿命 {ca.remaining_lifetime(now)}"
        )

    serial = ca.allocate_serial(csr.fingerprint)

    builder = (
        x509.CertificateBuilder()
        .subject_name(csr.csr.subject)
        .issuer_name(ca.subject)
        .public_key(csr.public_key)
        .serial_number(serial)
        .not_valid_before(now)
        .not_valid_after(not_after)
    )

    # 原样复制 CSR 中请求的扩展
    has_ski = False
    for ext in csr.extensions:
        if isinstance(ext.value, x509.SubjectKeyIdentifier):
            has_ski = True
        builder = builder.add_extension(ext.value, critical=ext.critical)

    if not has_ski:
        builder = builder.add_extension(
            x509.SubjectKeyIdentifier.from_public_key(csr.public_key), critical=False
        )
    ca_ski = ca.subject_key_identifier()
    if ca_ski is not None:
        aki = x509.AuthorityKeyIdentifier.from_issuer_subject_key_identifier(ca_ski)
    else:
        aki = x509.AuthorityKeyIdentifier.from_issuer_public_key(ca.public_key)
    builder = builder.add_extension(aki, critical=False)

    cert = builder.sign(private_key=ca.key_pair.private_key, algorithm=hashes.SHA256())
    logger.debug(
        f"已签发证书: serial={serial}, subject={cert.subject.rfc4514_string()}, "
        f"not_after={cert.not_valid_after_utc.isoformat()}"
    )
    return cert


def verify_certificate(
    cert: x509.Certificate, issuer: Union[x509.Certificate, PublicKey]
) -> bool:
    """
    验证证书签名。
    :param cert: 待验证的证书。
    :param issuer: 签发者证书或签发者公钥；给出证书时还会比较 issuer 与其 subject。
    :return: 验证成功返回 True，否则返回 False。
    """
    if isinstance(issuer, x509.Certificate):
        if cert.issuer != issuer.subject:
            return False
        public_key = issuer.public_key()
    else:
        public_key = issuer
    return keys.verify_signature(
        public_key, cert.signature, cert.tbs_certificate_bytes, cert.signature_hash_algorithm
    )
