"""
证书引导流程的业务逻辑层。
此模块把模板、密钥生成、CA 引导、CSR 构建与签发串成一条流水线，
并负责产物的落盘与证书归属验证，供命令行层调用。
"""

from __future__ import annotations

import base64
import os
import re
import shutil
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from cryptography import x509
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID
from loguru import logger

from src.tlsboot.config import Config

from . import core, keys, request, template
from .errors import SigningError
from .schemas import ArtifactBundle, ArtifactPaths, VerifyCertificateResponse

# 字段名 -> 输出文件名
ARTIFACT_FILES: Dict[str, str] = {
    "ca_key": "cakey.pem",
    "ca_cert": "ca.pem",
    "server_key": "key.pem",
    "server_cert": "cert.pem",
    "csr": "cert.csr",
}
_PRIVATE_ARTIFACTS = {"ca_key", "server_key"}


def build_artifacts(cfg: Config) -> ArtifactBundle:
    """
    在内存中完成整条流水线，不写任何文件。
    :param cfg: 配置。
    :return: 包含 CA 私钥/证书、服务端私钥/证书的 ArtifactBundle。
    :raises ValidationError / CryptoError / SigningError
    """
    key_params = cfg.key_parameters()

    # 先校验输入，再消耗熵
    server_dn = template.materialize(cfg.server_subject_overrides())
    request.parse_san_set(cfg.san)

    ca = core.bootstrap(
        cfg.ca_subject_overrides(),
        cfg.ca_validity_days,
        key_algorithm=cfg.key_algorithm,
        key_parameters=key_params,
    )
    server_keys = keys.generate(cfg.key_algorithm, key_params)
    csr = request.build_request(server_keys, server_dn, cfg.san, cfg.validity_days)
    cert = core.issue(ca, csr)

    if not core.verify_certificate(cert, ca.certificate):
        raise SigningError("签发的证书无法用 CA 公钥验证")

    return ArtifactBundle(
        ca_key=ca.key_pair.private_pem(),
        ca_cert=ca.certificate_pem(),
        server_key=server_keys.private_pem(),
        server_cert=cert.public_bytes(Encoding.PEM),
        csr=csr.to_pem() if cfg.write_csr else None,
        serial_number=cert.serial_number,
    )


def _remove_artifacts(output_dir: Path) -> None:
    for name in ARTIFACT_FILES.values():
        (output_dir / name).unlink(missing_ok=True)


def write_artifacts(bundle: ArtifactBundle, output_dir: Union[str, Path]) -> ArtifactPaths:
    """
    先写入临时目录，全部成功后再逐个移动到目标目录。
    移动过程中失败时删除所有目标产物，避免留下互不匹配的证书与 CA。
    :param bundle: 待写出的产物。
    :param output_dir: 输出目录，不存在时自动创建。
    :return: ArtifactPaths。
    :raises OSError: 写入或移动失败。
    """
    out = Path(output_dir)
    out.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=".tlsboot-", dir=out))
    paths: Dict[str, Path] = {}
    moved = False
    try:
        staged: Dict[str, Path] = {}
        for field, name in ARTIFACT_FILES.items():
            data = getattr(bundle, field)
            if data is None:
                continue
            path = staging / name
            path.write_bytes(data)
            if field in _PRIVATE_ARTIFACTS:
                os.chmod(path, 0o600)
            staged[field] = path

        for field, path in staged.items():
            target = out / path.name
            moved = True
            os.replace(path, target)
            paths[field] = target

        # 上一次生成留下、本次未写出的产物（如 cert.csr）与新 CA 不匹配
        for field, name in ARTIFACT_FILES.items():
            if field not in staged:
                (out / name).unlink(missing_ok=True)
    except OSError as e:
        logger.error(f"写出产物失败: {e}")
        if moved:
            _remove_artifacts(out)
        raise
    finally:
        shutil.rmtree(staging, ignore_errors=True)

    return ArtifactPaths(**paths)


def generate_service(cfg: Config) -> ArtifactPaths:
    """
    完整的引导流程：生成并写出 CA 与服务端的私钥和证书。
    :param cfg: 配置。
    :return: 写出的产物路径。
    """
    bundle = build_artifacts(cfg)
    paths = write_artifacts(bundle, cfg.output_dir)
    logger.info(f"已签发服务端证书 (serial={bundle.serial_number})，产物目录: {cfg.output_dir}")
    logger.info(
        f"use {paths.ca_cert.name}, {paths.server_cert.name}, and {paths.server_key.name}"
    )
    return paths


def _load_certificate_from_input(certificate_input: Union[str, bytes]) -> x509.Certificate:
    """
    尝试从输入中解析证书，兼容以下多种输入形式：
    1) 直接的 PEM 文本（包含 -----BEGIN CERTIFICATE-----），多段时取第一段
    2) Base64 编码的 PEM 文本
    3) DER 二进制，或其 Base64 字符串

    :raises ValueError: 当无法识别/解析证书时
    """
    if isinstance(certificate_input, bytes):
        if b"-----BEGIN CERTIFICATE-----" not in certificate_input:
            try:
                return x509.load_der_x509_certificate(certificate_input)
            except ValueError:
                pass
        text = certificate_input.decode("utf-8", errors="replace").strip()
    else:
        text = certificate_input.strip()

    if "-----BEGIN CERTIFICATE-----" in text:
        pem_blocks = re.findall(
            r"-----BEGIN CERTIFICATE-----[\s\S]*?-----END CERTIFICATE-----",
            text,
        )
        if pem_blocks:
            return x509.load_pem_x509_certificate(pem_blocks[0].encode("utf-8"))

    try:
        decoded = base64.b64decode(text, validate=True)
    except ValueError:
        raise ValueError("无法从输入中解析证书")
    try:
        return x509.load_pem_x509_certificate(decoded)
    except ValueError:
        pass
    try:
        return x509.load_der_x509_certificate(decoded)
    except ValueError:
        raise ValueError("无法从输入中解析证书")


def _get_cn_from_name(name: x509.Name) -> str | None:
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    return str(attrs[0].value) if attrs else None


def _san_strings(cert: x509.Certificate) -> List[str]:
    try:
        ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
    except x509.ExtensionNotFound:
        return []
    return [str(name.value) for name in ext.value]


def verify_certificate_service(
    cert_input: Union[str, bytes],
    ca_input: Union[str, bytes],
    now: Optional[datetime] = None,
) -> VerifyCertificateResponse:
    """
    验证一个证书是否由给定的 CA 签发且当前有效。
    :param cert_input: 证书内容（支持 PEM 文本 或 Base64 编码的 PEM/DER，或 DER 字节）。
    :param ca_input: CA 证书内容，格式同上。
    :return: 验证结果；签名、签发者或有效期任一不满足时 is_issued_by_ca 为 False 并给出原因。
    :raises ValueError: 证书或 CA 证书无法解析。
    """
    cert = _load_certificate_from_input(cert_input)
    ca_cert = _load_certificate_from_input(ca_input)
    now = now or datetime.now(timezone.utc)

    reason: Optional[str] = None
    if cert.issuer != ca_cert.subject:
        reason = "证书签发者与 CA 主体不一致"
    elif not core.verify_certificate(cert, ca_cert):
        reason = "证书签名无法用 CA 公钥验证"
    elif not (cert.not_valid_before_utc <= now <= cert.not_valid_after_utc):
        reason = "证书不在有效期内"

    if reason:
        logger.warning(f"证书验证失败: {reason}")

    return VerifyCertificateResponse(
        is_issued_by_ca=reason is None,
        reason=reason,
        issuer_common_name=_get_cn_from_name(cert.issuer),
        subject_common_name=_get_cn_from_name(cert.subject),
        subject_alt_names=_san_strings(cert),
        serial_number=cert.serial_number,
    )
