"""
非对称密钥对生成。
支持 RSA（默认 2048 位，低于 2048 位拒绝）与 EC（secp256r1 / secp384r1 / secp521r1）。
"""

from __future__ import annotations

from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from loguru import logger
from pydantic import BaseModel, ConfigDict

from .errors import CryptoError

PrivateKey = Union[rsa.RSAPrivateKey, ec.EllipticCurvePrivateKey]
PublicKey = Union[rsa.RSAPublicKey, ec.EllipticCurvePublicKey]

RSA_MIN_KEY_SIZE = 2048
RSA_DEFAULT_KEY_SIZE = 2048

_CURVES: Dict[str, type] = {
    "secp256r1": ec.SECP256R1,
    "secp384r1": ec.SECP384R1,
    "secp521r1": ec.SECP521R1,
}


class KeyPair(BaseModel):
    """一对私钥/公钥及其算法标识（如 rsa-2048、ec-secp256r1）。"""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    algorithm: str
    private_key: PrivateKey
    public_key: PublicKey

    def private_pem(self) -> bytes:
        """PKCS#8 PEM，不加密（与 openssl -nodes 一致）。"""
        return self.private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )

    def public_pem(self) -> bytes:
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )


def _generate_rsa(parameters: Dict[str, Any]) -> rsa.RSAPrivateKey:
    key_size = parameters.get("key_size", RSA_DEFAULT_KEY_SIZE)
    public_exponent = parameters.get("public_exponent", 65537)
    if not isinstance(key_size, int) or key_size < RSA_MIN_KEY_SIZE:
        raise CryptoError(f"RSA 密钥长度不能低于 {RSA_MIN_KEY_SIZE} 位: {key_size}")
    if public_exponent not in (3, 65537):
        raise CryptoError(f"不支持的 RSA 公钥指数: {public_exponent}")
    return rsa.generate_private_key(public_exponent=public_exponent, key_size=key_size)


def _generate_ec(parameters: Dict[str, Any]) -> ec.EllipticCurvePrivateKey:
    curve_name = str(parameters.get("curve", "secp256r1")).lower()
    curve_cls = _CURVES.get(curve_name)
    if curve_cls is None:
        raise CryptoError(f"不支持的椭圆曲线: {curve_name}")
    return ec.generate_private_key(curve_cls())


def generate(algorithm: str = "rsa", parameters: Optional[Dict[str, Any]] = None) -> KeyPair:
    """
    生成新的密钥对，随机源为操作系统的 CSPRNG。
    :param algorithm: "rsa" 或 "ec"。
    :param parameters: RSA 支持 key_size / public_exponent，EC 支持 curve。
    :return: KeyPair。
    :raises CryptoError: 算法或参数不被接受，或底层生成失败。
    """
    params = dict(parameters or {})
    algo = algorithm.lower()
    if algo == "rsa":
        generator = _generate_rsa
    elif algo == "ec":
        generator = _generate_ec
    else:
        raise CryptoError(f"不支持的密钥算法: {algorithm}")

    try:
        private_key = generator(params)
    except CryptoError:
        raise
    except (ValueError, TypeError, OSError) as e:
        logger.error(f"密钥生成失败: {e}")
        raise CryptoError(f"密钥生成失败: {e}") from e

    if algo == "rsa":
        label = f"rsa-{private_key.key_size}"
    else:
        label = f"ec-{private_key.curve.name}"
    logger.debug(f"已生成密钥对: {label}")
    return KeyPair(algorithm=label, private_key=private_key, public_key=private_key.public_key())


def verify_signature(
    public_key: PublicKey,
    signature: bytes,
    data: bytes,
    hash_algorithm: Optional[hashes.HashAlgorithm],
) -> bool:
    """
    使用公钥验证签名，RSA 采用 PKCS#1 v1.5，EC 采用 ECDSA。
    :return: 验证成功返回 True，否则返回 False。
    """
    if hash_algorithm is None:
        return False
    try:
        if isinstance(public_key, rsa.RSAPublicKey):
            public_key.verify(signature, data, padding.PKCS1v15(), hash_algorithm)
        elif isinstance(public_key, ec.EllipticCurvePublicKey):
            public_key.verify(signature, data, ec.ECDSA(hash_algorithm))
        else:
            return False
        return True
    except (ValueError, InvalidSignature):
        return False
