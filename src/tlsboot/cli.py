"""
命令行入口。

- generate: 生成 CA 与服务端的私钥和证书
- verify: 验证证书是否由给定 CA 签发
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import pydantic
from loguru import logger

from src.tlsboot.ca import services
from src.tlsboot.ca.errors import CryptoError, SigningError, ValidationError
from src.tlsboot.config import Config

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2

# 命令行参数名 -> Config 字段
_OVERRIDES = {
    "output_dir": "output_dir",
    "country": "country",
    "state": "state",
    "locality": "locality",
    "organization": "organization",
    "organizational_unit": "organizational_unit",
    "common_name": "common_name",
    "ca_common_name": "ca_common_name",
    "san": "san",
    "days": "validity_days",
    "ca_days": "ca_validity_days",
    "key_algorithm": "key_algorithm",
    "key_size": "key_size",
    "curve": "ec_curve",
    "write_csr": "write_csr",
    "log_level": "log_level",
}


def setup_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def load_config(args: argparse.Namespace) -> Config:
    """命令行参数优先于环境变量、.env 与 config.json。"""
    overrides: Dict[str, Any] = {}
    for arg_name, field in _OVERRIDES.items():
        value = getattr(args, arg_name, None)
        if value is not None:
            overrides[field] = value
    return Config(**overrides)


def cmd_generate(args: argparse.Namespace) -> int:
    try:
        cfg = load_config(args)
    except pydantic.ValidationError as e:
        logger.error(f"配置不合法: {e}")
        return EXIT_USAGE
    setup_logging(cfg.log_level)

    try:
        paths = services.generate_service(cfg)
    except (ValidationError, CryptoError) as e:
        logger.error(f"参数错误: {e}")
        return EXIT_USAGE
    except SigningError as e:
        logger.error(f"证书签发失败: {e}")
        return EXIT_FAILED
    except OSError as e:
        logger.error(f"写出产物失败: {e}")
        return EXIT_FAILED

    for field, path in paths.model_dump(exclude_none=True).items():
        print(f"{field}: {path}")
    return EXIT_OK


def cmd_verify(args: argparse.Namespace) -> int:
    if args.log_level:
        setup_logging(args.log_level)
    try:
        cert_data = Path(args.cert).read_bytes()
        ca_data = Path(args.ca).read_bytes()
        result = services.verify_certificate_service(cert_data, ca_data)
    except (OSError, ValueError) as e:
        logger.error(f"无法读取证书: {e}")
        return EXIT_USAGE

    print(f"subject: {result.subject_common_name}")
    print(f"issuer: {result.issuer_common_name}")
    print(f"serial: {result.serial_number}")
    print(f"san: {', '.join(result.subject_alt_names)}")
    if not result.is_issued_by_ca:
        print(f"FAILED: {result.reason}")
        return EXIT_FAILED
    print("OK")
    return EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tlsboot", description="Bootstrap an insecure local CA and a TLS server certificate."
    )
    sub = parser.add_subparsers(dest="command", required=True)

    gen = sub.add_parser("generate", help="create CA and server key/certificate")
    gen.add_argument("-o", "--output-dir", type=Path)
    gen.add_argument("--country")
    gen.add_argument("--state")
    gen.add_argument("--locality")
    gen.add_argument("--organization")
    gen.add_argument("--organizational-unit")
    gen.add_argument("--common-name")
    gen.add_argument("--ca-common-name")
    gen.add_argument(
        "--san", action="append", help="subject alternative name (DNS or IP); repeatable"
    )
    gen.add_argument("--days", type=int, help="server certificate validity in days")
    gen.add_argument("--ca-days", type=int, help="CA certificate validity in days")
    gen.add_argument("--key-algorithm", choices=["rsa", "ec"])
    gen.add_argument("--key-size", type=int)
    gen.add_argument("--curve")
    gen.add_argument("--write-csr", action="store_true", default=None)
    gen.add_argument("--log-level")
    gen.set_defaults(func=cmd_generate)

    ver = sub.add_parser("verify", help="check that a certificate was issued by a CA")
    ver.add_argument("--ca", required=True, help="CA certificate (PEM or DER)")
    ver.add_argument("--cert", required=True, help="certificate to verify (PEM or DER)")
    ver.add_argument("--log-level")
    ver.set_defaults(func=cmd_verify)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
