"""
配置加载模块：支持 .env、环境变量（TLSBOOT_ 前缀）、工作目录 config.json（或 TLSBOOT_CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类（由调用方按需实例化）
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.parse_san: 将字符串/JSON 解析为 List[str]
"""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional, Tuple

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, PydanticBaseSettingsSource, SettingsConfigDict


class Config(BaseSettings):
    # 服务端证书主体
    country: str = "AU"
    state: str = "Queensland"
    locality: str = "Brisbane"
    organization: str = "INSECURE EXAMPLE"
    organizational_unit: str = "KaniDM"
    common_name: str = "localhost"
    # 根 CA 主体
    ca_organization: str = "INSECURE"
    ca_common_name: str = "insecure.ca.localhost"

    san: Annotated[List[str], NoDecode] = ["127.0.0.1"]
    validity_days: int = Field(default=31, gt=0)
    ca_validity_days: int = Field(default=31, gt=0)

    key_algorithm: str = "rsa"
    key_size: int = 2048
    ec_curve: str = "secp256r1"

    output_dir: Path = Path(".")
    write_csr: bool = False
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="TLSBOOT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("san", mode="before")
    @classmethod
    def parse_san(cls, value: Any) -> List[str]:
        """支持从环境变量以 JSON 或分隔符（逗号/分号/空白）解析 san。"""
        if value is None or value == "":
            return []
        if isinstance(value, (list, tuple)):
            return [str(v) for v in value]
        if isinstance(value, str):
            text = value.strip()
            # 优先尝试 JSON
            try:
                loaded = json.loads(text)
                if isinstance(loaded, list):
                    return [str(v) for v in loaded]
            except ValueError:
                pass
            # 回退为分隔符拆分（, ; 空白）
            return [p for p in re.split(r"[\s,;]+", text) if p]
        return value

    @field_validator("key_algorithm")
    @classmethod
    def lower_algorithm(cls, value: str) -> str:
        return value.strip().lower()

    @field_validator("log_level")
    @classmethod
    def upper_log_level(cls, value: str) -> str:
        return value.strip().upper()

    def server_subject_overrides(self) -> Dict[str, Optional[str]]:
        return {
            "country": self.country,
            "state": self.state,
            "locality": self.locality,
            "organization": self.organization,
            "organizational_unit": self.organizational_unit,
            "common_name": self.common_name,
        }

    def ca_subject_overrides(self) -> Dict[str, Optional[str]]:
        return {
            "country": self.country,
            "state": self.state,
            "locality": self.locality,
            "organization": self.ca_organization,
            "common_name": self.ca_common_name,
        }

    def key_parameters(self) -> Dict[str, Any]:
        if self.key_algorithm == "ec":
            return {"curve": self.ec_curve}
        return {"key_size": self.key_size}

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 config.json（或 TLSBOOT_CONFIG_FILE 指定路径）加载配置的自定义 Source。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> None:
                if self._data is not None:
                    return
                cfg_path = os.environ.get("TLSBOOT_CONFIG_FILE")
                path = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
                if not path.exists():
                    self._data = {}
                    return
                try:
                    with path.open("r", encoding="utf-8") as f:
                        data = json.load(f)
                    self._data = data if isinstance(data, dict) else {}
                except (OSError, ValueError) as e:
                    logger.warning(f"读取配置文件失败，已忽略: {path}: {e}")
                    self._data = {}

            def __call__(self) -> Dict[str, Any]:
                self._load()
                return dict(self._data or {})

            def get_field_value(self, field, field_name):  # type: ignore[override]
                """为满足抽象基类要求，按字段名返回字段值。"""
                self._load()
                data = self._data or {}
                if field_name in data:
                    return data[field_name], field_name, True
                return None, field_name, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )
