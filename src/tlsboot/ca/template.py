"""
证书主体（Distinguished Name）模板。

公开接口：
- DistinguishedName: 已物化的主体，字段带长度约束
- materialize: 在默认值之上应用调用方的覆盖项，得到 DistinguishedName
- SERVER_DEFAULTS / CA_DEFAULTS: 服务端证书与根 CA 的默认主体字段
"""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

import pydantic
from cryptography import x509
from cryptography.x509.oid import NameOID
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import ValidationError

# 字段名 -> OID，顺序即渲染到证书中的顺序（C, ST, L, O, OU, CN）
_FIELD_OIDS: Dict[str, x509.ObjectIdentifier] = {
    "country": NameOID.COUNTRY_NAME,
    "state": NameOID.STATE_OR_PROVINCE_NAME,
    "locality": NameOID.LOCALITY_NAME,
    "organization": NameOID.ORGANIZATION_NAME,
    "organizational_unit": NameOID.ORGANIZATIONAL_UNIT_NAME,
    "common_name": NameOID.COMMON_NAME,
}

SERVER_DEFAULTS: Dict[str, Optional[str]] = {
    "country": "AU",
    "state": "Queensland",
    "locality": "Brisbane",
    "organization": "INSECURE EXAMPLE",
    "organizational_unit": "KaniDM",
    "common_name": "localhost",
}

CA_DEFAULTS: Dict[str, Optional[str]] = {
    "country": "AU",
    "state": "Queensland",
    "locality": "Brisbane",
    "organization": "INSECURE",
    "organizational_unit": None,
    "common_name": "insecure.ca.localhost",
}


class DistinguishedName(BaseModel):
    """
    证书主体。common_name 必填，其余字段可省略；
    country 若存在必须恰好 2 个字符，common_name 不超过 64 个字符。
    """

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    country: Optional[str] = Field(default=None, min_length=2, max_length=2)
    state: Optional[str] = Field(default=None, min_length=1, max_length=128)
    locality: Optional[str] = Field(default=None, min_length=1, max_length=128)
    organization: Optional[str] = Field(default=None, min_length=1, max_length=64)
    organizational_unit: Optional[str] = Field(default=None, min_length=1, max_length=64)
    common_name: str = Field(min_length=1, max_length=64)

    @field_validator(
        "country", "state", "locality", "organization", "organizational_unit", mode="before"
    )
    @classmethod
    def empty_as_missing(cls, value: Any) -> Any:
        """可选字段为空字符串时视为未提供。"""
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("country")
    @classmethod
    def upper_country(cls, value: Optional[str]) -> Optional[str]:
        return value.upper() if value else value

    def to_x509_name(self) -> x509.Name:
        """按 C, ST, L, O, OU, CN 的顺序渲染为 x509.Name，跳过未提供的字段。"""
        attributes = [
            x509.NameAttribute(oid, getattr(self, field))
            for field, oid in _FIELD_OIDS.items()
            if getattr(self, field)
        ]
        return x509.Name(attributes)

    @classmethod
    def from_x509_name(cls, name: x509.Name) -> "DistinguishedName":
        """从 x509.Name 读取主体字段，不认识的属性会被忽略。"""
        values: Dict[str, Any] = {}
        for field, oid in _FIELD_OIDS.items():
            attrs = name.get_attributes_for_oid(oid)
            if attrs:
                values[field] = attrs[0].value
        return _build(values)


def _build(values: Mapping[str, Any]) -> DistinguishedName:
    try:
        return DistinguishedName(**values)
    except pydantic.ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ValidationError(f"证书主体字段不合法: {problems}") from e


def materialize(
    overrides: Optional[Mapping[str, Optional[str]]] = None,
    defaults: Mapping[str, Optional[str]] = SERVER_DEFAULTS,
) -> DistinguishedName:
    """
    在默认值之上应用覆盖项并校验。
    :param overrides: 字段名到值的映射；值为 None 的项不覆盖默认值。
    :param defaults: 默认字段，服务端证书使用 SERVER_DEFAULTS，根 CA 使用 CA_DEFAULTS。
    :return: 物化后的 DistinguishedName。
    :raises ValidationError: 未知字段、必填字段为空或长度越界。
    """
    values: Dict[str, Any] = dict(defaults)
    for key, value in (overrides or {}).items():
        if key not in _FIELD_OIDS:
            raise ValidationError(f"未知的主体字段: {key}")
        if value is not None:
            values[key] = value
    return _build(values)
