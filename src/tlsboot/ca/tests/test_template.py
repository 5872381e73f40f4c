"""
测试 template.py 模块。
"""

import pydantic
import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID

from src.tlsboot.ca import template
from src.tlsboot.ca.errors import ValidationError


def test_materialize_defaults():
    """不提供覆盖项时使用服务端默认主体"""
    dn = template.materialize()
    assert dn.country == "AU"
    assert dn.state == "Queensland"
    assert dn.locality == "Brisbane"
    assert dn.organization == "INSECURE EXAMPLE"
    assert dn.organizational_unit == "KaniDM"
    assert dn.common_name == "localhost"


def test_materialize_overrides_and_none_values():
    """覆盖项生效，值为 None 的项保持默认"""
    dn = template.materialize({"common_name": "idm.example.com", "state": None})
    assert dn.common_name == "idm.example.com"
    assert dn.state == "Queensland"


def test_materialize_ca_defaults():
    dn = template.materialize(defaults=template.CA_DEFAULTS)
    assert dn.common_name == "insecure.ca.localhost"
    assert dn.organization == "INSECURE"
    assert dn.organizational_unit is None


@pytest.mark.parametrize("country", ["A", "AUS", "", "   "])
def test_country_must_be_two_characters(country):
    """country 只要提供就必须恰好 2 个字符；空字符串视为未提供"""
    if not country.strip():
        assert template.materialize({"country": country}).country is None
        return
    with pytest.raises(ValidationError, match="country"):
        template.materialize({"country": country})


def test_country_is_upper_cased():
    assert template.materialize({"country": "nz"}).country == "NZ"


def test_common_name_bounds():
    """common_name 必填且不超过 64 个字符"""
    assert template.materialize({"common_name": "a" * 64}).common_name == "a" * 64
    with pytest.raises(ValidationError, match="common_name"):
        template.materialize({"common_name": "a" * 65})
    with pytest.raises(ValidationError, match="common_name"):
        template.materialize({"common_name": ""})


def test_unknown_field_rejected():
    with pytest.raises(ValidationError, match="未知的主体字段"):
        template.materialize({"email": "root@localhost"})


def test_validation_error_is_value_error():
    """ValidationError 继承 ValueError，调用方可以统一按输入错误处理"""
    with pytest.raises(ValueError):
        template.materialize({"common_name": ""})


def test_to_x509_name_order_and_skipped_fields():
    dn = template.materialize({"organizational_unit": ""})
    name = dn.to_x509_name()
    oids = [attr.oid for attr in name]
    assert oids == [
        NameOID.COUNTRY_NAME,
        NameOID.STATE_OR_PROVINCE_NAME,
        NameOID.LOCALITY_NAME,
        NameOID.ORGANIZATION_NAME,
        NameOID.COMMON_NAME,
    ]
    assert name.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "localhost"


def test_from_x509_name_round_trip():
    dn = template.materialize({"common_name": "node-1"})
    assert template.DistinguishedName.from_x509_name(dn.to_x509_name()) == dn


def test_from_x509_name_without_common_name():
    name = x509.Name([x509.NameAttribute(NameOID.ORGANIZATION_NAME, "ACME")])
    with pytest.raises(ValidationError):
        template.DistinguishedName.from_x509_name(name)


def test_distinguished_name_is_frozen():
    dn = template.materialize()
    with pytest.raises(pydantic.ValidationError):
        dn.common_name = "other"
