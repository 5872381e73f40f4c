"""
测试 request.py 模块：CSR 构建、SAN 解析与持有私钥证明。
"""

import ipaddress

import pytest
from cryptography import x509
from cryptography.x509.oid import NameOID

from src.tlsboot.ca import keys, request, template
from src.tlsboot.ca.errors import ValidationError


@pytest.fixture(scope="module")
def server_keys():
    return keys.generate("rsa")


@pytest.fixture
def server_dn():
    return template.materialize()


def test_parse_san_entry_types():
    """IP 字符串解析为 IPAddress，其余为 DNSName，前缀可强制类型"""
    assert request.parse_san_entry("127.0.0.1") == x509.IPAddress(ipaddress.ip_address("127.0.0.1"))
    assert request.parse_san_entry("::1") == x509.IPAddress(ipaddress.ip_address("::1"))
    assert request.parse_san_entry("localhost") == x509.DNSName("localhost")
    assert request.parse_san_entry("DNS:127.0.0.1") == x509.DNSName("127.0.0.1")
    assert request.parse_san_entry("ip: 10.0.0.1") == x509.IPAddress(ipaddress.ip_address("10.0.0.1"))
    existing = x509.DNSName("idm.example.com")
    assert request.parse_san_entry(existing) is existing


@pytest.mark.parametrize("entry", ["", "   ", "IP:not-an-ip", "bad host", "DNS:", "ドメイン.jp"])
def test_parse_san_entry_invalid(entry):
    with pytest.raises(ValidationError):
        request.parse_san_entry(entry)


def test_parse_san_set_keeps_order_and_duplicates():
    names = request.parse_san_set(["localhost", "127.0.0.1", "localhost"])
    assert [str(n.value) for n in names] == ["localhost", "127.0.0.1", "localhost"]


def test_build_request_empty_san_rejected(server_keys, server_dn):
    """没有任何 SAN 的服务端证书请求直接拒绝"""
    with pytest.raises(ValidationError, match="SAN"):
        request.build_request(server_keys, server_dn, [], 31)


def test_build_request_single_san(server_keys, server_dn):
    """恰好一个 SAN 时成功"""
    req = request.build_request(server_keys, server_dn, ["127.0.0.1"], 31)
    assert [str(n.value) for n in req.subject_alt_names] == ["127.0.0.1"]
    assert req.requested_validity_days == 31
    assert req.subject == server_dn


@pytest.mark.parametrize("days", [0, -1])
def test_build_request_non_positive_validity(server_keys, server_dn, days):
    with pytest.raises(ValidationError, match="有效期"):
        request.build_request(server_keys, server_dn, ["localhost"], days)


def test_build_request_extensions(server_keys, server_dn):
    req = request.build_request(server_keys, server_dn, ["localhost", "127.0.0.1"], 31)
    exts = req.extensions

    bc = exts.get_extension_for_class(x509.BasicConstraints)
    assert bc.value.ca is False

    ku = exts.get_extension_for_class(x509.KeyUsage).value
    assert ku.digital_signature
    assert ku.content_commitment
    assert ku.key_encipherment
    assert not ku.key_cert_sign
    assert not ku.crl_sign

    comment = exts.get_extension_for_oid(request.NS_COMMENT_OID)
    assert comment.value.value == b"\x16\x0bCertificate"

    subject = req.csr.subject
    assert subject.get_attributes_for_oid(NameOID.COMMON_NAME)[0].value == "localhost"
    assert subject.get_attributes_for_oid(NameOID.ORGANIZATIONAL_UNIT_NAME)[0].value == "KaniDM"


def test_build_request_without_comment(server_keys, server_dn):
    req = request.build_request(server_keys, server_dn, ["localhost"], 31, comment=None)
    with pytest.raises(x509.ExtensionNotFound):
        req.extensions.get_extension_for_oid(request.NS_COMMENT_OID)


def test_request_carries_public_key_only(server_keys, server_dn):
    """CSR 只携带服务端公钥"""
    req = request.build_request(server_keys, server_dn, ["localhost"], 31)
    assert req.public_key.public_numbers() == server_keys.public_key.public_numbers()
    assert b"PRIVATE KEY" not in req.to_pem()


def test_proof_of_possession_valid(server_keys, server_dn):
    req = request.build_request(server_keys, server_dn, ["localhost"], 31)
    assert req.verify_proof()
    assert req.proof_signature == req.csr.signature
    assert req.signed_body == req.csr.tbs_certrequest_bytes


def test_proof_of_possession_tampered(server_keys, server_dn):
    """篡改 CSR 签名后持有私钥证明失效"""
    req = request.build_request(server_keys, server_dn, ["localhost"], 31)
    der = req.to_der()
    tampered = der[:-1] + bytes([der[-1] ^ 0x01])
    loaded = request.CertificateRequest.from_der(tampered, 31)
    assert not loaded.verify_proof()


def test_from_pem_round_trip(server_keys, server_dn):
    req = request.build_request(server_keys, server_dn, ["localhost"], 31)
    loaded = request.CertificateRequest.from_pem(req.to_pem(), 7)
    assert loaded.subject == req.subject
    assert loaded.requested_validity_days == 7
    assert loaded.fingerprint == req.fingerprint
    assert loaded.verify_proof()


def test_from_pem_invalid():
    with pytest.raises(ValidationError, match="无效的 CSR 格式"):
        request.CertificateRequest.from_pem(b"not a csr", 31)
