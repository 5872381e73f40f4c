"""
测试 config.py 模块：多来源合并与 san 解析。
"""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pydantic
import pytest

from src.tlsboot.config import Config


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("TLSBOOT_"):
            monkeypatch.delenv(key)


def test_defaults():
    cfg = Config()
    assert cfg.country == "AU"
    assert cfg.common_name == "localhost"
    assert cfg.ca_common_name == "insecure.ca.localhost"
    assert cfg.san == ["127.0.0.1"]
    assert cfg.validity_days == 31
    assert cfg.ca_validity_days == 31
    assert cfg.key_algorithm == "rsa"
    assert cfg.output_dir == Path(".")
    assert cfg.write_csr is False


@pytest.mark.parametrize(
    "raw,expected",
    [
        ('["localhost", "127.0.0.1"]', ["localhost", "127.0.0.1"]),
        ("localhost,127.0.0.1", ["localhost", "127.0.0.1"]),
        ("localhost; ::1  idm.local", ["localhost", "::1", "idm.local"]),
    ],
)
def test_san_from_env(monkeypatch, raw, expected):
    monkeypatch.setenv("TLSBOOT_SAN", raw)
    assert Config().san == expected


def test_env_overrides_json_file(tmp_path, monkeypatch):
    (tmp_path / "config.json").write_text(
        json.dumps({"common_name": "from-json", "validity_days": 7}), encoding="utf-8"
    )
    cfg = Config()
    assert cfg.common_name == "from-json"
    assert cfg.validity_days == 7

    monkeypatch.setenv("TLSBOOT_COMMON_NAME", "from-env")
    assert Config().common_name == "from-env"


def test_config_file_env_var(tmp_path, monkeypatch):
    path = tmp_path / "custom.json"
    path.write_text(json.dumps({"san": ["a.local", "b.local"]}), encoding="utf-8")
    monkeypatch.setenv("TLSBOOT_CONFIG_FILE", str(path))
    assert Config().san == ["a.local", "b.local"]


def test_broken_json_file_ignored(tmp_path):
    """损坏的 config.json 被忽略，但必须记录警告"""
    (tmp_path / "config.json").write_text("{not json", encoding="utf-8")
    with patch("src.tlsboot.config.logger") as mock_logger:
        assert Config().common_name == "localhost"
    mock_logger.warning.assert_called_once()
    assert "config.json" in mock_logger.warning.call_args[0][0]


def test_dotenv_file(tmp_path):
    (tmp_path / ".env").write_text("TLSBOOT_LOCALITY=Sydney\n", encoding="utf-8")
    assert Config().locality == "Sydney"


def test_init_args_take_precedence(monkeypatch):
    monkeypatch.setenv("TLSBOOT_COMMON_NAME", "from-env")
    assert Config(common_name="from-init").common_name == "from-init"


def test_normalization():
    cfg = Config(key_algorithm=" EC ", log_level="debug")
    assert cfg.key_algorithm == "ec"
    assert cfg.log_level == "DEBUG"
    assert cfg.key_parameters() == {"curve": "secp256r1"}
    assert Config().key_parameters() == {"key_size": 2048}


@pytest.mark.parametrize("field", ["validity_days", "ca_validity_days"])
def test_non_positive_validity_rejected(field):
    with pytest.raises(pydantic.ValidationError):
        Config(**{field: 0})


def test_subject_overrides():
    cfg = Config(common_name="idm.example.com", ca_common_name="root.example.com")
    assert cfg.server_subject_overrides()["common_name"] == "idm.example.com"
    assert cfg.server_subject_overrides()["organizational_unit"] == "KaniDM"
    ca = cfg.ca_subject_overrides()
    assert ca["common_name"] == "root.example.com"
    assert ca["organization"] == "INSECURE"
    assert "organizational_unit" not in ca
