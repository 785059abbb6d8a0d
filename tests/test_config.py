"""Tests for creatorpay.config -- payment settings and vault key material."""

from __future__ import annotations

import dataclasses

import pytest
import yaml

from creatorpay import parse_float_env, parse_int_env
from creatorpay.config import (
    PaymentConfig,
    VaultKey,
    load_payment_config,
    save_payment_config,
)
from creatorpay.payments.base import ConfigurationError

_ENV_VARS = (
    "CREATORPAY_OY_ENVIRONMENT",
    "CREATORPAY_OY_BASE_URL",
    "CREATORPAY_OY_QRIS_ENDPOINT",
    "CREATORPAY_PAYMENT_TTL",
    "CREATORPAY_POLL_INTERVAL",
    "CREATORPAY_DB_PATH",
    "CREATORPAY_ENCRYPTION_KEY",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.yaml"

    def _write(payments: dict):
        path.write_text(yaml.safe_dump({"payments": payments}), encoding="utf-8")
        return path

    return _write


class TestLoadPaymentConfig:
    def test_defaults(self, tmp_path):
        config = load_payment_config(config_path=tmp_path / "missing.yaml")
        assert config.environment == "sandbox"
        assert config.base_url == "https://api-stg.oyindonesia.com"
        assert config.payment_ttl_seconds == 600
        assert not config.live

    def test_production_switches_base_url(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CREATORPAY_OY_ENVIRONMENT", "Production")
        config = load_payment_config(config_path=tmp_path / "missing.yaml")
        assert config.environment == "production"
        assert config.base_url == "https://partner.oyindonesia.com"
        assert config.live

    def test_unknown_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CREATORPAY_OY_ENVIRONMENT", "staging")
        with pytest.raises(ConfigurationError) as exc_info:
            load_payment_config(config_path=tmp_path / "missing.yaml")
        assert exc_info.value.code == "BAD_CONFIG"

    def test_file_values(self, config_file):
        path = config_file({"base_url": "https://gw.example/", "payment_ttl_seconds": 900})
        config = load_payment_config(config_path=path)
        assert config.base_url == "https://gw.example"
        assert config.payment_ttl_seconds == 900

    def test_env_beats_file(self, config_file, monkeypatch):
        path = config_file({"environment": "production", "payment_ttl_seconds": 900})
        monkeypatch.setenv("CREATORPAY_OY_ENVIRONMENT", "sandbox")
        monkeypatch.setenv("CREATORPAY_PAYMENT_TTL", "300")
        config = load_payment_config(config_path=path)
        assert config.environment == "sandbox"
        assert config.payment_ttl_seconds == 300

    def test_overrides_beat_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CREATORPAY_DB_PATH", "/from/env.db")
        config = load_payment_config(
            config_path=tmp_path / "missing.yaml",
            db_path="/explicit.db",
            poll_interval_seconds=1.5,
        )
        assert config.db_path == "/explicit.db"
        assert config.poll_interval_seconds == 1.5

    def test_invalid_numeric_env_falls_back(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CREATORPAY_PAYMENT_TTL", "ten minutes")
        config = load_payment_config(config_path=tmp_path / "missing.yaml")
        assert config.payment_ttl_seconds == 600

    def test_invalid_yaml_is_ignored(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("payments: [unclosed", encoding="utf-8")
        assert load_payment_config(config_path=path).environment == "sandbox"

    def test_config_is_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            PaymentConfig().environment = "production"  # type: ignore[misc]


class TestSavePaymentConfig:
    def test_merges_section(self, config_file):
        path = config_file({"environment": "sandbox"})
        save_payment_config({"payment_ttl_seconds": 1200}, config_path=path)
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
        assert data["payments"] == {"environment": "sandbox", "payment_ttl_seconds": 1200}


class TestVaultKey:
    def test_from_secret_is_32_bytes_and_stable(self):
        assert len(VaultKey.from_secret("s").key) == 32
        assert VaultKey.from_secret("s") == VaultKey.from_secret("s")
        assert VaultKey.from_secret("s") != VaultKey.from_secret("t")

    def test_empty_secret(self):
        with pytest.raises(ConfigurationError):
            VaultKey.from_secret("")

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("CREATORPAY_ENCRYPTION_KEY", "env-secret")
        assert VaultKey.from_env() == VaultKey.from_secret("env-secret")

    def test_from_env_missing(self):
        with pytest.raises(ConfigurationError):
            VaultKey.from_env()

    def test_wrong_length(self):
        with pytest.raises(ConfigurationError):
            VaultKey(key=b"short")

    def test_key_not_in_repr(self):
        assert "key=" not in repr(VaultKey.from_secret("s"))


class TestEnvParsing:
    def test_int(self, monkeypatch):
        monkeypatch.setenv("CREATORPAY_TEST_INT", "42")
        assert parse_int_env("CREATORPAY_TEST_INT", 1) == 42

    def test_int_invalid(self, monkeypatch):
        monkeypatch.setenv("CREATORPAY_TEST_INT", "x")
        assert parse_int_env("CREATORPAY_TEST_INT", 1) == 1

    def test_float_unset(self, monkeypatch):
        monkeypatch.delenv("CREATORPAY_TEST_FLOAT", raising=False)
        assert parse_float_env("CREATORPAY_TEST_FLOAT", 2.5) == 2.5

    def test_below_minimum_falls_back(self, monkeypatch):
        monkeypatch.setenv("CREATORPAY_TEST_INT", "0")
        assert parse_int_env("CREATORPAY_TEST_INT", 600, minimum=1) == 600

    def test_float_at_minimum_is_kept(self, monkeypatch):
        monkeypatch.setenv("CREATORPAY_TEST_FLOAT", "0.5")
        assert parse_float_env("CREATORPAY_TEST_FLOAT", 5.0, minimum=0.5) == 0.5

    def test_negative_ttl_env_is_ignored(self, tmp_path, monkeypatch):
        monkeypatch.setenv("CREATORPAY_PAYMENT_TTL", "-60")
        config = load_payment_config(config_path=tmp_path / "missing.yaml")
        assert config.payment_ttl_seconds == 600
