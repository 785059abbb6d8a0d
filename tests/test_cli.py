"""Tests for creatorpay.cli -- operator commands via click's CliRunner."""

from __future__ import annotations

import json
import time

import pytest
import yaml
from click.testing import CliRunner

from creatorpay.cli.main import cli
from creatorpay.cli.output import format_idr
from creatorpay.ledger import LedgerStore
from creatorpay.payments.base import PaymentMethod, PaymentPurpose, PaymentTransaction
from creatorpay.persistence import PaymentDB
from creatorpay.sessions import SessionStore

from conftest import BUYER_ID, CHANNEL_ID


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "cli.db")


@pytest.fixture
def runner(monkeypatch):
    for name in ("CREATORPAY_OY_ENVIRONMENT", "CREATORPAY_DB_PATH", "CREATORPAY_PAYMENT_TTL"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("CREATORPAY_ENCRYPTION_KEY", "cli-test-secret")
    return CliRunner()


@pytest.fixture
def invoke(runner, db_path, tmp_path):
    def _invoke(*args: str):
        return runner.invoke(
            cli,
            ["--db", db_path, "--config", str(tmp_path / "missing.yaml"), *args],
        )

    return _invoke


def _seed(db_path: str, *, txn: PaymentTransaction | None = None, credit: int = 0) -> None:
    db = PaymentDB(db_path)
    try:
        if credit:
            LedgerStore(db).credit(BUYER_ID, CHANNEL_ID, credit)
        if txn is not None:
            SessionStore(db).create(txn)
    finally:
        db.close()


def _topup(external_id: str, expires_at: float) -> PaymentTransaction:
    return PaymentTransaction(
        external_id=external_id,
        buyer_id=BUYER_ID,
        channel_id=CHANNEL_ID,
        amount=20_000,
        purpose=PaymentPurpose.BALANCE_TOPUP,
        method=PaymentMethod.GATEWAY_CODE,
        expires_at=expires_at,
        gateway_code=f"MOCK_QRIS_{external_id}",
    )


class TestFormatting:
    @pytest.mark.parametrize(
        "amount, expected",
        [(15_000, "Rp 15.000"), (0, "Rp 0"), (1_250_000, "Rp 1.250.000"), (-1_000, "-Rp 1.000"), (None, "N/A")],
    )
    def test_format_idr(self, amount, expected):
        assert format_idr(amount) == expected


class TestCredentialCommands:
    def test_set_then_check(self, invoke):
        result = invoke("credential", "set", "5001", "--credential", "oy-key", "--json")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["data"] == {"owner_id": 5001, "configured": True}

        check = invoke("credential", "check", "5001", "--json")
        assert check.exit_code == 0
        assert json.loads(check.output)["data"]["credential"] == "configured"
        assert "oy-key" not in check.output

    def test_check_missing(self, invoke):
        result = invoke("credential", "check", "9999", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "NOT_CONFIGURED"

    def test_check_with_wrong_key(self, invoke, monkeypatch):
        invoke("credential", "set", "5001", "--credential", "oy-key")
        monkeypatch.setenv("CREATORPAY_ENCRYPTION_KEY", "rotated-secret")
        result = invoke("credential", "check", "5001", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["data"]["credential"] == "unavailable"

    def test_delete(self, invoke):
        invoke("credential", "set", "5001", "--credential", "oy-key")
        result = invoke("credential", "delete", "5001", "--json")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["data"] == {"owner_id": 5001, "configured": False}

        check = invoke("credential", "check", "5001", "--json")
        assert json.loads(check.output)["data"]["credential"] == "not_configured"

    def test_delete_missing(self, invoke):
        result = invoke("credential", "delete", "9999", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "NOT_CONFIGURED"

    def test_set_without_encryption_key(self, invoke, monkeypatch):
        monkeypatch.delenv("CREATORPAY_ENCRYPTION_KEY")
        result = invoke("credential", "set", "5001", "--credential", "oy-key", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "BAD_CONFIG"


class TestBalanceCommand:
    def test_json(self, invoke, db_path):
        _seed(db_path, credit=20_000)
        result = invoke("balance", str(BUYER_ID), str(CHANNEL_ID), "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)["data"]
        assert data["balance"] == 20_000
        assert data["total_topup"] == 20_000

    def test_human(self, invoke, db_path):
        _seed(db_path, credit=20_000)
        result = invoke("balance", str(BUYER_ID), str(CHANNEL_ID))
        assert result.exit_code == 0
        assert "Rp 20.000" in result.output

    def test_no_row(self, invoke):
        result = invoke("balance", "1", "2", "--json")
        assert json.loads(result.output)["data"]["balance"] == 0


class TestTransactionCommands:
    def test_status_unknown(self, invoke):
        result = invoke("status", "topup_1_2_3", "--json")
        assert result.exit_code == 0
        assert json.loads(result.output)["data"]["kind"] == "not_found"

    def test_status_pending(self, invoke, db_path):
        _seed(db_path, txn=_topup("topup_a", time.time() + 600))
        result = invoke("status", "topup_a", "--json")
        data = json.loads(result.output)["data"]
        assert data["kind"] == "still_pending"
        assert data["transaction"]["status"] == "pending"

    def test_callback_credits_balance(self, invoke, db_path, tmp_path):
        _seed(db_path, txn=_topup("topup_b", time.time() + 600))
        payload = tmp_path / "callback.json"
        payload.write_text(
            json.dumps({"partner_trx_id": "topup_b", "payment_status": "COMPLETE", "received_amount": 20000}),
            encoding="utf-8",
        )

        result = invoke("callback", str(payload), "--json")

        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["data"]["kind"] == "paid"
        balance = invoke("balance", str(BUYER_ID), str(CHANNEL_ID), "--json")
        assert json.loads(balance.output)["data"]["balance"] == 20_000

    def test_callback_bad_payload(self, invoke, tmp_path):
        payload = tmp_path / "callback.json"
        payload.write_text(json.dumps({"payment_status": "COMPLETE"}), encoding="utf-8")
        result = invoke("callback", str(payload), "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "BAD_PAYLOAD"

    def test_callback_unreadable_file(self, invoke, tmp_path):
        payload = tmp_path / "callback.json"
        payload.write_text("{not json", encoding="utf-8")
        result = invoke("callback", str(payload), "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "BAD_PAYLOAD"

    def test_expire_stale(self, invoke, db_path):
        _seed(db_path, txn=_topup("topup_old", time.time() - 60))
        result = invoke("expire-stale", "--json")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["data"] == {"expired": ["topup_old"], "count": 1}

        again = invoke("expire-stale")
        assert "No stale transactions." in again.output


class TestHistoryCommand:
    def _seed_history(self, db_path: str) -> None:
        _seed(db_path, txn=_topup("topup_h", time.time() + 600), credit=20_000)
        db = PaymentDB(db_path)
        try:
            LedgerStore(db).record_purchase(BUYER_ID, 77, 15_000, "balance", None)
        finally:
            db.close()

    def test_json(self, invoke, db_path):
        self._seed_history(db_path)
        result = invoke("history", str(BUYER_ID), "--json")
        assert result.exit_code == 0, result.output
        data = json.loads(result.output)["data"]
        assert [b["balance_amount"] for b in data["balances"]] == [20_000]
        assert [t["external_id"] for t in data["transactions"]] == ["topup_h"]
        assert data["transactions"][0]["status"] == "pending"
        assert [p["content_id"] for p in data["purchases"]] == [77]

    def test_human(self, invoke, db_path):
        self._seed_history(db_path)
        result = invoke("history", str(BUYER_ID))
        assert result.exit_code == 0, result.output
        assert "topup_h" in result.output
        assert "Rp 20.000" in result.output

    def test_empty(self, invoke):
        result = invoke("history", "424242")
        assert result.exit_code == 0
        assert "No history for buyer 424242." in result.output


class TestConfigCommand:
    def test_set_persists_typed_value(self, invoke, tmp_path):
        result = invoke("config", "set", "payment_ttl_seconds", "900", "--json")
        assert result.exit_code == 0, result.output
        assert json.loads(result.output)["data"] == {"payment_ttl_seconds": 900}
        saved = yaml.safe_load((tmp_path / "missing.yaml").read_text(encoding="utf-8"))
        assert saved["payments"] == {"payment_ttl_seconds": 900}

    def test_set_environment_is_normalised(self, invoke, tmp_path):
        result = invoke("config", "set", "environment", "Production", "--json")
        assert result.exit_code == 0, result.output
        saved = yaml.safe_load((tmp_path / "missing.yaml").read_text(encoding="utf-8"))
        assert saved["payments"]["environment"] == "production"

    def test_unknown_environment_rejected(self, invoke, tmp_path):
        result = invoke("config", "set", "environment", "staging", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "BAD_CONFIG"
        assert not (tmp_path / "missing.yaml").exists()

    def test_non_numeric_value_rejected(self, invoke):
        result = invoke("config", "set", "poll_interval_seconds", "soon", "--json")
        assert result.exit_code == 1
        assert json.loads(result.output)["error"]["code"] == "BAD_CONFIG"
