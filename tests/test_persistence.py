"""Tests for creatorpay.persistence -- SQLite persistence layer.

Covers:
- DB creation and schema (tables exist)
- File permissions
- atomic() commit and rollback
- write() joining an open scope
- Activity log round trip
"""

from __future__ import annotations

import os
import sqlite3
import stat
import sys

import pytest

from creatorpay.persistence import PaymentDB


# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------


class TestSchemaCreation:
    """Tests for database and schema initialization."""

    def test_creates_parent_directory(self, tmp_path):
        db_path = str(tmp_path / "deep" / "nested" / "creatorpay.db")
        instance = PaymentDB(db_path)
        assert os.path.exists(db_path)
        assert instance.path == db_path
        instance.close()

    @pytest.mark.parametrize(
        "table",
        [
            "channels",
            "content_items",
            "channel_promos",
            "channel_credentials",
            "payment_transactions",
            "channel_balances",
            "content_grants",
            "purchase_history",
            "activity_log",
        ],
    )
    def test_table_exists(self, db, table):
        row = db.fetch_one(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,)
        )
        assert row is not None

    def test_reopen_keeps_data(self, tmp_path):
        path = str(tmp_path / "reopen.db")
        first = PaymentDB(path)
        first.log_activity(1, "seed")
        first.close()

        second = PaymentDB(path)
        assert second.recent_activity(1)[0]["activity_type"] == "seed"
        second.close()

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions only")
    def test_file_is_owner_only(self, db):
        mode = stat.S_IMODE(os.stat(db.path).st_mode)
        assert mode == 0o600

    def test_negative_balance_rejected_by_schema(self, db):
        with pytest.raises(sqlite3.IntegrityError):
            with db.atomic() as cur:
                cur.execute(
                    "INSERT INTO channel_balances (buyer_id, channel_id, balance_amount, updated_at) "
                    "VALUES (1, 1, -5, 0)"
                )


# ---------------------------------------------------------------------------
# Scopes
# ---------------------------------------------------------------------------


class TestAtomic:
    def test_commit(self, db):
        with db.atomic() as cur:
            db.log_activity(1, "one", cursor=cur)
            db.log_activity(1, "two", cursor=cur)
        assert [r["activity_type"] for r in db.recent_activity(1)] == ["two", "one"]

    def test_rollback_on_exception(self, db):
        with pytest.raises(RuntimeError):
            with db.atomic() as cur:
                db.log_activity(1, "doomed", cursor=cur)
                raise RuntimeError("boom")
        assert db.recent_activity(1) == []

    def test_write_without_cursor_opens_own_scope(self, db):
        with db.write() as cur:
            cur.execute(
                "INSERT INTO activity_log (buyer_id, activity_type, created_at) VALUES (2, 'x', 0)"
            )
        assert len(db.recent_activity(2)) == 1

    def test_write_joins_callers_scope(self, db):
        with pytest.raises(ValueError):
            with db.atomic() as outer:
                with db.write(outer) as inner:
                    assert inner is outer
                    db.log_activity(3, "joined", cursor=inner)
                raise ValueError("abort outer")
        assert db.recent_activity(3) == []

    def test_fetch_one_inside_scope_sees_uncommitted_rows(self, db):
        with db.atomic() as cur:
            db.log_activity(4, "pending", cursor=cur)
            row = db.fetch_one(
                "SELECT activity_type FROM activity_log WHERE buyer_id = ?", (4,), cursor=cur
            )
        assert row["activity_type"] == "pending"


# ---------------------------------------------------------------------------
# Activity log
# ---------------------------------------------------------------------------


class TestActivityLog:
    def test_metadata_round_trips(self, db):
        row_id = db.log_activity(
            7, "balance_topup", "Top-up confirmed", channel_id=-100, metadata={"amount": 20000}
        )
        assert row_id > 0
        entry = db.recent_activity(7)[0]
        assert entry["metadata"] == {"amount": 20000}
        assert entry["channel_id"] == -100
        assert entry["description"] == "Top-up confirmed"

    def test_limit_and_order(self, db):
        for i in range(5):
            db.log_activity(8, f"event_{i}")
        recent = db.recent_activity(8, limit=2)
        assert [r["activity_type"] for r in recent] == ["event_4", "event_3"]

    def test_scoped_to_buyer(self, db):
        db.log_activity(9, "mine")
        db.log_activity(10, "theirs")
        assert [r["activity_type"] for r in db.recent_activity(9)] == ["mine"]
