"""SQLite persistence layer for creatorpay.

Provides durable storage for channels, content, promos, encrypted
credentials, payment transactions, channel balances and content grants,
so payment state survives a restart mid-payment.  The database is created
automatically at ``~/.creatorpay/creatorpay.db`` (override with the
``CREATORPAY_DB_PATH`` environment variable).

Cross-request invariants are enforced by the database, not by the
process: balance debits and terminal transitions are single conditional
``UPDATE`` statements, and :meth:`PaymentDB.atomic` lets a transition and
its ledger effects commit together.

Example::

    db = PaymentDB("/tmp/creatorpay.db")
    with db.atomic() as cur:
        cur.execute("UPDATE channel_balances SET ...")
"""

from __future__ import annotations

import contextlib
import json
import logging
import os
import sqlite3
import stat
import sys
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

logger = logging.getLogger(__name__)

_DEFAULT_DB_DIR = os.path.join(str(Path.home()), ".creatorpay")
_DEFAULT_DB_PATH = os.path.join(_DEFAULT_DB_DIR, "creatorpay.db")

_SCHEMA = """
CREATE TABLE IF NOT EXISTS channels (
    id              INTEGER PRIMARY KEY,
    owner_id        INTEGER NOT NULL,
    username        TEXT NOT NULL DEFAULT '',
    title           TEXT NOT NULL DEFAULT '',
    is_active       INTEGER NOT NULL DEFAULT 1,
    created_at      REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_channels_owner ON channels(owner_id);

CREATE TABLE IF NOT EXISTS content_items (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id      INTEGER NOT NULL,
    title           TEXT NOT NULL DEFAULT '',
    caption         TEXT NOT NULL DEFAULT '',
    base_price      INTEGER NOT NULL,
    file_type       TEXT NOT NULL DEFAULT 'video',
    file_ref        TEXT,
    created_at      REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS channel_promos (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    channel_id          INTEGER NOT NULL,
    promo_type          TEXT NOT NULL,
    discount_percentage REAL NOT NULL DEFAULT 0,
    bonus_min_topup     INTEGER NOT NULL DEFAULT 0,
    bonus_percentage    REAL NOT NULL DEFAULT 0,
    is_active           INTEGER NOT NULL DEFAULT 1,
    expires_at          REAL,
    created_at          REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_promos_channel
    ON channel_promos(channel_id, promo_type);

CREATE TABLE IF NOT EXISTS channel_credentials (
    owner_id        INTEGER PRIMARY KEY,
    blob            TEXT NOT NULL,
    created_at      REAL NOT NULL,
    updated_at      REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS payment_transactions (
    external_id         TEXT PRIMARY KEY,
    buyer_id            INTEGER NOT NULL,
    content_id          INTEGER,
    pending_content_id  INTEGER,
    channel_id          INTEGER NOT NULL,
    amount              INTEGER NOT NULL,
    purpose             TEXT NOT NULL,
    payment_method      TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'pending',
    expires_at          REAL,
    gateway_code        TEXT,
    gateway_url         TEXT,
    bonus_amount        INTEGER NOT NULL DEFAULT 0,
    failure_reason      TEXT,
    created_at          REAL NOT NULL,
    updated_at          REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_transactions_status
    ON payment_transactions(status);
CREATE INDEX IF NOT EXISTS idx_transactions_buyer
    ON payment_transactions(buyer_id, created_at);

CREATE TABLE IF NOT EXISTS channel_balances (
    buyer_id        INTEGER NOT NULL,
    channel_id      INTEGER NOT NULL,
    balance_amount  INTEGER NOT NULL DEFAULT 0 CHECK (balance_amount >= 0),
    total_topup     INTEGER NOT NULL DEFAULT 0,
    total_spent     INTEGER NOT NULL DEFAULT 0,
    last_topup_at   REAL,
    updated_at      REAL NOT NULL,
    PRIMARY KEY (buyer_id, channel_id)
);

CREATE TABLE IF NOT EXISTS content_grants (
    buyer_id        INTEGER NOT NULL,
    content_id      INTEGER NOT NULL,
    amount          INTEGER NOT NULL,
    transaction_id  TEXT,
    granted_at      REAL NOT NULL,
    PRIMARY KEY (buyer_id, content_id)
);

CREATE TABLE IF NOT EXISTS purchase_history (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    buyer_id        INTEGER NOT NULL,
    content_id      INTEGER NOT NULL,
    amount          INTEGER NOT NULL,
    payment_method  TEXT NOT NULL,
    transaction_id  TEXT,
    created_at      REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS activity_log (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    buyer_id        INTEGER NOT NULL,
    channel_id      INTEGER,
    activity_type   TEXT NOT NULL,
    description     TEXT NOT NULL DEFAULT '',
    metadata        TEXT NOT NULL DEFAULT '{}',
    created_at      REAL NOT NULL
);
"""


class PaymentDB:
    """Thread-safe SQLite wrapper shared by the creatorpay stores.

    The connection runs in autocommit mode; every write goes through
    :meth:`atomic`, which holds the write lock and wraps the statements
    in ``BEGIN IMMEDIATE`` / ``COMMIT``.

    Parameters:
        db_path: Filesystem path for the SQLite database file.  Defaults to
            the value of ``CREATORPAY_DB_PATH`` or ``~/.creatorpay/creatorpay.db``.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        self._db_path = db_path or os.environ.get("CREATORPAY_DB_PATH", _DEFAULT_DB_PATH)

        db_dir = os.path.dirname(self._db_path)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

        self._conn = sqlite3.connect(
            self._db_path,
            check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")
        self._lock = threading.Lock()

        self._ensure_schema()
        self._enforce_permissions()

    # ------------------------------------------------------------------
    # Setup
    # ------------------------------------------------------------------

    def _ensure_schema(self) -> None:
        """Create tables if they do not already exist."""
        with self._lock:
            self._conn.executescript(_SCHEMA)

    def _enforce_permissions(self) -> None:
        """Restrict the database file to its owner.

        The file holds encrypted credentials and payment history.  Skipped
        on Windows where POSIX chmod semantics do not apply.
        """
        if sys.platform == "win32" or not os.path.isfile(self._db_path):
            return
        try:
            mode = stat.S_IMODE(os.stat(self._db_path).st_mode)
            if mode & 0o077:
                logger.warning(
                    "Database file %s has overly permissive permissions "
                    "(mode %04o). Fixing to 0600.",
                    self._db_path,
                    mode,
                )
            os.chmod(self._db_path, 0o600)
        except OSError as exc:
            logger.warning("Unable to set permissions on %s: %s", self._db_path, exc)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextlib.contextmanager
    def atomic(self) -> Iterator[sqlite3.Cursor]:
        """Run the enclosed statements as one write transaction.

        Rolls back on any exception and re-raises it.
        """
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                yield cur
            except BaseException:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()
            finally:
                cur.close()

    @contextlib.contextmanager
    def write(self, cursor: Optional[sqlite3.Cursor] = None) -> Iterator[sqlite3.Cursor]:
        """Join the caller's open scope, or open a new one."""
        if cursor is not None:
            yield cursor
        else:
            with self.atomic() as cur:
                yield cur

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def fetch_one(
        self,
        sql: str,
        params: Sequence[Any] = (),
        *,
        cursor: Optional[sqlite3.Cursor] = None,
    ) -> Optional[Dict[str, Any]]:
        """Return the first row of *sql* as a dict, or ``None``."""
        if cursor is not None:
            row = cursor.execute(sql, params).fetchone()
        else:
            with self._lock:
                row = self._conn.execute(sql, params).fetchone()
        return dict(row) if row is not None else None

    def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        """Return every row of *sql* as a list of dicts."""
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Activity log
    # ------------------------------------------------------------------

    def log_activity(
        self,
        buyer_id: int,
        activity_type: str,
        description: str = "",
        *,
        channel_id: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        cursor: Optional[sqlite3.Cursor] = None,
    ) -> int:
        """Append an activity row and return its id."""
        with self.write(cursor) as cur:
            cur.execute(
                """
                INSERT INTO activity_log
                    (buyer_id, channel_id, activity_type, description,
                     metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    buyer_id,
                    channel_id,
                    activity_type,
                    description,
                    json.dumps(metadata or {}),
                    time.time(),
                ),
            )
            return cur.lastrowid  # type: ignore[return-value]

    def recent_activity(
        self,
        buyer_id: int,
        limit: int = 50,
    ) -> List[Dict[str, Any]]:
        """Return a buyer's activity, newest first, with metadata decoded."""
        rows = self.fetch_all(
            "SELECT * FROM activity_log WHERE buyer_id = ? ORDER BY id DESC LIMIT ?",
            (buyer_id, limit),
        )
        for row in rows:
            row["metadata"] = json.loads(row["metadata"])
        return rows

    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    @property
    def path(self) -> str:
        """The filesystem path of the database file."""
        return self._db_path
