"""Per-(buyer, channel) balances, content grants and purchase history.

Every balance mutation is a single SQL statement.  :meth:`LedgerStore.debit`
is the only overdraft guard: it decrements only ``WHERE balance_amount >= ?``
and reports whether a row was affected.  There is no read-modify-write
at the application layer.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Any, Dict, List, Optional

from creatorpay.persistence import PaymentDB

logger = logging.getLogger(__name__)


class LedgerStore:
    """Atomic balance primitives over ``channel_balances``.

    Methods taking ``cursor`` join the caller's
    :meth:`~creatorpay.persistence.PaymentDB.atomic` scope when one is
    given, so a transition and its ledger effects commit together.
    """

    def __init__(self, db: PaymentDB) -> None:
        self._db = db

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    def credit(
        self,
        buyer_id: int,
        channel_id: int,
        amount: int,
        *,
        cursor: Optional[sqlite3.Cursor] = None,
    ) -> None:
        """Add *amount* to the balance and the cumulative top-up total.

        Creates the row on first credit.  Callers guarantee one call per
        confirmed top-up.
        """
        if amount < 0:
            raise ValueError("credit amount must be non-negative")
        now = time.time()
        with self._db.write(cursor) as cur:
            cur.execute(
                """
                INSERT INTO channel_balances
                    (buyer_id, channel_id, balance_amount, total_topup,
                     total_spent, last_topup_at, updated_at)
                VALUES (?, ?, ?, ?, 0, ?, ?)
                ON CONFLICT(buyer_id, channel_id) DO UPDATE SET
                    balance_amount = balance_amount + excluded.balance_amount,
                    total_topup = total_topup + excluded.total_topup,
                    last_topup_at = excluded.last_topup_at,
                    updated_at = excluded.updated_at
                """,
                (buyer_id, channel_id, amount, amount, now, now),
            )
        logger.debug("Credited %d to buyer %s on channel %s", amount, buyer_id, channel_id)

    def debit(
        self,
        buyer_id: int,
        channel_id: int,
        amount: int,
        *,
        cursor: Optional[sqlite3.Cursor] = None,
    ) -> bool:
        """Decrement the balance by *amount* only if it covers it.

        Returns ``True`` when the row was updated.  A zero amount always
        succeeds without touching the row.
        """
        if amount < 0:
            raise ValueError("debit amount must be non-negative")
        if amount == 0:
            return True
        with self._db.write(cursor) as cur:
            cur.execute(
                """
                UPDATE channel_balances
                SET balance_amount = balance_amount - ?,
                    total_spent = total_spent + ?,
                    updated_at = ?
                WHERE buyer_id = ? AND channel_id = ? AND balance_amount >= ?
                """,
                (amount, amount, time.time(), buyer_id, channel_id, amount),
            )
            ok = cur.rowcount == 1
        if not ok:
            logger.debug(
                "Debit of %d refused for buyer %s on channel %s", amount, buyer_id, channel_id
            )
        return ok

    def read(
        self,
        buyer_id: int,
        channel_id: int,
        *,
        cursor: Optional[sqlite3.Cursor] = None,
    ) -> int:
        """Return the current balance, ``0`` if the row does not exist."""
        row = self._db.fetch_one(
            "SELECT balance_amount FROM channel_balances WHERE buyer_id = ? AND channel_id = ?",
            (buyer_id, channel_id),
            cursor=cursor,
        )
        return row["balance_amount"] if row else 0

    def balance_record(self, buyer_id: int, channel_id: int) -> Optional[Dict[str, Any]]:
        """Return the full balance row (totals and timestamps) or ``None``."""
        return self._db.fetch_one(
            "SELECT * FROM channel_balances WHERE buyer_id = ? AND channel_id = ?",
            (buyer_id, channel_id),
        )

    def list_balances(self, buyer_id: int) -> List[Dict[str, Any]]:
        return self._db.fetch_all(
            "SELECT * FROM channel_balances WHERE buyer_id = ? ORDER BY channel_id",
            (buyer_id,),
        )

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def grant_access(
        self,
        buyer_id: int,
        content_id: int,
        amount: int,
        transaction_id: Optional[str],
        *,
        cursor: Optional[sqlite3.Cursor] = None,
    ) -> bool:
        """Upsert the (buyer, content) grant.  Returns ``True`` if it is new."""
        with self._db.write(cursor) as cur:
            cur.execute(
                """
                INSERT INTO content_grants (buyer_id, content_id, amount, transaction_id, granted_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(buyer_id, content_id) DO NOTHING
                """,
                (buyer_id, content_id, amount, transaction_id, time.time()),
            )
            return cur.rowcount == 1

    def has_access(
        self,
        buyer_id: int,
        content_id: int,
        *,
        cursor: Optional[sqlite3.Cursor] = None,
    ) -> bool:
        row = self._db.fetch_one(
            "SELECT 1 AS granted FROM content_grants WHERE buyer_id = ? AND content_id = ?",
            (buyer_id, content_id),
            cursor=cursor,
        )
        return row is not None

    # ------------------------------------------------------------------
    # Purchase history
    # ------------------------------------------------------------------

    def record_purchase(
        self,
        buyer_id: int,
        content_id: int,
        amount: int,
        payment_method: str,
        transaction_id: Optional[str],
        *,
        cursor: Optional[sqlite3.Cursor] = None,
    ) -> None:
        with self._db.write(cursor) as cur:
            cur.execute(
                """
                INSERT INTO purchase_history
                    (buyer_id, content_id, amount, payment_method, transaction_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (buyer_id, content_id, amount, payment_method, transaction_id, time.time()),
            )

    def purchase_history(self, buyer_id: int, limit: int = 50) -> List[Dict[str, Any]]:
        return self._db.fetch_all(
            "SELECT * FROM purchase_history WHERE buyer_id = ? ORDER BY id DESC LIMIT ?",
            (buyer_id, limit),
        )
