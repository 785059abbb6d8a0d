"""Durable payment session rows.

The store is a passive persistence surface for
:class:`~creatorpay.payments.base.PaymentTransaction`.  The one rule it
enforces is that a transaction leaves ``pending`` at most once:
:meth:`SessionStore.transition` is a conditional ``UPDATE ... WHERE
status = 'pending'`` and reports whether it won.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import List, Optional

from creatorpay.payments.base import PaymentTransaction, TransactionStatus
from creatorpay.persistence import PaymentDB

logger = logging.getLogger(__name__)


class SessionStore:
    """CRUD over ``payment_transactions`` keyed by external id."""

    def __init__(self, db: PaymentDB) -> None:
        self._db = db

    def create(
        self,
        txn: PaymentTransaction,
        *,
        cursor: Optional[sqlite3.Cursor] = None,
    ) -> None:
        """Insert *txn*.  A duplicate external id raises ``sqlite3.IntegrityError``."""
        with self._db.write(cursor) as cur:
            cur.execute(
                """
                INSERT INTO payment_transactions
                    (external_id, buyer_id, content_id, pending_content_id,
                     channel_id, amount, purpose, payment_method, status,
                     expires_at, gateway_code, gateway_url, bonus_amount,
                     failure_reason, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    txn.external_id,
                    txn.buyer_id,
                    txn.content_id,
                    txn.pending_content_id,
                    txn.channel_id,
                    txn.amount,
                    txn.purpose.value,
                    txn.method.value,
                    txn.status.value,
                    txn.expires_at,
                    txn.gateway_code,
                    txn.gateway_url,
                    txn.bonus_amount,
                    txn.failure_reason,
                    txn.created_at,
                    txn.updated_at,
                ),
            )

    def get(
        self,
        external_id: str,
        *,
        cursor: Optional[sqlite3.Cursor] = None,
    ) -> Optional[PaymentTransaction]:
        row = self._db.fetch_one(
            "SELECT * FROM payment_transactions WHERE external_id = ?",
            (external_id,),
            cursor=cursor,
        )
        return PaymentTransaction.from_row(row) if row else None

    def transition(
        self,
        external_id: str,
        new_status: TransactionStatus,
        *,
        failure_reason: Optional[str] = None,
        bonus_amount: Optional[int] = None,
        cursor: Optional[sqlite3.Cursor] = None,
    ) -> bool:
        """Move a pending transaction to *new_status*.

        Returns ``False`` when the row is missing or already terminal.
        """
        if not new_status.is_terminal:
            raise ValueError("Transactions can only transition to a terminal status")
        with self._db.write(cursor) as cur:
            cur.execute(
                """
                UPDATE payment_transactions
                SET status = ?,
                    failure_reason = COALESCE(?, failure_reason),
                    bonus_amount = COALESCE(?, bonus_amount),
                    updated_at = ?
                WHERE external_id = ? AND status = 'pending'
                """,
                (new_status.value, failure_reason, bonus_amount, time.time(), external_id),
            )
            return cur.rowcount == 1

    def list_pending(self) -> List[PaymentTransaction]:
        rows = self._db.fetch_all(
            "SELECT * FROM payment_transactions WHERE status = 'pending' ORDER BY created_at"
        )
        return [PaymentTransaction.from_row(r) for r in rows]

    def list_overdue(self, now: Optional[float] = None) -> List[PaymentTransaction]:
        """Pending transactions whose deadline has passed."""
        rows = self._db.fetch_all(
            """
            SELECT * FROM payment_transactions
            WHERE status = 'pending' AND expires_at IS NOT NULL AND expires_at < ?
            ORDER BY expires_at
            """,
            (now if now is not None else time.time(),),
        )
        return [PaymentTransaction.from_row(r) for r in rows]

    def list_for_buyer(self, buyer_id: int, limit: int = 20) -> List[PaymentTransaction]:
        rows = self._db.fetch_all(
            "SELECT * FROM payment_transactions WHERE buyer_id = ? "
            "ORDER BY created_at DESC LIMIT ?",
            (buyer_id, limit),
        )
        return [PaymentTransaction.from_row(r) for r in rows]
