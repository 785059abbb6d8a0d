"""Channels, content items and promos.

The payment core only reads from this surface: who owns a channel, what
a content item costs and which promos are active.  Writes exist for
seeding and for the admin tooling that sits outside the core.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

from creatorpay.persistence import PaymentDB

logger = logging.getLogger(__name__)

PROMO_DISCOUNT = "discount"
PROMO_TOPUP_BONUS = "topup_bonus"


@dataclass
class Channel:
    id: int
    owner_id: int
    username: str = ""
    title: str = ""
    is_active: bool = True


@dataclass
class ContentItem:
    id: int
    channel_id: int
    base_price: int
    title: str = ""
    caption: str = ""
    file_type: str = "video"
    file_ref: Optional[str] = None


@dataclass
class Promo:
    """An active promo row.

    ``discount_percentage`` applies to ``discount`` promos;
    ``bonus_min_topup`` and ``bonus_percentage`` to ``topup_bonus`` promos.
    """

    id: int
    channel_id: int
    promo_type: str
    discount_percentage: float = 0.0
    bonus_min_topup: int = 0
    bonus_percentage: float = 0.0
    expires_at: Optional[float] = None


def _channel(row: Dict[str, Any]) -> Channel:
    return Channel(
        id=row["id"],
        owner_id=row["owner_id"],
        username=row["username"],
        title=row["title"],
        is_active=bool(row["is_active"]),
    )


def _content(row: Dict[str, Any]) -> ContentItem:
    return ContentItem(
        id=row["id"],
        channel_id=row["channel_id"],
        base_price=row["base_price"],
        title=row["title"],
        caption=row["caption"],
        file_type=row["file_type"],
        file_ref=row["file_ref"],
    )


def _promo(row: Dict[str, Any]) -> Promo:
    return Promo(
        id=row["id"],
        channel_id=row["channel_id"],
        promo_type=row["promo_type"],
        discount_percentage=row["discount_percentage"],
        bonus_min_topup=row["bonus_min_topup"],
        bonus_percentage=row["bonus_percentage"],
        expires_at=row["expires_at"],
    )


class Catalog:
    """Read and seed channels, content and promos."""

    def __init__(self, db: PaymentDB) -> None:
        self._db = db

    # -- channels ----------------------------------------------------------

    def add_channel(
        self,
        channel_id: int,
        owner_id: int,
        *,
        username: str = "",
        title: str = "",
    ) -> Channel:
        with self._db.atomic() as cur:
            cur.execute(
                """
                INSERT INTO channels (id, owner_id, username, title, is_active, created_at)
                VALUES (?, ?, ?, ?, 1, ?)
                ON CONFLICT(id) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    username = excluded.username,
                    title = excluded.title,
                    is_active = 1
                """,
                (channel_id, owner_id, username, title, time.time()),
            )
        return Channel(id=channel_id, owner_id=owner_id, username=username, title=title)

    def get_channel(self, channel_id: int) -> Optional[Channel]:
        row = self._db.fetch_one("SELECT * FROM channels WHERE id = ?", (channel_id,))
        return _channel(row) if row else None

    # -- content -----------------------------------------------------------

    def add_content(
        self,
        channel_id: int,
        base_price: int,
        *,
        title: str = "",
        caption: str = "",
        file_type: str = "video",
        file_ref: Optional[str] = None,
    ) -> ContentItem:
        if base_price < 0:
            raise ValueError("base_price must be non-negative")
        with self._db.atomic() as cur:
            cur.execute(
                """
                INSERT INTO content_items
                    (channel_id, title, caption, base_price, file_type, file_ref, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (channel_id, title, caption, base_price, file_type, file_ref, time.time()),
            )
            content_id = cur.lastrowid
        return ContentItem(
            id=content_id,  # type: ignore[arg-type]
            channel_id=channel_id,
            base_price=base_price,
            title=title,
            caption=caption,
            file_type=file_type,
            file_ref=file_ref,
        )

    def get_content(self, content_id: int) -> Optional[ContentItem]:
        row = self._db.fetch_one("SELECT * FROM content_items WHERE id = ?", (content_id,))
        return _content(row) if row else None

    # -- promos ------------------------------------------------------------

    def set_discount(
        self,
        channel_id: int,
        percentage: float,
        *,
        expires_at: Optional[float] = None,
    ) -> Promo:
        """Replace the channel's discount promo.

        :raises ValueError: If *percentage* is outside 1-50.
        """
        if not 1 <= percentage <= 50:
            raise ValueError("Discount percentage must be between 1 and 50")
        return self._replace_promo(
            channel_id,
            PROMO_DISCOUNT,
            discount_percentage=percentage,
            expires_at=expires_at,
        )

    def set_topup_bonus(
        self,
        channel_id: int,
        min_topup: int,
        percentage: float,
        *,
        expires_at: Optional[float] = None,
    ) -> Promo:
        """Replace the channel's top-up bonus promo."""
        if min_topup < 0 or percentage <= 0:
            raise ValueError("Top-up bonus needs a non-negative minimum and a positive percentage")
        return self._replace_promo(
            channel_id,
            PROMO_TOPUP_BONUS,
            bonus_min_topup=min_topup,
            bonus_percentage=percentage,
            expires_at=expires_at,
        )

    def _replace_promo(self, channel_id: int, promo_type: str, **fields: Any) -> Promo:
        with self._db.atomic() as cur:
            cur.execute(
                "UPDATE channel_promos SET is_active = 0 "
                "WHERE channel_id = ? AND promo_type = ?",
                (channel_id, promo_type),
            )
            cur.execute(
                """
                INSERT INTO channel_promos
                    (channel_id, promo_type, discount_percentage, bonus_min_topup,
                     bonus_percentage, is_active, expires_at, created_at)
                VALUES (?, ?, ?, ?, ?, 1, ?, ?)
                """,
                (
                    channel_id,
                    promo_type,
                    fields.get("discount_percentage", 0),
                    fields.get("bonus_min_topup", 0),
                    fields.get("bonus_percentage", 0),
                    fields.get("expires_at"),
                    time.time(),
                ),
            )
            promo_id = cur.lastrowid
        logger.info("Channel %s: %s promo set", channel_id, promo_type)
        return Promo(id=promo_id, channel_id=channel_id, promo_type=promo_type, **fields)  # type: ignore[arg-type]

    def clear_promo(self, channel_id: int, promo_type: str) -> None:
        with self._db.atomic() as cur:
            cur.execute(
                "UPDATE channel_promos SET is_active = 0 "
                "WHERE channel_id = ? AND promo_type = ?",
                (channel_id, promo_type),
            )

    def _active_promo(
        self,
        channel_id: int,
        promo_type: str,
        now: Optional[float] = None,
    ) -> Optional[Promo]:
        row = self._db.fetch_one(
            """
            SELECT * FROM channel_promos
            WHERE channel_id = ? AND promo_type = ? AND is_active = 1
              AND (expires_at IS NULL OR expires_at > ?)
            ORDER BY id DESC LIMIT 1
            """,
            (channel_id, promo_type, now if now is not None else time.time()),
        )
        return _promo(row) if row else None

    def active_discount(self, channel_id: int, now: Optional[float] = None) -> Optional[Promo]:
        return self._active_promo(channel_id, PROMO_DISCOUNT, now)

    def active_topup_bonus(self, channel_id: int, now: Optional[float] = None) -> Optional[Promo]:
        return self._active_promo(channel_id, PROMO_TOPUP_BONUS, now)
