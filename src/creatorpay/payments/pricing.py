"""Promo arithmetic.

All amounts are whole Rupiah; fractional results round down.
"""

from __future__ import annotations

from typing import Optional

from creatorpay.catalog import Promo


def final_price(base_price: int, discount: Optional[Promo] = None) -> int:
    """Return *base_price* after an optional discount promo, never below 0."""
    if discount is None or discount.discount_percentage <= 0:
        return max(base_price, 0)
    cut = int(base_price * discount.discount_percentage // 100)
    return max(base_price - cut, 0)


def topup_bonus(amount: int, bonus: Optional[Promo] = None) -> int:
    """Return the bonus credited on a confirmed top-up of *amount*."""
    if bonus is None or amount < bonus.bonus_min_topup:
        return 0
    return int(amount * bonus.bonus_percentage // 100)
