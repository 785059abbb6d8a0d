"""Tests for creatorpay.catalog and creatorpay.payments.pricing."""

from __future__ import annotations

import pytest

from creatorpay.catalog import PROMO_DISCOUNT, PROMO_TOPUP_BONUS, Promo
from creatorpay.payments.pricing import final_price, topup_bonus

NOW = 1_750_000_000.0


def _discount(pct: float) -> Promo:
    return Promo(id=1, channel_id=1, promo_type=PROMO_DISCOUNT, discount_percentage=pct)


def _bonus(min_topup: int, pct: float) -> Promo:
    return Promo(
        id=1,
        channel_id=1,
        promo_type=PROMO_TOPUP_BONUS,
        bonus_min_topup=min_topup,
        bonus_percentage=pct,
    )


class TestPricing:
    def test_no_discount(self):
        assert final_price(15_000) == 15_000

    def test_discount_rounds_down_the_cut(self):
        assert final_price(15_000, _discount(20)) == 12_000
        assert final_price(999, _discount(10)) == 900

    def test_price_never_negative(self):
        assert final_price(100, _discount(150)) == 0

    def test_bonus_below_minimum(self):
        assert topup_bonus(9_999, _bonus(10_000, 10)) == 0

    def test_bonus_at_minimum(self):
        assert topup_bonus(10_000, _bonus(10_000, 10)) == 1_000

    def test_bonus_rounds_down(self):
        assert topup_bonus(10_005, _bonus(0, 10)) == 1_000

    def test_no_bonus_promo(self):
        assert topup_bonus(50_000) == 0


class TestCatalog:
    def test_channel_round_trip(self, catalog):
        catalog.add_channel(-5, 99, username="kreator", title="Kreator")
        channel = catalog.get_channel(-5)
        assert channel.owner_id == 99
        assert channel.username == "kreator"
        assert channel.is_active

    def test_add_channel_updates_owner(self, catalog):
        catalog.add_channel(-5, 99)
        catalog.add_channel(-5, 100)
        assert catalog.get_channel(-5).owner_id == 100

    def test_content_round_trip(self, catalog, channel):
        item = catalog.add_content(channel.id, 25_000, title="Bonus cut", file_ref="file-abc")
        stored = catalog.get_content(item.id)
        assert stored == item

    def test_missing_rows(self, catalog):
        assert catalog.get_channel(1) is None
        assert catalog.get_content(1) is None

    def test_negative_price_rejected(self, catalog, channel):
        with pytest.raises(ValueError):
            catalog.add_content(channel.id, -1)

    @pytest.mark.parametrize("pct", [0, 51, -10])
    def test_discount_bounds(self, catalog, channel, pct):
        with pytest.raises(ValueError):
            catalog.set_discount(channel.id, pct)

    def test_discount_replaces_previous(self, catalog, channel):
        catalog.set_discount(channel.id, 10)
        catalog.set_discount(channel.id, 25)
        assert catalog.active_discount(channel.id, NOW).discount_percentage == 25

    def test_expired_promo_is_inactive(self, catalog, channel):
        catalog.set_discount(channel.id, 10, expires_at=NOW - 1)
        assert catalog.active_discount(channel.id, NOW) is None

    def test_clear_promo(self, catalog, channel):
        catalog.set_topup_bonus(channel.id, 10_000, 5)
        catalog.clear_promo(channel.id, PROMO_TOPUP_BONUS)
        assert catalog.active_topup_bonus(channel.id, NOW) is None

    def test_bonus_validation(self, catalog, channel):
        with pytest.raises(ValueError):
            catalog.set_topup_bonus(channel.id, 10_000, 0)
