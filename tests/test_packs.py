from __future__ import annotations

import math
from decimal import Decimal

from reno_market.services import packs
from reno_market.services.packs import Pack


def test_unknown_tier_falls_back_to_free():
    assert packs.parse_pack("GOLD") is Pack.FREE
    assert packs.parse_pack(None) is Pack.FREE
    assert packs.config_for("") is packs.PACKS[Pack.FREE]


def test_legacy_lowercase_names_are_accepted():
    assert packs.parse_pack("pro") is Pack.PRO
    assert packs.parse_pack(" premium ") is Pack.PREMIUM


def test_display_priority_grows_with_tier():
    priorities = [packs.pack_priority(p) for p in (Pack.FREE, Pack.STARTER, Pack.PRO, Pack.PREMIUM)]
    assert priorities == [0, 1, 2, 3]
    assert [c.id for c in packs.packs_by_priority()] == [Pack.PREMIUM, Pack.PRO, Pack.STARTER, Pack.FREE]
    assert packs.is_pack_higher_than("PRO", "STARTER")
    assert not packs.is_pack_higher_than("FREE", "FREE")


def test_effective_cpc_price_applies_discount():
    assert packs.effective_cpc_price("FREE", Decimal("0.50")) == Decimal("0.50")
    assert packs.effective_cpc_price("STARTER", Decimal("0.50")) == Decimal("0.40")
    assert packs.effective_cpc_price("PRO", Decimal("0.50")) == Decimal("0.35")
    assert packs.effective_cpc_price("PREMIUM", Decimal("0.50")) == Decimal("0.30")


def test_remaining_quota():
    assert packs.remaining_listing_quota("FREE", 3) == 2
    assert packs.remaining_listing_quota("FREE", 9) == 0
    assert math.isinf(packs.remaining_listing_quota("PREMIUM", 10_000))
    assert packs.can_create_listing("STARTER", 19)
    assert not packs.can_create_listing("STARTER", 20)


def test_upgrade_path_and_prices():
    assert packs.suggested_upgrade("FREE") is Pack.STARTER
    assert packs.suggested_upgrade("PREMIUM") is Pack.PREMIUM
    assert packs.effective_price("STARTER") == 39
    assert packs.effective_price("PRO") == 99


def test_feature_and_stats_gates():
    assert packs.has_feature("PRO", "priority_support")
    assert not packs.has_feature("STARTER", "priority_support")
    assert not packs.has_feature("PREMIUM", "no_such_feature")
    assert packs.can_view_stat("PREMIUM", "performance_by_zone")
    assert not packs.can_view_stat("FREE", "contacts")
    assert packs.config_for("STARTER").features.badge == "Agence vérifiée"


def test_cpc_params():
    params = packs.cpc_params("PRO")
    assert params == {"price_per_click": Decimal("0.35"), "discount": 30, "max_duration_days": 14}
