"""Subscription pack catalog and the pure policy functions built on it.

Every business rule tied to a pack lives here. Nothing in this module does
I/O, and an unknown tier never raises: it falls back to FREE so that a
missing or corrupt value on an agency can't block a search or a submission.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class Pack(str, Enum):
    FREE = "FREE"
    STARTER = "STARTER"
    PRO = "PRO"
    PREMIUM = "PREMIUM"


@dataclass(frozen=True)
class StatsVisibility:
    views: bool = True
    clicks: bool = True
    contacts: bool = False
    performance_per_listing: bool = False
    cost_per_contact: bool = False
    global_performance: bool = False
    performance_by_zone: bool = False


@dataclass(frozen=True)
class PackFeatures:
    badge: Optional[str] = None
    priority_support: bool = False
    account_manager: bool = False
    cpc_help: bool = False
    early_access: bool = False


@dataclass(frozen=True)
class PackConfig:
    id: Pack
    name: str
    price: int
    max_active_listings: int  # -1 = unlimited
    display_priority: int
    cpc_discount: int  # percent
    cpc_max_duration_days: int
    map_highlight: bool = False
    auto_boost: bool = False
    auto_boost_duration_hours: Optional[int] = None
    auto_boost_recurrent: bool = False
    launch_price: Optional[int] = None
    stats: StatsVisibility = StatsVisibility()
    features: PackFeatures = PackFeatures()

    @property
    def unlimited(self) -> bool:
        return self.max_active_listings == -1


PACKS: Dict[Pack, PackConfig] = {
    Pack.FREE: PackConfig(
        id=Pack.FREE,
        name="Free",
        price=0,
        max_active_listings=5,
        display_priority=0,
        cpc_discount=0,
        cpc_max_duration_days=3,
    ),
    Pack.STARTER: PackConfig(
        id=Pack.STARTER,
        name="Starter",
        price=49,
        launch_price=39,
        max_active_listings=20,
        display_priority=1,
        cpc_discount=20,
        cpc_max_duration_days=7,
        stats=StatsVisibility(contacts=True),
        features=PackFeatures(badge="Agence vérifiée"),
    ),
    Pack.PRO: PackConfig(
        id=Pack.PRO,
        name="Pro",
        price=99,
        max_active_listings=50,
        display_priority=2,
        map_highlight=True,
        auto_boost=True,
        auto_boost_duration_hours=48,
        auto_boost_recurrent=False,
        cpc_discount=30,
        cpc_max_duration_days=14,
        stats=StatsVisibility(contacts=True, performance_per_listing=True),
        features=PackFeatures(badge="Agence Premium", priority_support=True),
    ),
    Pack.PREMIUM: PackConfig(
        id=Pack.PREMIUM,
        name="Premium",
        price=199,
        max_active_listings=-1,
        display_priority=3,
        map_highlight=True,
        auto_boost=True,
        auto_boost_duration_hours=48,
        auto_boost_recurrent=True,
        cpc_discount=40,
        cpc_max_duration_days=30,
        stats=StatsVisibility(
            contacts=True,
            performance_per_listing=True,
            cost_per_contact=True,
            global_performance=True,
            performance_by_zone=True,
        ),
        features=PackFeatures(
            badge="Agence Premium",
            priority_support=True,
            account_manager=True,
            cpc_help=True,
            early_access=True,
        ),
    ),
}

_UPGRADE_PATH = {
    Pack.FREE: Pack.STARTER,
    Pack.STARTER: Pack.PRO,
    Pack.PRO: Pack.PREMIUM,
    Pack.PREMIUM: Pack.PREMIUM,
}

PackLike = Union[Pack, str, None]


def parse_pack(value: PackLike) -> Pack:
    """Normalize a stored or external tier value. Unknown values mean FREE."""
    if isinstance(value, Pack):
        return value
    if value:
        try:
            return Pack(str(value).strip().upper())
        except ValueError:
            logger.warning("Unknown pack %r, falling back to FREE", value)
    return Pack.FREE


def config_for(tier: PackLike) -> PackConfig:
    return PACKS[parse_pack(tier)]


def effective_price(tier: PackLike) -> int:
    cfg = config_for(tier)
    return cfg.launch_price if cfg.launch_price is not None else cfg.price


def effective_cpc_price(tier: PackLike, base_price: Decimal) -> Decimal:
    """Per-click price after the pack discount, rounded to the cent."""
    discount = Decimal(config_for(tier).cpc_discount) / Decimal(100)
    price = Decimal(base_price) * (Decimal(1) - discount)
    return price.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def remaining_listing_quota(tier: PackLike, active_count: int) -> float:
    cfg = config_for(tier)
    if cfg.unlimited:
        return math.inf
    return max(0, cfg.max_active_listings - active_count)


def can_create_listing(tier: PackLike, active_count: int) -> bool:
    return remaining_listing_quota(tier, active_count) > 0


def suggested_upgrade(tier: PackLike) -> Pack:
    return _UPGRADE_PATH[parse_pack(tier)]


def pack_priority(tier: PackLike) -> int:
    return config_for(tier).display_priority


def has_feature(tier: PackLike, feature: str) -> bool:
    return bool(getattr(config_for(tier).features, feature, False))


def can_view_stat(tier: PackLike, stat: str) -> bool:
    return bool(getattr(config_for(tier).stats, stat, False))


def is_pack_higher_than(first: PackLike, second: PackLike) -> bool:
    return pack_priority(first) > pack_priority(second)


def packs_by_priority() -> List[PackConfig]:
    return sorted(PACKS.values(), key=lambda c: c.display_priority, reverse=True)


def cpc_params(tier: PackLike, base_price: Decimal = Decimal("0.50")) -> dict:
    cfg = config_for(tier)
    return {
        "price_per_click": effective_cpc_price(tier, base_price),
        "discount": cfg.cpc_discount,
        "max_duration_days": cfg.cpc_max_duration_days,
    }
