from __future__ import annotations

import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional


def _cpc_price_ids() -> Dict[str, str]:
    return {
        "pack20": os.environ.get("STRIPE_PRICE_ID_CPC_20", "price_cpc_20"),
        "pack50": os.environ.get("STRIPE_PRICE_ID_CPC_50", "price_cpc_50"),
        "pack100": os.environ.get("STRIPE_PRICE_ID_CPC_100", "price_cpc_100"),
        "pack200": os.environ.get("STRIPE_PRICE_ID_CPC_200", "price_cpc_200"),
    }


@dataclass
class Settings:
    """Process-wide configuration, read from the environment once at startup."""

    db_url: str = field(default_factory=lambda: os.environ.get("DB_URL", "postgresql://reno:reno@db:5432/reno"))
    store_backend: str = field(default_factory=lambda: os.environ.get("STORE_BACKEND", "memory"))
    stripe_secret_key: Optional[str] = field(default_factory=lambda: os.environ.get("STRIPE_SECRET_KEY"))
    stripe_webhook_secret: Optional[str] = field(default_factory=lambda: os.environ.get("STRIPE_WEBHOOK_SECRET"))
    app_url: str = field(default_factory=lambda: os.environ.get("APP_URL", "http://localhost:3000"))
    cpc_price_ids: Dict[str, str] = field(default_factory=_cpc_price_ids)
    base_cpc_cost: Decimal = field(default_factory=lambda: Decimal(os.environ.get("BASE_CPC_COST", "0.50")))
    min_recharge_amount: Decimal = field(
        default_factory=lambda: Decimal(os.environ.get("MIN_RECHARGE_AMOUNT", "10"))
    )
    # salt for the per-listing offset of approximate locations
    obfuscation_secret: str = field(
        default_factory=lambda: os.environ.get("LOCATION_OBFUSCATION_SECRET", "change-me")
    )
    log_level: str = field(default_factory=lambda: os.environ.get("LOG_LEVEL", "INFO"))
