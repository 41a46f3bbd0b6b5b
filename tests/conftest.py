from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import pytest

from reno_market.models import Agency, CpcAccount, GeoPoint, Listing, Location, Subscription
from reno_market.repositories import MemoryStore

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def clock() -> datetime:
    return NOW


def make_listing(
    listing_id: str,
    agency_id: Optional[str] = None,
    price: float = 100_000,
    lat: Optional[float] = 48.8566,
    lng: Optional[float] = 2.3522,
    created_at: datetime = NOW,
    **kwargs,
) -> Listing:
    point = GeoPoint(lat=lat, lng=lng) if lat is not None and lng is not None else None
    precision = kwargs.pop("precision", "exact")
    return Listing(
        id=listing_id,
        title=kwargs.pop("title", f"Maison {listing_id}"),
        price=price,
        location=Location(city=kwargs.pop("city", "Paris"), point=point, precision=precision),
        agency_id=agency_id,
        created_at=created_at,
        **kwargs,
    )


def make_agency(
    agency_id: str,
    pack: str = "FREE",
    balance: str = "0",
    status: str = "verified",
    **kwargs,
) -> Agency:
    return Agency(
        id=agency_id,
        company_name=f"Agence {agency_id}",
        email=f"{agency_id}@example.com",
        status=status,
        subscription=Subscription(pack=pack, **kwargs.pop("subscription", {})),
        cpc=CpcAccount(balance=Decimal(balance), **kwargs.pop("cpc", {})),
        created_at=kwargs.pop("created_at", NOW),
        **kwargs,
    )


@pytest.fixture
def store() -> MemoryStore:
    return MemoryStore()
