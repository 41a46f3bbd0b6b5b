"""Data models for marketplace listings."""

from __future__ import annotations

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .common import UtcDatetime, as_utc

PropertyType = Literal["house", "apartment", "building", "land", "commercial", "other"]
ListingStatus = Literal["active", "pending", "inactive", "sold"]


class GeoPoint(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class Location(BaseModel):
    city: str
    department: str = ""
    region: str = ""
    postal_code: Optional[str] = None
    point: Optional[GeoPoint] = None
    # "approx" listings never expose their true point outside the core
    precision: Literal["exact", "approx"] = "exact"


class Diagnostics(BaseModel):
    dpe_class: Optional[str] = None
    ges_class: Optional[str] = None
    energy_cost_min: Optional[int] = None
    energy_cost_max: Optional[int] = None


class Copropriety(BaseModel):
    is_subject: Optional[bool] = None
    annual_charges: Optional[int] = None
    procedure_in_progress: Optional[bool] = None


class Listing(BaseModel):
    """A real-estate ad, optionally owned by an agency."""

    id: str
    title: str
    description: str = ""
    price: float = Field(ge=0)
    surface: Optional[float] = None
    rooms: Optional[int] = None
    bedrooms: Optional[int] = None
    property_type: PropertyType = "other"
    location: Location
    agency_id: Optional[str] = None
    status: ListingStatus = "active"
    images: List[str] = Field(default_factory=list)
    renovation_level: Optional[int] = None
    renovation_score: int = 0
    renovation_keywords: List[str] = Field(default_factory=list)
    required_works: List[str] = Field(default_factory=list)
    diagnostics: Diagnostics = Field(default_factory=Diagnostics)
    copropriety: Copropriety = Field(default_factory=Copropriety)
    fingerprint: Optional[str] = None
    clicks: int = 0
    is_sponsored: bool = False
    sponsored_at: Optional[UtcDatetime] = None
    sponsored_until: Optional[UtcDatetime] = None
    auto_boost_applied: bool = False
    auto_boost_recurrent: bool = False
    created_at: UtcDatetime
    updated_at: Optional[UtcDatetime] = None

    def sponsorship_window_open(self, now: datetime) -> bool:
        """True while ``now`` lies inside ``[sponsored_at, sponsored_until]``.

        The flag alone is not trusted: nothing flips it back when the window
        elapses, so readers must always go through this check.
        """
        if not self.is_sponsored:
            return False
        now = as_utc(now)
        if self.sponsored_at is not None and now < self.sponsored_at:
            return False
        if self.sponsored_until is not None and now > self.sponsored_until:
            return False
        return True
