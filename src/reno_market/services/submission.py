"""Listing submission: quota, authorization, enrichment and auto-boost."""

from __future__ import annotations

import hashlib
import logging
import math
import re
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from pydantic import BaseModel, Field

from reno_market.errors import AuthorizationError, NotFound, QuotaExceeded
from reno_market.models import Copropriety, Diagnostics, Listing, Location
from reno_market.models.listing import ListingStatus, PropertyType
from reno_market.repositories.base import AgencyStore, ListingStore

from .ledger import utcnow
from .packs import PackLike, can_create_listing, config_for, suggested_upgrade

logger = logging.getLogger(__name__)

HIGH_KEYWORDS = [
    "à rénover",
    "a renover",
    "travaux à prévoir",
    "travaux a prevoir",
    "gros travaux",
    "rénovation complète",
    "renovation complete",
    "à rafraîchir",
    "a rafraichir",
    "dans son jus",
    "à refaire",
]
MEDIUM_KEYWORDS = ["potentiel", "ancien", "investisseur", "rénovation", "renovation", "travaux", "chantier", "restaurer"]
LOW_KEYWORDS = ["charme", "authentique", "caractère", "cachet", "possibilités", "opportunité", "opportunite"]
KEYWORD_WEIGHTS = ((HIGH_KEYWORDS, 10), (MEDIUM_KEYWORDS, 5), (LOW_KEYWORDS, 2))


def renovation_score(text: str) -> Tuple[int, List[str]]:
    """Keyword score in [0, 100] and the keywords that matched."""
    lowered = text.lower()
    score = 0
    found: List[str] = []
    for words, weight in KEYWORD_WEIGHTS:
        for word in words:
            if word in lowered:
                score += weight
                found.append(word)
    return min(score, 100), found


def fingerprint(title: str, price: float, city: str, surface: Optional[float]) -> str:
    parts = [
        re.sub(r"[^a-z0-9]", "", title.lower()),
        str(price),
        re.sub(r"[^a-z]", "", city.lower()),
        str(math.floor(surface)) if surface else "",
    ]
    return hashlib.md5("|".join(parts).encode("utf-8")).hexdigest()


class ListingDraft(BaseModel):
    title: str = Field(min_length=1)
    description: str = ""
    price: float = Field(ge=0)
    surface: Optional[float] = Field(default=None, gt=0)
    rooms: Optional[int] = None
    bedrooms: Optional[int] = None
    property_type: PropertyType = "other"
    location: Location
    status: ListingStatus = "active"
    images: List[str] = Field(default_factory=list)
    renovation_level: Optional[int] = Field(default=None, ge=1, le=5)
    required_works: List[str] = Field(default_factory=list)
    diagnostics: Diagnostics = Field(default_factory=Diagnostics)
    copropriety: Copropriety = Field(default_factory=Copropriety)


class AutoBoostApplier:
    def __init__(self, clock: Callable[[], datetime] = utcnow) -> None:
        self.clock = clock

    def apply(self, listing: Listing, pack: PackLike) -> Listing:
        cfg = config_for(pack)
        if not cfg.auto_boost or not cfg.auto_boost_duration_hours:
            return listing
        now = self.clock()
        listing.is_sponsored = True
        listing.sponsored_at = now
        listing.sponsored_until = now + timedelta(hours=cfg.auto_boost_duration_hours)
        listing.auto_boost_applied = True
        listing.auto_boost_recurrent = cfg.auto_boost_recurrent
        return listing


class SubmissionService:
    def __init__(
        self,
        listings: ListingStore,
        agencies: AgencyStore,
        auto_boost: Optional[AutoBoostApplier] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.listings = listings
        self.agencies = agencies
        self.auto_boost = auto_boost or AutoBoostApplier(clock)
        self.clock = clock

    def submit(self, agency_id: str, draft: ListingDraft) -> Listing:
        agency = self.agencies.get_agency(agency_id)
        if agency is None:
            raise NotFound(f"Agency {agency_id} not found")
        if agency.status != "verified":
            raise AuthorizationError(f"Agency status is {agency.status}")

        pack = agency.subscription.pack
        active = self.listings.count_active_listings(agency_id)
        if not can_create_listing(pack, active):
            raise QuotaExceeded(
                current=active,
                maximum=config_for(pack).max_active_listings,
                suggested_pack=suggested_upgrade(pack).value,
            )

        score, keywords = renovation_score(f"{draft.title} {draft.description}")
        now = self.clock()
        listing = Listing(
            id=uuid.uuid4().hex,
            agency_id=agency_id,
            renovation_score=score,
            renovation_keywords=keywords,
            fingerprint=fingerprint(draft.title, draft.price, draft.location.city, draft.surface),
            created_at=now,
            updated_at=now,
            **draft.model_dump(),
        )
        self.auto_boost.apply(listing, pack)
        self.listings.insert_listing(listing)
        logger.info(
            "Agency %s submitted listing %s (auto-boost %s)", agency_id, listing.id, listing.auto_boost_applied
        )
        return listing
