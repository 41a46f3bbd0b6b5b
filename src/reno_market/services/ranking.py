"""Search ordering: sponsorship, pack priority, requested sort, then tie-breaks."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from reno_market.errors import ValidationError
from reno_market.filters import FilterConfig
from reno_market.models import Agency, GeoPoint, Listing
from reno_market.repositories.base import AgencyStore, ListingStore

from .geo import APPROX_PAD_KM, BoundingBox, haversine_km, masked
from .ledger import utcnow
from .packs import config_for, effective_cpc_price, pack_priority

logger = logging.getLogger(__name__)

SPONSORED_BOOST = 100
MAX_PAGE_SIZE = 100

T = TypeVar("T")

SORT_KEYS = {
    "date": "created_at",
    "price": "price",
    "surface": "surface",
    "renovation": "renovation_level",
}
SORT_ALIASES = {"created_at": "date", "renovation_level": "renovation", "newest": "date"}


@dataclass(frozen=True)
class SortSpec:
    key: str = "date"
    order: str = "desc"

    @classmethod
    def parse(cls, key: Optional[str], order: Optional[str] = None) -> "SortSpec":
        k = (key or "date").strip().lower()
        k = SORT_ALIASES.get(k, k)
        if k not in SORT_KEYS:
            raise ValidationError(f"Unknown sort key: {key}")
        o = (order or ("desc" if k == "date" else "asc")).strip().lower()
        if o not in ("asc", "desc"):
            raise ValidationError(f"Unknown sort order: {order}")
        return cls(k, o)


@dataclass(frozen=True)
class RadiusQuery:
    center: GeoPoint
    radius_km: float

    def __post_init__(self) -> None:
        if not self.radius_km > 0:
            raise ValidationError("radius must be positive")


@dataclass
class RankedListing:
    listing: Listing
    priority: int
    sponsored: bool
    agency_pack: Optional[str] = None
    agency_badge: Optional[str] = None
    map_highlight: bool = False
    distance_km: Optional[float] = None

    def to_public(self) -> Dict[str, Any]:
        data = self.listing.model_dump(mode="json")
        # the stored flag outlives its window
        data.pop("is_sponsored", None)
        data["isSponsored"] = self.sponsored
        data["agencyPack"] = self.agency_pack
        data["agencyBadge"] = self.agency_badge
        data["mapHighlight"] = self.map_highlight
        if self.distance_km is not None:
            data["distanceKm"] = round(self.distance_km, 2)
        return data


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    limit: int
    pages: int = field(init=False)

    def __post_init__(self) -> None:
        self.pages = math.ceil(self.total / self.limit) if self.total else 0

    def pagination(self) -> Dict[str, int]:
        return {"page": self.page, "limit": self.limit, "total": self.total, "pages": self.pages}


def paginate(items: List[T], page: int = 1, limit: int = 20) -> Page[T]:
    """Slice an already fully ordered list."""
    if page < 1:
        raise ValidationError("page must be >= 1")
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
    start = (page - 1) * limit
    return Page(items=items[start : start + limit], total=len(items), page=page, limit=limit)


def is_currently_sponsored(listing: Listing, agency: Optional[Agency], now: datetime) -> bool:
    """Sponsorship that should influence ordering right now.

    A paid window only counts while the owning agency can still fund a click;
    a policy-granted auto-boost and platform listings need no budget.
    """
    if not listing.sponsorship_window_open(now):
        return False
    if listing.agency_id is None or listing.auto_boost_applied:
        return True
    if agency is None:
        return False
    price = effective_cpc_price(agency.subscription.pack, agency.cpc.cost_per_click)
    return agency.cpc.balance >= price


class RankingEngine:
    def enrich(self, listings: List[Listing], agencies: Dict[str, Agency], now: datetime) -> List[RankedListing]:
        out: List[RankedListing] = []
        for listing in listings:
            agency = agencies.get(listing.agency_id) if listing.agency_id else None
            sponsored = is_currently_sponsored(listing, agency, now)
            priority = SPONSORED_BOOST if sponsored else 0
            pack = badge = None
            highlight = False
            if agency is not None:
                cfg = config_for(agency.subscription.pack)
                priority += pack_priority(cfg.id)
                pack = cfg.id.value
                badge = cfg.features.badge
                highlight = cfg.map_highlight
            out.append(
                RankedListing(
                    listing=listing,
                    priority=priority,
                    sponsored=sponsored,
                    agency_pack=pack,
                    agency_badge=badge,
                    map_highlight=highlight,
                )
            )
        return out

    def rank(
        self,
        listings: List[Listing],
        agencies: Dict[str, Agency],
        now: datetime,
        sort: SortSpec = SortSpec(),
        radius: Optional[RadiusQuery] = None,
    ) -> List[RankedListing]:
        ranked = self.enrich(listings, agencies, now)
        if radius is not None:
            ranked = self._within(ranked, radius)

        # Stable passes, least significant key first.
        ranked.sort(key=lambda r: r.listing.id)
        if radius is not None or sort.key != "date":
            ranked.sort(key=lambda r: r.listing.created_at, reverse=True)
            ranked.sort(key=lambda r: r.listing.renovation_score, reverse=True)
        if radius is not None:
            ranked.sort(key=lambda r: r.distance_km)
        else:
            ranked.sort(key=self._primary_key(sort))
        ranked.sort(key=lambda r: r.priority, reverse=True)
        return ranked

    @staticmethod
    def _within(ranked: List[RankedListing], radius: RadiusQuery) -> List[RankedListing]:
        kept = []
        for r in ranked:
            point = r.listing.location.point
            if point is None:
                continue
            r.distance_km = haversine_km(radius.center, point)
            if r.distance_km <= radius.radius_km:
                kept.append(r)
        return kept

    @staticmethod
    def _primary_key(sort: SortSpec) -> Callable[[RankedListing], tuple]:
        attr = SORT_KEYS[sort.key]
        sign = -1.0 if sort.order == "desc" else 1.0

        def key(r: RankedListing) -> tuple:
            value = getattr(r.listing, attr)
            if value is None:
                return (1, 0.0)
            if isinstance(value, datetime):
                value = value.timestamp()
            # listings without the sort field go last in both directions
            return (0, sign * float(value))

        return key


class SearchService:
    def __init__(
        self,
        listings: ListingStore,
        agencies: AgencyStore,
        obfuscation_secret: str,
        engine: Optional[RankingEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.listings = listings
        self.agencies = agencies
        self.secret = obfuscation_secret
        self.engine = engine or RankingEngine()
        self.clock = clock

    def search(
        self,
        filters: FilterConfig,
        sort: SortSpec = SortSpec(),
        radius: Optional[RadiusQuery] = None,
        page: int = 1,
        limit: int = 20,
    ) -> Page[RankedListing]:
        if page < 1 or not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"page must be >= 1 and limit between 1 and {MAX_PAGE_SIZE}")
        bbox = None
        if radius is not None:
            # padded so approximate points displaced outward are still candidates
            bbox = BoundingBox.around(radius.center, radius.radius_km + APPROX_PAD_KM)
        candidates = [masked(l, self.secret) for l in self.listings.find_listings(filters, bbox=bbox)]
        agencies = self.agencies.get_agencies({l.agency_id for l in candidates if l.agency_id})
        ranked = self.engine.rank(candidates, agencies, self.clock(), sort=sort, radius=radius)
        logger.debug("Search matched %d listings", len(ranked))
        return paginate(ranked, page=page, limit=limit)
