from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from reno_market.errors import AuthorizationError, NotFound, ValidationError
from reno_market.models import Agency, Listing
from reno_market.repositories.base import AgencyStore, ListingStore

from .ledger import utcnow
from .packs import config_for, cpc_params, parse_pack

logger = logging.getLogger(__name__)


class SponsorshipService:
    """Paid sponsorship windows. Clicks are billed later, nothing is charged here."""

    def __init__(
        self,
        listings: ListingStore,
        agencies: AgencyStore,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.listings = listings
        self.agencies = agencies
        self.clock = clock

    def sponsor(
        self,
        agency_id: str,
        listing_id: str,
        enabled: bool = True,
        duration_days: Optional[int] = None,
    ) -> Listing:
        agency = self._owner(agency_id, listing_id)

        if not enabled:
            self.listings.set_sponsorship(listing_id, False)
            logger.info("Sponsorship disabled on listing %s", listing_id)
            return self._reload(listing_id)

        params = cpc_params(agency.subscription.pack, agency.cpc.cost_per_click)
        if agency.cpc.balance < params["price_per_click"]:
            raise ValidationError(
                f"Insufficient CPC balance: {agency.cpc.balance} < {params['price_per_click']} per click"
            )
        max_days = params["max_duration_days"]
        days = max_days if duration_days is None else min(duration_days, max_days)
        if days < 1:
            raise ValidationError("duration_days must be >= 1")

        now = self.clock()
        self.listings.set_sponsorship(listing_id, True, sponsored_at=now, sponsored_until=now + timedelta(days=days))
        logger.info("Listing %s sponsored for %d days by agency %s", listing_id, days, agency_id)
        return self._reload(listing_id)

    def check(self, agency_id: str, listing_id: str) -> Dict[str, Any]:
        """Whether the agency can fund a sponsorship on this listing, and for how long."""
        agency = self._owner(agency_id, listing_id)
        pack = parse_pack(agency.subscription.pack)
        params = cpc_params(pack, agency.cpc.cost_per_click)
        balance = agency.cpc.balance
        price = params["price_per_click"]
        return {
            "hasEnoughCredits": balance >= price,
            "balance": str(balance),
            "costPerClick": str(price),
            "baseCost": str(agency.cpc.cost_per_click),
            "pack": pack.value,
            "packName": config_for(pack).name,
            "cpcDiscount": params["discount"],
            "maxDurationDays": params["max_duration_days"],
            "estimatedClicks": int(balance // price) if balance > 0 and price > 0 else 0,
        }

    def _owner(self, agency_id: str, listing_id: str) -> Agency:
        agency = self.agencies.get_agency(agency_id)
        if agency is None:
            raise NotFound(f"Agency {agency_id} not found")
        listing = self.listings.get_listing(listing_id)
        if listing is None:
            raise NotFound(f"Listing {listing_id} not found")
        if listing.agency_id != agency_id:
            raise AuthorizationError("Listing does not belong to this agency")
        return agency

    def _reload(self, listing_id: str) -> Listing:
        listing = self.listings.get_listing(listing_id)
        if listing is None:
            raise NotFound(f"Listing {listing_id} not found")
        return listing
