from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

from reno_market.errors import NotFound
from reno_market.repositories.base import AgencyStore, ListingStore

from .ledger import Ledger, utcnow
from .packs import effective_cpc_price

logger = logging.getLogger(__name__)


@dataclass
class ClickResult:
    billed: bool = False
    auto_boost: bool = False
    budget_exhausted: bool = False
    amount: Optional[Decimal] = None
    new_balance: Optional[Decimal] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "billed": self.billed,
            "autoBoost": self.auto_boost,
            "budgetExhausted": self.budget_exhausted,
            "amount": str(self.amount) if self.amount is not None else None,
            "newBalance": str(self.new_balance) if self.new_balance is not None else None,
        }


class ClickService:
    """Counts listing clicks and bills the paid sponsored ones."""

    def __init__(
        self,
        listings: ListingStore,
        agencies: AgencyStore,
        ledger: Ledger,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.listings = listings
        self.agencies = agencies
        self.ledger = ledger
        self.clock = clock

    def record_click(self, listing_id: str) -> ClickResult:
        listing = self.listings.get_listing(listing_id)
        if listing is None:
            raise NotFound(f"Listing {listing_id} not found")
        self.listings.increment_clicks(listing_id)

        if listing.agency_id is None or not listing.is_sponsored:
            return ClickResult()
        if not listing.sponsorship_window_open(self.clock()):
            # lazy expiry
            self.listings.set_sponsorship(listing_id, False)
            return ClickResult()
        if listing.auto_boost_applied:
            return ClickResult(auto_boost=True)

        agency = self.agencies.get_agency(listing.agency_id)
        if agency is None:
            logger.warning("Listing %s references missing agency %s", listing_id, listing.agency_id)
            return ClickResult()

        price = effective_cpc_price(agency.subscription.pack, agency.cpc.cost_per_click)
        result = self.ledger.debit(
            agency.id, price, description=f"Clic sur annonce {listing_id}", metadata={"listingId": listing_id}
        )
        if not result.applied:
            return ClickResult(budget_exhausted=True, amount=price, new_balance=result.new_balance)
        self.ledger.monthly_click_counter(agency.id)
        return ClickResult(billed=True, amount=price, new_balance=result.new_balance)
