"""Contracts the core expects from its persistent stores."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Protocol

from reno_market.filters import FilterConfig
from reno_market.models import Agency, CpcTransaction, Listing, PaymentRefs
from reno_market.models.common import as_utc
from reno_market.services.geo import BoundingBox


@dataclass
class SubscriptionChange:
    pack: str
    period_start: Optional[datetime]
    subscription_id: Optional[str]
    price_id: Optional[str] = None
    status: Optional[str] = None
    period_end: Optional[datetime] = None
    event_at: Optional[datetime] = None
    # history entry text, used only when the pack value changes
    reason: str = ""


class ListingStore(Protocol):
    def init_schema(self) -> None: ...

    def get_listing(self, listing_id: str) -> Optional[Listing]: ...

    def find_listings(
        self,
        filters: FilterConfig,
        bbox: Optional[BoundingBox] = None,
        limit: Optional[int] = None,
        sponsored_first_at: Optional[datetime] = None,
    ) -> List[Listing]:
        """Listings matching ``filters`` whose point lies in ``bbox`` (if given).

        With ``sponsored_first_at`` the result is ordered by open sponsorship
        window at that instant, then newest first, before ``limit`` applies.
        """
        ...

    def insert_listing(self, listing: Listing) -> Listing: ...

    def count_active_listings(self, agency_id: str) -> int: ...

    def increment_clicks(self, listing_id: str) -> None: ...

    def set_sponsorship(
        self,
        listing_id: str,
        sponsored: bool,
        sponsored_at: Optional[datetime] = None,
        sponsored_until: Optional[datetime] = None,
    ) -> None: ...


class AgencyStore(Protocol):
    def get_agency(self, agency_id: str) -> Optional[Agency]: ...

    def get_agencies(self, agency_ids: Iterable[str]) -> Dict[str, Agency]: ...

    def find_agency_by_subscription(self, subscription_id: str) -> Optional[Agency]: ...

    def save_agency(self, agency: Agency) -> None: ...

    def find_transaction(self, refs: PaymentRefs) -> Optional[CpcTransaction]: ...

    def apply_credit(self, tx: CpcTransaction, now: datetime) -> Optional[Decimal]:
        """Insert ``tx`` and add its amount to the balance, as one unit.

        Returns the new balance, or None when one of the payment refs is
        already recorded (nothing is written then).
        """
        ...

    def apply_debit(self, tx: CpcTransaction, now: datetime) -> Optional[Decimal]:
        """Decrement the balance by ``tx.amount`` only if it stays >= 0.

        The check and the write are a single store operation. Returns the
        new balance, or None when the debit was refused.
        """
        ...

    def bump_click_counter(self, agency_id: str, now: datetime) -> int: ...

    def list_transactions(self, agency_id: str, limit: int = 50) -> List[CpcTransaction]: ...

    def apply_subscription(self, agency_id: str, change: SubscriptionChange, now: datetime) -> bool: ...

    def cancel_subscription(self, agency_id: str, event_at: Optional[datetime], now: datetime) -> bool: ...

    def set_subscription_status(
        self,
        agency_id: str,
        status: str,
        period_end: Optional[datetime] = None,
        auto_renew: Optional[bool] = None,
    ) -> None: ...


def is_stale(last_event_at: Optional[datetime], event_at: Optional[datetime]) -> bool:
    """An event older than the last one applied must not overwrite newer state."""
    if last_event_at is None or event_at is None:
        return False
    return as_utc(event_at) < as_utc(last_event_at)


def same_month(a: Optional[datetime], b: datetime) -> bool:
    return a is not None and a.year == b.year and a.month == b.month
