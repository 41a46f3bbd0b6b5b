from __future__ import annotations

import threading
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from reno_market.errors import NotFound, ValidationError
from reno_market.filters import FilterConfig, FilterEngine
from reno_market.models import Agency, CpcTransaction, Listing, PaymentRefs, SubscriptionHistoryEntry
from reno_market.services.geo import BoundingBox

from .base import SubscriptionChange, is_stale, same_month


class MemoryStore:
    """Process-local listing and agency store.

    One lock guards every mutation, which gives ``apply_debit`` the same
    check-and-decrement atomicity the SQL store gets from a conditional
    UPDATE. Entities are copied in and out so callers never share state
    with the store.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._listings: Dict[str, Listing] = {}
        self._agencies: Dict[str, Agency] = {}
        self._transactions: List[CpcTransaction] = []

    def init_schema(self) -> None:
        return None

    # Listings
    def get_listing(self, listing_id: str) -> Optional[Listing]:
        with self._lock:
            listing = self._listings.get(listing_id)
            return listing.model_copy(deep=True) if listing else None

    def find_listings(
        self,
        filters: FilterConfig,
        bbox: Optional[BoundingBox] = None,
        limit: Optional[int] = None,
        sponsored_first_at: Optional[datetime] = None,
    ) -> List[Listing]:
        engine = FilterEngine(filters)
        with self._lock:
            items = [l.model_copy(deep=True) for l in self._listings.values()]
        out = []
        for l in items:
            if bbox is not None and (l.location.point is None or not bbox.contains(l.location.point)):
                continue
            if engine.apply(l).included:
                out.append(l)
        if sponsored_first_at is not None:
            out.sort(key=lambda l: l.created_at, reverse=True)
            out.sort(key=lambda l: l.sponsorship_window_open(sponsored_first_at), reverse=True)
        if limit is not None:
            out = out[:limit]
        return out

    def insert_listing(self, listing: Listing) -> Listing:
        with self._lock:
            if listing.id in self._listings:
                raise ValidationError(f"Listing {listing.id} already exists")
            if listing.fingerprint and any(l.fingerprint == listing.fingerprint for l in self._listings.values()):
                raise ValidationError("duplicate listing")
            self._listings[listing.id] = listing.model_copy(deep=True)
        return listing

    def count_active_listings(self, agency_id: str) -> int:
        with self._lock:
            return sum(1 for l in self._listings.values() if l.agency_id == agency_id and l.status == "active")

    def increment_clicks(self, listing_id: str) -> None:
        with self._lock:
            listing = self._listings.get(listing_id)
            if listing is not None:
                listing.clicks += 1

    def set_sponsorship(
        self,
        listing_id: str,
        sponsored: bool,
        sponsored_at: Optional[datetime] = None,
        sponsored_until: Optional[datetime] = None,
    ) -> None:
        with self._lock:
            listing = self._listings.get(listing_id)
            if listing is None:
                raise NotFound(f"Listing {listing_id} not found")
            listing.is_sponsored = sponsored
            if sponsored:
                listing.sponsored_at = sponsored_at
                listing.sponsored_until = sponsored_until
                listing.auto_boost_applied = False

    # Agencies
    def get_agency(self, agency_id: str) -> Optional[Agency]:
        with self._lock:
            agency = self._agencies.get(agency_id)
            return agency.model_copy(deep=True) if agency else None

    def get_agencies(self, agency_ids: Iterable[str]) -> Dict[str, Agency]:
        with self._lock:
            return {
                aid: self._agencies[aid].model_copy(deep=True)
                for aid in set(agency_ids)
                if aid in self._agencies
            }

    def find_agency_by_subscription(self, subscription_id: str) -> Optional[Agency]:
        with self._lock:
            for agency in self._agencies.values():
                if agency.subscription.stripe_subscription_id == subscription_id:
                    return agency.model_copy(deep=True)
        return None

    def save_agency(self, agency: Agency) -> None:
        with self._lock:
            self._agencies[agency.id] = agency.model_copy(deep=True)

    # Ledger
    def find_transaction(self, refs: PaymentRefs) -> Optional[CpcTransaction]:
        if not refs.present():
            return None
        with self._lock:
            for tx in self._transactions:
                if tx.refs.overlaps(refs):
                    return tx.model_copy(deep=True)
        return None

    def apply_credit(self, tx: CpcTransaction, now: datetime) -> Optional[Decimal]:
        with self._lock:
            agency = self._require(tx.agency_id)
            if any(existing.refs.overlaps(tx.refs) for existing in self._transactions):
                return None
            self._transactions.append(tx.model_copy(deep=True))
            agency.cpc.balance += tx.amount
            agency.cpc.last_recharge_at = now
            agency.updated_at = now
            return agency.cpc.balance

    def apply_debit(self, tx: CpcTransaction, now: datetime) -> Optional[Decimal]:
        with self._lock:
            agency = self._agencies.get(tx.agency_id)
            if agency is None or agency.cpc.balance < tx.amount:
                return None
            agency.cpc.balance -= tx.amount
            agency.cpc.total_spent += tx.amount
            self._transactions.append(tx.model_copy(deep=True))
            return agency.cpc.balance

    def bump_click_counter(self, agency_id: str, now: datetime) -> int:
        with self._lock:
            agency = self._require(agency_id)
            if same_month(agency.updated_at, now):
                agency.cpc.clicks_this_month += 1
            else:
                agency.cpc.clicks_this_month = 1
            agency.updated_at = now
            return agency.cpc.clicks_this_month

    def list_transactions(self, agency_id: str, limit: int = 50) -> List[CpcTransaction]:
        with self._lock:
            txs = [t.model_copy(deep=True) for t in self._transactions if t.agency_id == agency_id]
        txs.sort(key=lambda t: t.created_at, reverse=True)
        return txs[:limit]

    # Subscriptions
    def apply_subscription(self, agency_id: str, change: SubscriptionChange, now: datetime) -> bool:
        with self._lock:
            agency = self._require(agency_id)
            sub = agency.subscription
            if is_stale(sub.last_event_at, change.event_at):
                return False
            if sub.pack != change.pack:
                sub.history.append(
                    SubscriptionHistoryEntry(
                        pack=sub.pack,
                        start_date=sub.start_date or change.period_start,
                        end_date=now,
                        reason=change.reason,
                    )
                )
            sub.pack = change.pack
            sub.start_date = change.period_start
            sub.auto_renew = True
            sub.stripe_subscription_id = change.subscription_id
            sub.stripe_price_id = change.price_id
            sub.status = change.status
            sub.current_period_end = change.period_end
            if change.event_at is not None:
                sub.last_event_at = change.event_at
            agency.updated_at = now
            return True

    def cancel_subscription(self, agency_id: str, event_at: Optional[datetime], now: datetime) -> bool:
        with self._lock:
            agency = self._require(agency_id)
            sub = agency.subscription
            if is_stale(sub.last_event_at, event_at):
                return False
            sub.history.append(
                SubscriptionHistoryEntry(
                    pack=sub.pack,
                    start_date=sub.start_date or now,
                    end_date=now,
                    reason="Subscription cancelled",
                )
            )
            sub.pack = "FREE"
            sub.auto_renew = False
            sub.end_date = now
            sub.stripe_subscription_id = None
            sub.stripe_price_id = None
            sub.status = "canceled"
            sub.current_period_end = None
            if event_at is not None:
                sub.last_event_at = event_at
            agency.updated_at = now
            return True

    def set_subscription_status(
        self,
        agency_id: str,
        status: str,
        period_end: Optional[datetime] = None,
        auto_renew: Optional[bool] = None,
    ) -> None:
        with self._lock:
            sub = self._require(agency_id).subscription
            sub.status = status
            if period_end is not None:
                sub.current_period_end = period_end
            if auto_renew is not None:
                sub.auto_renew = auto_renew

    def _require(self, agency_id: str) -> Agency:
        agency = self._agencies.get(agency_id)
        if agency is None:
            raise NotFound(f"Agency {agency_id} not found")
        return agency
