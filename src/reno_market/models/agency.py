"""Agency, subscription and CPC account models."""

from __future__ import annotations

from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from .common import UtcDatetime

AgencyStatus = Literal["pending", "verified", "rejected", "suspended"]


class SubscriptionHistoryEntry(BaseModel):
    pack: str
    start_date: Optional[UtcDatetime] = None
    end_date: UtcDatetime
    reason: str


class Subscription(BaseModel):
    pack: str = "FREE"
    start_date: Optional[UtcDatetime] = None
    end_date: Optional[UtcDatetime] = None
    auto_renew: bool = False
    history: List[SubscriptionHistoryEntry] = Field(default_factory=list)
    stripe_subscription_id: Optional[str] = None
    stripe_price_id: Optional[str] = None
    status: Optional[str] = None
    current_period_end: Optional[UtcDatetime] = None
    # created timestamp of the last gateway event applied to this subscription
    last_event_at: Optional[UtcDatetime] = None


class CpcAccount(BaseModel):
    balance: Decimal = Decimal("0")
    total_spent: Decimal = Decimal("0")
    cost_per_click: Decimal = Decimal("0.50")
    clicks_this_month: int = 0
    last_recharge_at: Optional[UtcDatetime] = None


class Agency(BaseModel):
    id: str
    company_name: str
    email: Optional[str] = None
    status: AgencyStatus = "pending"
    stripe_customer_id: Optional[str] = None
    subscription: Subscription = Field(default_factory=Subscription)
    cpc: CpcAccount = Field(default_factory=CpcAccount)
    created_at: UtcDatetime
    updated_at: Optional[UtcDatetime] = None
