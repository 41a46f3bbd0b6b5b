from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .common import UtcDatetime


class PaymentRefs(BaseModel):
    """External payment identifiers used as the idempotency key of a credit."""

    payment_intent_id: Optional[str] = None
    charge_id: Optional[str] = None
    checkout_session_id: Optional[str] = None

    def present(self) -> List[str]:
        return [v for v in (self.payment_intent_id, self.charge_id, self.checkout_session_id) if v]

    def overlaps(self, other: "PaymentRefs") -> bool:
        return any(
            mine is not None and mine == theirs
            for mine, theirs in (
                (self.payment_intent_id, other.payment_intent_id),
                (self.charge_id, other.charge_id),
                (self.checkout_session_id, other.checkout_session_id),
            )
        )


class CpcTransaction(BaseModel):
    """Immutable ledger entry. Created by the ledger only."""

    id: str
    agency_id: str
    type: Literal["credit", "debit"]
    amount: Decimal
    currency: str = "eur"
    credits_added: Optional[Decimal] = None
    description: str
    refs: PaymentRefs = Field(default_factory=PaymentRefs)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: UtcDatetime
