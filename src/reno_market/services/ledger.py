"""CPC ledger: the only writer of agency balances and CPC transactions."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Union

from reno_market.errors import ValidationError
from reno_market.models import CpcTransaction, PaymentRefs
from reno_market.repositories.base import AgencyStore

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

Amount = Union[Decimal, int, float, str]


@dataclass
class TransactionResult:
    applied: bool
    reason: Optional[str] = None
    transaction: Optional[CpcTransaction] = None
    new_balance: Optional[Decimal] = None


@dataclass
class DebitResult:
    applied: bool
    new_balance: Optional[Decimal] = None
    reason: Optional[str] = None


def to_money(value: Amount) -> Decimal:
    try:
        amount = Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}") from None
    if amount <= 0:
        raise ValidationError("Amount must be positive")
    return amount


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Ledger:
    def __init__(self, store: AgencyStore, clock: Callable[[], datetime] = utcnow) -> None:
        self.store = store
        self.clock = clock

    def credit(
        self,
        agency_id: str,
        amount: Amount,
        refs: PaymentRefs,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> TransactionResult:
        """Add ``amount`` to the agency balance once per external payment.

        A credit whose refs are already recorded is a no-op that reports
        ``reason="duplicate"``. The store's unique constraints catch the race
        where two deliveries pass the lookup at the same time.
        """
        if not refs.present():
            raise ValidationError("A credit needs at least one external payment reference")
        money = to_money(amount)

        existing = self.store.find_transaction(refs)
        if existing is not None:
            logger.info("Duplicate credit for agency %s ignored (refs %s)", agency_id, refs.present())
            return TransactionResult(applied=False, reason="duplicate", transaction=existing)

        now = self.clock()
        tx = CpcTransaction(
            id=uuid.uuid4().hex,
            agency_id=agency_id,
            type="credit",
            amount=money,
            credits_added=money,
            description=description or f"Recharge CPC de {money}€",
            refs=refs,
            metadata=dict(metadata or {}),
            created_at=now,
        )
        balance = self.store.apply_credit(tx, now)
        if balance is None:
            logger.info("Concurrent duplicate credit for agency %s ignored", agency_id)
            return TransactionResult(applied=False, reason="duplicate", transaction=self.store.find_transaction(refs))
        logger.info("Credited %s EUR to agency %s, balance %s", money, agency_id, balance)
        return TransactionResult(applied=True, transaction=tx, new_balance=balance)

    def debit(
        self,
        agency_id: str,
        amount: Amount,
        description: str = "Clic sponsorisé",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> DebitResult:
        money = to_money(amount)
        now = self.clock()
        tx = CpcTransaction(
            id=uuid.uuid4().hex,
            agency_id=agency_id,
            type="debit",
            amount=money,
            description=description,
            metadata=dict(metadata or {}),
            created_at=now,
        )
        balance = self.store.apply_debit(tx, now)
        if balance is None:
            logger.info("Debit of %s EUR declined for agency %s: insufficient funds", money, agency_id)
            agency = self.store.get_agency(agency_id)
            current = agency.cpc.balance if agency is not None else None
            return DebitResult(applied=False, new_balance=current, reason="insufficient_funds")
        logger.debug("Debited %s EUR from agency %s, balance %s", money, agency_id, balance)
        return DebitResult(applied=True, new_balance=balance)

    def monthly_click_counter(self, agency_id: str) -> int:
        # advisory only; the reset keys off the agency's last update, not a click timestamp
        return self.store.bump_click_counter(agency_id, self.clock())

    def history(self, agency_id: str, limit: int = 50) -> List[CpcTransaction]:
        return self.store.list_transactions(agency_id, limit=max(1, min(limit, 500)))
