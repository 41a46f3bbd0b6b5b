from __future__ import annotations

import threading
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import NOW, clock, make_agency
from reno_market.errors import NotFound, ValidationError
from reno_market.models import PaymentRefs
from reno_market.services.ledger import Ledger


def test_credit_applies_once_per_payment(store):
    store.save_agency(make_agency("a1"))
    ledger = Ledger(store, clock=clock)
    refs = PaymentRefs(payment_intent_id="pi_1", checkout_session_id="cs_1")

    first = ledger.credit("a1", Decimal("50"), refs, {"pack": "pack50"})
    second = ledger.credit("a1", Decimal("50"), refs, {"pack": "pack50"})

    assert first.applied and first.new_balance == Decimal("50.00")
    assert not second.applied and second.reason == "duplicate"
    assert len(store.list_transactions("a1")) == 1
    agency = store.get_agency("a1")
    assert agency.cpc.balance == Decimal("50")
    assert agency.cpc.last_recharge_at == NOW


def test_credit_is_duplicate_when_any_ref_matches(store):
    store.save_agency(make_agency("a1"))
    ledger = Ledger(store, clock=clock)
    ledger.credit("a1", 20, PaymentRefs(payment_intent_id="pi_1", checkout_session_id="cs_1"))

    again = ledger.credit("a1", 20, PaymentRefs(payment_intent_id="pi_1", charge_id="ch_1"))

    assert not again.applied
    assert store.get_agency("a1").cpc.balance == Decimal("20")


def test_credit_requires_a_payment_reference(store):
    store.save_agency(make_agency("a1"))
    with pytest.raises(ValidationError):
        Ledger(store).credit("a1", 10, PaymentRefs())


def test_credit_rejects_non_positive_amount(store):
    store.save_agency(make_agency("a1"))
    with pytest.raises(ValidationError):
        Ledger(store).credit("a1", 0, PaymentRefs(payment_intent_id="pi_1"))


def test_credit_for_unknown_agency(store):
    with pytest.raises(NotFound):
        Ledger(store).credit("missing", 10, PaymentRefs(payment_intent_id="pi_1"))


def test_debit_declines_without_funds(store):
    store.save_agency(make_agency("a1", balance="0.30"))
    ledger = Ledger(store, clock=clock)

    result = ledger.debit("a1", Decimal("0.50"))

    assert not result.applied
    assert result.reason == "insufficient_funds"
    assert result.new_balance == Decimal("0.30")
    agency = store.get_agency("a1")
    assert agency.cpc.balance == Decimal("0.30")
    assert agency.cpc.total_spent == Decimal("0")


def test_debit_records_transaction_and_spend(store):
    store.save_agency(make_agency("a1", balance="1.00"))
    ledger = Ledger(store, clock=clock)

    result = ledger.debit("a1", Decimal("0.35"), metadata={"listingId": "l1"})

    assert result.applied and result.new_balance == Decimal("0.65")
    agency = store.get_agency("a1")
    assert agency.cpc.total_spent == Decimal("0.35")
    [tx] = ledger.history("a1")
    assert tx.type == "debit" and tx.amount == Decimal("0.35")
    assert tx.metadata == {"listingId": "l1"}


def test_concurrent_debits_never_overdraw(store):
    n = 20
    amount = Decimal("0.50")
    store.save_agency(make_agency("a1", balance=str(amount * (n - 1))))
    ledger = Ledger(store)
    barrier = threading.Barrier(n)
    results = []
    lock = threading.Lock()

    def click():
        barrier.wait()
        r = ledger.debit("a1", amount)
        with lock:
            results.append(r.applied)

    threads = [threading.Thread(target=click) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == n - 1
    assert results.count(False) == 1
    assert store.get_agency("a1").cpc.balance == Decimal("0")


def test_monthly_click_counter_resets_on_new_month(store):
    store.save_agency(make_agency("a1", updated_at=datetime(2026, 2, 27, tzinfo=timezone.utc), cpc={"clicks_this_month": 41}))
    ledger = Ledger(store, clock=clock)

    assert ledger.monthly_click_counter("a1") == 1
    assert ledger.monthly_click_counter("a1") == 2


def test_history_is_newest_first(store):
    store.save_agency(make_agency("a1"))
    times = iter([datetime(2026, 1, 1, tzinfo=timezone.utc), datetime(2026, 2, 1, tzinfo=timezone.utc)])
    ledger = Ledger(store, clock=lambda: next(times))
    ledger.credit("a1", 10, PaymentRefs(payment_intent_id="pi_1"))
    ledger.credit("a1", 20, PaymentRefs(payment_intent_id="pi_2"))

    assert [t.refs.payment_intent_id for t in ledger.history("a1")] == ["pi_2", "pi_1"]
