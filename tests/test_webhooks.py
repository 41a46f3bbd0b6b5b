from __future__ import annotations

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from decimal import Decimal

import pytest
import stripe

from conftest import clock, make_agency
from reno_market.errors import SignatureVerificationFailure
from reno_market.models import PaymentRefs
from reno_market.repositories.base import is_stale
from reno_market.services.ledger import Ledger
from reno_market.services.webhooks import WebhookIngestion, WebhookProcessor

SECRET = "whsec_test"
PERIOD_START = 1_770_000_000
PERIOD_END = 1_772_600_000


class FakeSubscriptions:
    def __init__(self):
        self.subs = {}
        self.calls = []

    def add(self, sub_id, status="active", nested_period=False, price="price_pro"):
        sub = {"id": sub_id, "status": status, "metadata": {}, "items": {"data": [{"price": {"id": price}}]}}
        periods = {"current_period_start": PERIOD_START, "current_period_end": PERIOD_END}
        if nested_period:
            sub["items"]["data"][0].update(periods)
        else:
            sub.update(periods)
        self.subs[sub_id] = sub
        return sub

    def __call__(self, sub_id):
        self.calls.append(sub_id)
        return self.subs[sub_id]


def sign(payload: bytes, secret: str = SECRET) -> str:
    ts = int(time.time())
    mac = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def event(event_type, obj, created=1_770_000_100, event_id="evt_1"):
    return {"id": event_id, "object": "event", "type": event_type, "created": created, "data": {"object": obj}}


def checkout_payment(session_id="cs_1", intent="pi_1", amount=5000, agency="a1"):
    return event(
        "checkout.session.completed",
        {
            "id": session_id,
            "object": "checkout.session",
            "mode": "payment",
            "payment_intent": intent,
            "amount_total": amount,
            "metadata": {"agencyId": agency, "type": "cpc", "pack": "pack50"},
        },
    )


@pytest.fixture
def subs():
    return FakeSubscriptions()


@pytest.fixture
def processor(store, subs):
    store.save_agency(make_agency("a1", pack="FREE", subscription={"start_date": datetime(2025, 1, 1, tzinfo=timezone.utc)}))
    return WebhookProcessor(Ledger(store, clock=clock), store, subs, clock=clock)


def test_bad_signature_is_rejected_before_processing(store, processor):
    ingestion = WebhookIngestion(SECRET, processor)
    payload = json.dumps(checkout_payment()).encode()

    with pytest.raises(SignatureVerificationFailure):
        ingestion.receive(payload, sign(payload, "whsec_other"))
    with pytest.raises(SignatureVerificationFailure):
        ingestion.receive(payload, None)
    assert store.get_agency("a1").cpc.balance == Decimal("0")


def test_signed_checkout_credits_once_across_redeliveries(store, processor):
    ingestion = WebhookIngestion(SECRET, processor)
    payload = json.dumps(checkout_payment()).encode()

    assert ingestion.receive(payload, sign(payload)) == {"received": True}
    assert ingestion.receive(payload, sign(payload)) == {"received": True}

    assert store.get_agency("a1").cpc.balance == Decimal("50")
    assert len(store.list_transactions("a1")) == 1


def test_payment_intent_fallback_does_not_double_credit(store, processor):
    processor.handle(checkout_payment())
    processor.handle(
        event(
            "payment_intent.succeeded",
            {"id": "pi_1", "amount_received": 5000, "latest_charge": "ch_1", "metadata": {"agencyId": "a1", "type": "cpc"}},
        )
    )
    assert store.get_agency("a1").cpc.balance == Decimal("50")


def test_payment_intent_fallback_credits_when_checkout_was_missed(store, processor):
    processor.handle(
        event(
            "payment_intent.succeeded",
            {"id": "pi_9", "amount_received": 2000, "metadata": {"agencyId": "a1", "type": "cpc"}},
        )
    )
    processor.handle(checkout_payment(session_id="cs_9", intent="pi_9", amount=2000))

    assert store.get_agency("a1").cpc.balance == Decimal("20")
    [tx] = store.list_transactions("a1")
    assert tx.refs.payment_intent_id == "pi_9"


def test_non_cpc_payment_intent_is_ignored(store, processor):
    processor.handle(event("payment_intent.succeeded", {"id": "pi_2", "amount_received": 9900, "metadata": {}}))
    assert store.get_agency("a1").cpc.balance == Decimal("0")


def test_subscription_checkout_sets_pack_and_history(store, processor, subs):
    subs.add("sub_1", nested_period=True)
    processor.handle(
        event(
            "checkout.session.completed",
            {"id": "cs_2", "mode": "subscription", "subscription": "sub_1", "metadata": {"agencyId": "a1", "pack": "pro"}},
        )
    )

    sub = store.get_agency("a1").subscription
    assert sub.pack == "PRO"
    assert sub.start_date == datetime.fromtimestamp(PERIOD_START, tz=timezone.utc)
    assert sub.current_period_end == datetime.fromtimestamp(PERIOD_END, tz=timezone.utc)
    assert sub.stripe_subscription_id == "sub_1"
    assert sub.stripe_price_id == "price_pro"
    [entry] = sub.history
    assert entry.pack == "FREE"


def test_subscription_update_resolves_agency_by_reference(store, processor, subs):
    subs.add("sub_1")
    processor.handle(
        event(
            "checkout.session.completed",
            {"mode": "subscription", "subscription": "sub_1", "metadata": {"agencyId": "a1", "pack": "STARTER"}},
        )
    )
    updated = dict(subs.subs["sub_1"], metadata={"pack": "PREMIUM"})

    processor.handle(event("customer.subscription.updated", updated, created=1_770_000_200))
    processor.handle(event("customer.subscription.updated", updated, created=1_770_000_200))

    sub = store.get_agency("a1").subscription
    assert sub.pack == "PREMIUM"
    assert [h.pack for h in sub.history] == ["FREE", "STARTER"]


def test_out_of_order_subscription_event_is_ignored(store, processor, subs):
    sub = subs.add("sub_1")
    newer = dict(sub, metadata={"agencyId": "a1", "pack": "PREMIUM"})
    older = dict(sub, metadata={"agencyId": "a1", "pack": "STARTER"})

    processor.handle(event("customer.subscription.updated", newer, created=1_770_000_500))
    processor.handle(event("customer.subscription.created", older, created=1_770_000_100))

    assert store.get_agency("a1").subscription.pack == "PREMIUM"


def test_subscription_deleted_demotes_to_free(store, processor, subs):
    sub = subs.add("sub_1")
    processor.handle(event("customer.subscription.created", dict(sub, metadata={"agencyId": "a1", "pack": "PRO"})))

    processor.handle(event("customer.subscription.deleted", sub, created=1_770_000_900))
    processor.handle(event("customer.subscription.deleted", sub, created=1_770_000_900))

    agency = store.get_agency("a1")
    assert agency.subscription.pack == "FREE"
    assert agency.subscription.stripe_subscription_id is None
    assert agency.subscription.status == "canceled"
    assert [h.pack for h in agency.subscription.history] == ["FREE", "PRO"]
    assert agency.subscription.history[-1].reason == "Subscription cancelled"


def test_invoice_events_only_touch_status(store, processor, subs):
    sub = subs.add("sub_1")
    processor.handle(event("customer.subscription.created", dict(sub, metadata={"agencyId": "a1", "pack": "PRO"})))

    processor.handle(event("invoice.payment_failed", {"id": "in_1", "subscription": "sub_1"}))
    assert store.get_agency("a1").subscription.status == "past_due"

    processor.handle(
        event(
            "invoice.paid",
            {"id": "in_2", "parent": {"subscription_details": {"subscription": "sub_1"}}},
        )
    )
    agency = store.get_agency("a1")
    assert agency.subscription.status == "active"
    assert agency.subscription.auto_renew
    assert agency.subscription.pack == "PRO"
    assert agency.cpc.balance == Decimal("0")


def test_processing_errors_are_acknowledged_and_logged(store, processor, caplog):
    def broken(_):
        raise RuntimeError("stripe down")

    processor.fetch_subscription = broken
    ingestion = WebhookIngestion(SECRET, processor)
    payload = json.dumps(
        event("checkout.session.completed", {"mode": "subscription", "subscription": "sub_x", "metadata": {"agencyId": "a1"}})
    ).encode()

    with caplog.at_level(logging.ERROR, logger="reno_market.services.webhooks"):
        assert ingestion.receive(payload, sign(payload)) == {"received": True}

    assert "acknowledged anyway" in caplog.text
    assert store.get_agency("a1").subscription.pack == "FREE"


def test_unknown_events_are_ignored(store, processor):
    processor.handle(event("customer.created", {"id": "cus_1"}))
    assert store.get_agency("a1").cpc.balance == Decimal("0")


def test_checkout_records_charge_of_expanded_intent(store, subs):
    store.save_agency(make_agency("a1"))
    intents = {"pi_1": {"id": "pi_1", "latest_charge": "ch_1"}}
    processor = WebhookProcessor(Ledger(store, clock=clock), store, subs, clock=clock, fetch_payment_intent=intents.get)

    processor.handle(checkout_payment())

    [tx] = store.list_transactions("a1")
    assert tx.refs.payment_intent_id == "pi_1"
    assert tx.refs.charge_id == "ch_1"
    assert tx.refs.checkout_session_id == "cs_1"
    result = Ledger(store, clock=clock).credit("a1", 50, PaymentRefs(charge_id="ch_1"))
    assert not result.applied and result.reason == "duplicate"


def test_checkout_credits_without_charge_when_intent_lookup_fails(store, subs):
    def unreachable(_):
        raise stripe.APIConnectionError("network down")

    store.save_agency(make_agency("a1"))
    processor = WebhookProcessor(Ledger(store, clock=clock), store, subs, clock=clock, fetch_payment_intent=unreachable)

    processor.handle(checkout_payment())

    [tx] = store.list_transactions("a1")
    assert tx.refs.payment_intent_id == "pi_1"
    assert tx.refs.charge_id is None
    assert store.get_agency("a1").cpc.balance == Decimal("50")


def test_naive_last_event_time_still_orders_events(store, processor, subs):
    store.save_agency(make_agency("a1", subscription={"last_event_at": datetime(2026, 2, 10)}))
    sub = subs.add("sub_1")

    processor.handle(
        event("customer.subscription.updated", dict(sub, metadata={"agencyId": "a1", "pack": "PRO"}), created=1_770_000_100)
    )

    agency = store.get_agency("a1")
    assert agency.subscription.last_event_at == datetime(2026, 2, 10, tzinfo=timezone.utc)
    assert agency.subscription.pack == "FREE"


def test_staleness_compares_naive_and_aware_times():
    aware = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert is_stale(datetime(2026, 3, 2), aware) is True
    assert is_stale(aware, datetime(2026, 3, 2)) is False
    assert is_stale(None, datetime(2026, 3, 2)) is False
