"""Stripe webhook ingestion.

Signature verification happens on the raw body before anything else. Once an
event is verified, every processing failure is logged and swallowed: the
sender gets a success response either way, so its retries never amplify an
internal error.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional

import stripe

from reno_market.errors import SignatureVerificationFailure
from reno_market.models import Agency, PaymentRefs
from reno_market.repositories.base import AgencyStore, SubscriptionChange

from .ledger import Ledger, utcnow
from .packs import Pack, parse_pack

logger = logging.getLogger(__name__)

SubscriptionFetcher = Callable[[str], Mapping[str, Any]]
PaymentIntentFetcher = Callable[[str], Mapping[str, Any]]


def stripe_subscription_fetcher(api_key: Optional[str]) -> SubscriptionFetcher:
    def fetch(subscription_id: str) -> Mapping[str, Any]:
        sub = stripe.Subscription.retrieve(subscription_id, api_key=api_key)
        return json.loads(str(sub))

    return fetch


def stripe_payment_intent_fetcher(api_key: Optional[str]) -> PaymentIntentFetcher:
    def fetch(payment_intent_id: str) -> Mapping[str, Any]:
        intent = stripe.PaymentIntent.retrieve(payment_intent_id, api_key=api_key)
        return json.loads(str(intent))

    return fetch


def _ts(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(subscription: Mapping[str, Any]) -> Mapping[str, Any]:
    items = ((subscription.get("items") or {}).get("data")) or []
    return items[0] if items else {}


def _period(subscription: Mapping[str, Any], key: str) -> Optional[datetime]:
    # newer API versions moved the billing period onto the subscription items
    value = subscription.get(key)
    if value is None:
        value = _first_item(subscription).get(key)
    return _ts(value)


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> Optional[str]:
    sub = invoice.get("subscription")
    if isinstance(sub, Mapping):
        sub = sub.get("id")
    if sub:
        return str(sub)
    details = ((invoice.get("parent") or {}).get("subscription_details")) or {}
    sub = details.get("subscription")
    return str(sub) if sub else None


def _cents(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    return Decimal(int(value)) / Decimal(100)


class WebhookProcessor:
    """Turns verified gateway events into ledger credits and subscription changes."""

    def __init__(
        self,
        ledger: Ledger,
        store: AgencyStore,
        fetch_subscription: SubscriptionFetcher,
        clock: Callable[[], datetime] = utcnow,
        fetch_payment_intent: Optional[PaymentIntentFetcher] = None,
    ) -> None:
        self.ledger = ledger
        self.store = store
        self.fetch_subscription = fetch_subscription
        self.clock = clock
        self.fetch_payment_intent = fetch_payment_intent
        self._handlers: Dict[str, Callable[[Mapping[str, Any], Optional[datetime]], None]] = {
            "checkout.session.completed": self._checkout_completed,
            "customer.subscription.created": self._subscription_changed,
            "customer.subscription.updated": self._subscription_changed,
            "customer.subscription.deleted": self._subscription_deleted,
            "invoice.paid": self._invoice_paid,
            "invoice.payment_succeeded": self._invoice_paid,
            "invoice.payment_failed": self._invoice_failed,
            "payment_intent.succeeded": self._payment_intent_succeeded,
        }

    def handle(self, event: Mapping[str, Any]) -> None:
        event_type = event.get("type", "")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug("Unhandled event type %s", event_type)
            return
        obj = ((event.get("data") or {}).get("object")) or {}
        logger.info("Processing %s (%s)", event_type, event.get("id"))
        handler(obj, _ts(event.get("created")))

    # Checkout
    def _checkout_completed(self, session: Mapping[str, Any], event_at: Optional[datetime]) -> None:
        metadata = session.get("metadata") or {}
        agency_id = metadata.get("agencyId")
        if not agency_id:
            logger.warning("Checkout session %s has no agencyId", session.get("id"))
            return

        if session.get("mode") == "payment":
            amount = _cents(session.get("amount_total"))
            if amount is None:
                logger.warning("Checkout session %s has no amount", session.get("id"))
                return
            self.ledger.credit(
                agency_id,
                amount,
                self._checkout_refs(session),
                metadata={"pack": metadata.get("pack"), "source": "checkout.session.completed"},
            )
        elif session.get("mode") == "subscription" and session.get("subscription"):
            subscription = self.fetch_subscription(str(session["subscription"]))
            pack_hint = metadata.get("pack") or metadata.get("plan")
            self._apply_subscription(agency_id, subscription, pack_hint, event_at, "Upgrade via Stripe")

    def _checkout_refs(self, session: Mapping[str, Any]) -> PaymentRefs:
        intent = session.get("payment_intent")
        if isinstance(intent, str) and self.fetch_payment_intent is not None:
            try:
                intent = self.fetch_payment_intent(intent) or intent
            except stripe.StripeError as e:
                logger.warning("Could not expand payment intent %s: %s", intent, e)
        if isinstance(intent, Mapping):
            charge = intent.get("latest_charge")
            if isinstance(charge, Mapping):
                charge = charge.get("id")
            return PaymentRefs(
                payment_intent_id=intent.get("id"),
                charge_id=charge or None,
                checkout_session_id=session.get("id"),
            )
        return PaymentRefs(payment_intent_id=intent or None, checkout_session_id=session.get("id"))

    # Subscriptions
    def _subscription_changed(self, subscription: Mapping[str, Any], event_at: Optional[datetime]) -> None:
        metadata = subscription.get("metadata") or {}
        agency_id = metadata.get("agencyId")
        if not agency_id:
            agency = self.store.find_agency_by_subscription(str(subscription.get("id")))
            if agency is None:
                logger.warning("No agency for subscription %s", subscription.get("id"))
                return
            agency_id = agency.id
        self._apply_subscription(
            agency_id,
            subscription,
            metadata.get("pack") or metadata.get("plan"),
            event_at,
            "Subscription updated via Stripe",
        )

    def _subscription_deleted(self, subscription: Mapping[str, Any], event_at: Optional[datetime]) -> None:
        agency = self.store.find_agency_by_subscription(str(subscription.get("id")))
        if agency is None:
            logger.warning("No agency for deleted subscription %s", subscription.get("id"))
            return
        if not self.store.cancel_subscription(agency.id, event_at, self.clock()):
            logger.info("Ignored stale deletion of subscription %s", subscription.get("id"))
            return
        logger.info("Agency %s demoted to FREE", agency.id)

    def _apply_subscription(
        self,
        agency_id: str,
        subscription: Mapping[str, Any],
        pack_hint: Optional[str],
        event_at: Optional[datetime],
        reason: str,
    ) -> None:
        if pack_hint:
            pack = parse_pack(pack_hint)
        else:
            agency = self.store.get_agency(agency_id)
            pack = parse_pack(agency.subscription.pack) if agency else Pack.FREE
        change = SubscriptionChange(
            pack=pack.value,
            period_start=_period(subscription, "current_period_start") or self.clock(),
            subscription_id=subscription.get("id"),
            price_id=(_first_item(subscription).get("price") or {}).get("id"),
            status=subscription.get("status"),
            period_end=_period(subscription, "current_period_end"),
            event_at=event_at,
            reason=reason,
        )
        if self.store.apply_subscription(agency_id, change, self.clock()):
            logger.info("Agency %s now on pack %s", agency_id, pack.value)
        else:
            logger.info("Ignored stale subscription event for agency %s", agency_id)

    # Invoices
    def _agency_for_invoice(self, invoice: Mapping[str, Any]) -> tuple[Optional[Agency], Optional[str]]:
        sub_id = _invoice_subscription_id(invoice)
        if not sub_id:
            return None, None
        agency = self.store.find_agency_by_subscription(sub_id)
        if agency is None:
            logger.warning("No agency for invoice %s (subscription %s)", invoice.get("id"), sub_id)
        return agency, sub_id

    def _invoice_paid(self, invoice: Mapping[str, Any], event_at: Optional[datetime]) -> None:
        agency, sub_id = self._agency_for_invoice(invoice)
        if agency is None or sub_id is None:
            return
        subscription = self.fetch_subscription(sub_id)
        self.store.set_subscription_status(
            agency.id,
            subscription.get("status") or "active",
            period_end=_period(subscription, "current_period_end"),
            auto_renew=True,
        )

    def _invoice_failed(self, invoice: Mapping[str, Any], event_at: Optional[datetime]) -> None:
        agency, _ = self._agency_for_invoice(invoice)
        if agency is None:
            return
        self.store.set_subscription_status(agency.id, "past_due")
        logger.warning("Payment failed for agency %s", agency.id)

    # Fallback credit path
    def _payment_intent_succeeded(self, intent: Mapping[str, Any], event_at: Optional[datetime]) -> None:
        metadata = intent.get("metadata") or {}
        if metadata.get("type") != "cpc" or not metadata.get("agencyId"):
            return
        amount = _cents(intent.get("amount_received") or intent.get("amount"))
        if amount is None:
            return
        charge = intent.get("latest_charge")
        self.ledger.credit(
            metadata["agencyId"],
            amount,
            PaymentRefs(payment_intent_id=intent.get("id"), charge_id=charge if isinstance(charge, str) else None),
            metadata={"pack": metadata.get("pack"), "source": "payment_intent.succeeded"},
        )


class WebhookIngestion:
    def __init__(self, secret: Optional[str], processor: WebhookProcessor) -> None:
        self.secret = secret
        self.processor = processor

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        if not self.secret:
            raise SignatureVerificationFailure("Webhook secret is not configured")
        if not signature:
            raise SignatureVerificationFailure("Missing Stripe-Signature header")
        try:
            stripe.Webhook.construct_event(payload, signature, self.secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise SignatureVerificationFailure(str(e)) from e
        return json.loads(payload)

    def receive(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        event = self.verify(payload, signature)
        try:
            self.processor.handle(event)
        except Exception:
            logger.exception("Webhook %s (%s) failed; acknowledged anyway", event.get("type"), event.get("id"))
        return {"received": True}
