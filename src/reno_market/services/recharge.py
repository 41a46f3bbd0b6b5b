"""CPC recharge through a hosted checkout.

Starting a checkout never credits anything: the balance only moves when the
gateway confirms the payment through the webhook.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Optional, Protocol

import stripe

from reno_market.config import Settings
from reno_market.errors import NotFound, ValidationError
from reno_market.repositories.base import AgencyStore

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSession:
    id: str
    url: Optional[str]


class CheckoutGateway(Protocol):
    def create_session(
        self,
        line_items: List[Dict[str, Any]],
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession: ...


class StripeCheckoutGateway:
    def __init__(self, api_key: Optional[str]) -> None:
        self.api_key = api_key

    def create_session(
        self,
        line_items: List[Dict[str, Any]],
        metadata: Dict[str, str],
        success_url: str,
        cancel_url: str,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
    ) -> CheckoutSession:
        params: Dict[str, Any] = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": line_items,
            "metadata": metadata,
            # mirrored on the payment intent for the fallback credit path
            "payment_intent_data": {"metadata": metadata},
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email
        session = stripe.checkout.Session.create(api_key=self.api_key, **params)
        return CheckoutSession(id=session.id, url=session.url)


class RechargeService:
    def __init__(self, agencies: AgencyStore, gateway: CheckoutGateway, settings: Settings) -> None:
        self.agencies = agencies
        self.gateway = gateway
        self.settings = settings

    def start_checkout(
        self,
        agency_id: str,
        pack: Optional[str] = None,
        amount: Optional[Decimal] = None,
    ) -> Dict[str, Optional[str]]:
        """Open a checkout for a fixed recharge pack or a custom amount in EUR."""
        agency = self.agencies.get_agency(agency_id)
        if agency is None:
            raise NotFound(f"Agency {agency_id} not found")

        metadata = {"agencyId": agency_id, "type": "cpc"}
        if pack:
            price_id = self.settings.cpc_price_ids.get(pack)
            if price_id is None:
                raise ValidationError(f"Unknown recharge pack: {pack}")
            line_items: List[Dict[str, Any]] = [{"price": price_id, "quantity": 1}]
            metadata["pack"] = pack
        elif amount is not None:
            if amount < self.settings.min_recharge_amount:
                raise ValidationError(f"Minimum recharge is {self.settings.min_recharge_amount} EUR")
            line_items = [
                {
                    "price_data": {
                        "currency": "eur",
                        "unit_amount": int(Decimal(amount) * 100),
                        "product_data": {"name": "Recharge CPC"},
                    },
                    "quantity": 1,
                }
            ]
            metadata["pack"] = "custom"
        else:
            raise ValidationError("Either pack or amount is required")

        app_url = self.settings.app_url.rstrip("/")
        session = self.gateway.create_session(
            line_items=line_items,
            metadata=metadata,
            success_url=f"{app_url}/stripe/success?session_id={{CHECKOUT_SESSION_ID}}&type=cpc",
            cancel_url=f"{app_url}/stripe/cancel?type=cpc",
            customer_id=agency.stripe_customer_id,
            customer_email=agency.email,
        )
        logger.info("Checkout %s opened for agency %s (%s)", session.id, agency_id, metadata["pack"])
        return {"sessionId": session.id, "url": session.url}
