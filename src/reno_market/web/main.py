from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Union

from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.concurrency import run_in_threadpool

from reno_market.config import Settings
from reno_market.errors import (
    AuthorizationError,
    MarketError,
    NotFound,
    QuotaExceeded,
    SignatureVerificationFailure,
    StoreUnavailable,
    ValidationError,
)
from reno_market.filters import FilterConfig
from reno_market.models import GeoPoint
from reno_market.repositories import MemoryStore, PostgresStore, build_store
from reno_market.services.clicks import ClickService
from reno_market.services.clustering import MapService
from reno_market.services.geo import BoundingBox, masked
from reno_market.services.ledger import Ledger
from reno_market.services.ranking import RadiusQuery, SearchService, SortSpec
from reno_market.services.recharge import CheckoutGateway, RechargeService, StripeCheckoutGateway
from reno_market.services.sponsorship import SponsorshipService
from reno_market.services.submission import ListingDraft, SubmissionService
from reno_market.services.webhooks import (
    PaymentIntentFetcher,
    SubscriptionFetcher,
    WebhookIngestion,
    WebhookProcessor,
    stripe_payment_intent_fetcher,
    stripe_subscription_fetcher,
)
from reno_market.utils.log import configure_logging

logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: Union[MemoryStore, PostgresStore]
    ledger: Ledger
    search: SearchService
    map: MapService
    submission: SubmissionService
    clicks: ClickService
    sponsorship: SponsorshipService
    recharge: RechargeService
    webhooks: WebhookIngestion


def build_services(
    settings: Settings,
    store=None,
    fetch_subscription: Optional[SubscriptionFetcher] = None,
    checkout_gateway: Optional[CheckoutGateway] = None,
    fetch_payment_intent: Optional[PaymentIntentFetcher] = None,
) -> Services:
    store = store if store is not None else build_store(settings)
    ledger = Ledger(store)
    secret = settings.obfuscation_secret
    if fetch_payment_intent is None and settings.stripe_secret_key:
        fetch_payment_intent = stripe_payment_intent_fetcher(settings.stripe_secret_key)
    processor = WebhookProcessor(
        ledger,
        store,
        fetch_subscription or stripe_subscription_fetcher(settings.stripe_secret_key),
        fetch_payment_intent=fetch_payment_intent,
    )
    return Services(
        store=store,
        ledger=ledger,
        search=SearchService(store, store, secret),
        map=MapService(store, store, secret),
        submission=SubmissionService(store, store),
        clicks=ClickService(store, store, ledger),
        sponsorship=SponsorshipService(store, store),
        recharge=RechargeService(store, checkout_gateway or StripeCheckoutGateway(settings.stripe_secret_key), settings),
        webhooks=WebhookIngestion(settings.stripe_webhook_secret, processor),
    )


class SponsorRequest(BaseModel):
    enabled: bool = True
    duration_days: Optional[int] = None


class RechargeRequest(BaseModel):
    pack: Optional[str] = None
    amount: Optional[Decimal] = None


def _split(values: List[str]) -> List[str]:
    out: List[str] = []
    for v in values:
        out.extend(p.strip() for p in v.split(",") if p.strip())
    return out


def filter_params(
    q: Optional[str] = Query(None, description="Free text matched against title and description"),
    city: Optional[str] = Query(None),
    postal_code: Optional[str] = Query(None),
    property_type: List[str] = Query(default=[]),
    min_price: Optional[float] = Query(None),
    max_price: Optional[float] = Query(None),
    min_surface: Optional[float] = Query(None),
    max_surface: Optional[float] = Query(None),
    min_rooms: Optional[int] = Query(None),
    min_renovation: Optional[int] = Query(None),
    max_renovation: Optional[int] = Query(None),
    works: List[str] = Query(default=[]),
    dpe: List[str] = Query(default=[]),
    ges: List[str] = Query(default=[]),
    min_energy_cost: Optional[int] = Query(None),
    max_energy_cost: Optional[int] = Query(None),
    copro: Optional[bool] = Query(None),
    max_copro_charges: Optional[int] = Query(None),
    copro_procedure: Optional[bool] = Query(None),
) -> FilterConfig:
    """Filter query parameters shared by the list and map searches."""
    return FilterConfig(
        query=q or None,
        city=city or None,
        postal_code=postal_code or None,
        property_types=_split(property_type),
        min_price=min_price,
        max_price=max_price,
        min_surface=min_surface,
        max_surface=max_surface,
        min_rooms=min_rooms,
        min_renovation_level=min_renovation,
        max_renovation_level=max_renovation,
        required_works=_split(works),
        dpe_classes=_split(dpe),
        ges_classes=_split(ges),
        min_energy_cost=min_energy_cost,
        max_energy_cost=max_energy_cost,
        copropriety_subject=copro,
        max_copropriety_charges=max_copro_charges,
        copropriety_procedure=copro_procedure,
    )


def create_app(
    settings: Optional[Settings] = None,
    store=None,
    fetch_subscription: Optional[SubscriptionFetcher] = None,
    checkout_gateway: Optional[CheckoutGateway] = None,
    fetch_payment_intent: Optional[PaymentIntentFetcher] = None,
) -> FastAPI:
    settings = settings or Settings()
    services = build_services(settings, store, fetch_subscription, checkout_gateway, fetch_payment_intent)
    app = FastAPI(title="Reno Market")
    app.state.settings = settings
    app.state.services = services

    @app.on_event("startup")
    def on_startup() -> None:
        configure_logging(settings.log_level)
        services.store.init_schema()

    @app.exception_handler(MarketError)
    async def market_error(request: Request, exc: MarketError) -> JSONResponse:
        if isinstance(exc, QuotaExceeded):
            return JSONResponse(exc.to_dict(), status_code=403)
        if isinstance(exc, AuthorizationError):
            return JSONResponse({"error": "forbidden", "reason": exc.reason}, status_code=403)
        if isinstance(exc, NotFound):
            return JSONResponse({"error": "not_found", "message": str(exc)}, status_code=404)
        if isinstance(exc, (ValidationError, SignatureVerificationFailure)):
            return JSONResponse({"error": "bad_request", "message": str(exc)}, status_code=400)
        if isinstance(exc, StoreUnavailable):
            logger.error("Store unavailable: %s", exc)
            return JSONResponse({"error": "store_unavailable"}, status_code=503)
        logger.exception("Unhandled market error")
        return JSONResponse({"error": "internal_error"}, status_code=500)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            {"error": "bad_request", "detail": jsonable_encoder(exc.errors())}, status_code=400
        )

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    @app.get("/search")
    def search(
        cfg: FilterConfig = Depends(filter_params),
        sort: Optional[str] = Query("date", description="date, price, surface or renovation"),
        order: Optional[str] = Query(None, description="asc or desc"),
        lat: Optional[float] = Query(None, ge=-90, le=90),
        lng: Optional[float] = Query(None, ge=-180, le=180),
        radius: Optional[float] = Query(None, description="Radius in km around lat/lng"),
        page: int = Query(1),
        limit: int = Query(20),
    ) -> dict:
        radius_query = None
        geo = (lat, lng, radius)
        if any(v is not None for v in geo):
            if any(v is None for v in geo):
                raise ValidationError("Radius search needs lat, lng and radius")
            radius_query = RadiusQuery(GeoPoint(lat=lat, lng=lng), radius)
        result = services.search.search(cfg, SortSpec.parse(sort, order), radius_query, page=page, limit=limit)
        return {
            "listings": [r.to_public() for r in result.items],
            "pagination": result.pagination(),
        }

    @app.get("/search/map")
    def search_map(
        bbox: Optional[str] = Query(None, description="west,south,east,north"),
        zoom: int = Query(10),
        cfg: FilterConfig = Depends(filter_params),
    ) -> dict:
        box = BoundingBox.parse(bbox)
        return services.map.query(cfg, box, zoom)

    @app.post("/agencies/{agency_id}/listings", status_code=201)
    def submit_listing(agency_id: str, draft: ListingDraft) -> dict:
        listing = services.submission.submit(agency_id, draft)
        return masked(listing, settings.obfuscation_secret).model_dump(mode="json")

    @app.post("/agencies/{agency_id}/listings/{listing_id}/sponsor")
    def sponsor_listing(agency_id: str, listing_id: str, body: SponsorRequest) -> dict:
        listing = services.sponsorship.sponsor(
            agency_id, listing_id, enabled=body.enabled, duration_days=body.duration_days
        )
        return masked(listing, settings.obfuscation_secret).model_dump(mode="json")

    @app.get("/agencies/{agency_id}/listings/{listing_id}/sponsor/check")
    def sponsor_check(agency_id: str, listing_id: str) -> dict:
        return services.sponsorship.check(agency_id, listing_id)

    @app.post("/listings/{listing_id}/click")
    def click(listing_id: str) -> dict:
        return services.clicks.record_click(listing_id).to_dict()

    @app.post("/agencies/{agency_id}/recharge")
    def recharge(agency_id: str, body: RechargeRequest) -> dict:
        return services.recharge.start_checkout(agency_id, pack=body.pack, amount=body.amount)

    @app.get("/agencies/{agency_id}/transactions")
    def transactions(agency_id: str, limit: int = Query(50)) -> dict:
        if services.store.get_agency(agency_id) is None:
            raise NotFound(f"Agency {agency_id} not found")
        txs = services.ledger.history(agency_id, limit=limit)
        return {"transactions": [t.model_dump(mode="json") for t in txs]}

    @app.post("/stripe/webhook")
    async def stripe_webhook(request: Request) -> dict:
        payload = await request.body()
        signature = request.headers.get("stripe-signature")
        return await run_in_threadpool(services.webhooks.receive, payload, signature)

    return app


app = create_app()
