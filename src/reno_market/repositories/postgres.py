from __future__ import annotations

import os
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, Iterator, List, Optional

import psycopg2
import psycopg2.errors
import psycopg2.extras

from reno_market.errors import NotFound, StoreUnavailable, ValidationError
from reno_market.filters import FilterConfig
from reno_market.models import Agency, CpcTransaction, Listing, PaymentRefs
from reno_market.services.geo import BoundingBox

from .base import SubscriptionChange, is_stale


def db_url() -> str:
    return os.environ.get("DB_URL", "postgresql://reno:reno@db:5432/reno")


@contextmanager
def connect(url: Optional[str] = None) -> Iterator[Any]:
    try:
        conn = psycopg2.connect(url or db_url())
    except psycopg2.OperationalError as e:
        raise StoreUnavailable(str(e)) from e
    try:
        yield conn
    except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
        raise StoreUnavailable(str(e)) from e
    finally:
        conn.close()


SCHEMA = """
CREATE TABLE IF NOT EXISTS agencies (
  id TEXT PRIMARY KEY,
  company_name TEXT NOT NULL,
  email TEXT,
  status TEXT NOT NULL DEFAULT 'pending',
  stripe_customer_id TEXT,
  pack TEXT NOT NULL DEFAULT 'FREE',
  subscription_start TIMESTAMPTZ,
  subscription_end TIMESTAMPTZ,
  auto_renew BOOLEAN NOT NULL DEFAULT FALSE,
  subscription_history JSONB NOT NULL DEFAULT '[]'::jsonb,
  stripe_subscription_id TEXT,
  stripe_price_id TEXT,
  subscription_status TEXT,
  current_period_end TIMESTAMPTZ,
  subscription_event_at TIMESTAMPTZ,
  cpc_balance NUMERIC(12,2) NOT NULL DEFAULT 0 CHECK (cpc_balance >= 0),
  cpc_total_spent NUMERIC(12,2) NOT NULL DEFAULT 0,
  cpc_cost_per_click NUMERIC(8,2) NOT NULL DEFAULT 0.50,
  cpc_clicks_this_month INTEGER NOT NULL DEFAULT 0,
  cpc_last_recharge_at TIMESTAMPTZ,
  created_at TIMESTAMPTZ NOT NULL,
  updated_at TIMESTAMPTZ
);
CREATE TABLE IF NOT EXISTS listings (
  id TEXT PRIMARY KEY,
  title TEXT NOT NULL,
  description TEXT NOT NULL DEFAULT '',
  price DOUBLE PRECISION NOT NULL,
  surface DOUBLE PRECISION,
  rooms INTEGER,
  bedrooms INTEGER,
  property_type TEXT NOT NULL DEFAULT 'other',
  city TEXT NOT NULL,
  department TEXT NOT NULL DEFAULT '',
  region TEXT NOT NULL DEFAULT '',
  postal_code TEXT,
  lat DOUBLE PRECISION,
  lng DOUBLE PRECISION,
  location_precision TEXT NOT NULL DEFAULT 'exact',
  agency_id TEXT REFERENCES agencies(id),
  status TEXT NOT NULL DEFAULT 'active',
  images JSONB NOT NULL DEFAULT '[]'::jsonb,
  renovation_level INTEGER,
  renovation_score INTEGER NOT NULL DEFAULT 0,
  renovation_keywords JSONB NOT NULL DEFAULT '[]'::jsonb,
  required_works JSONB NOT NULL DEFAULT '[]'::jsonb,
  dpe_class TEXT,
  ges_class TEXT,
  energy_cost_min INTEGER,
  energy_cost_max INTEGER,
  copro_is_subject BOOLEAN,
  copro_annual_charges INTEGER,
  copro_procedure BOOLEAN,
  fingerprint TEXT UNIQUE,
  clicks INTEGER NOT NULL DEFAULT 0,
  is_sponsored BOOLEAN NOT NULL DEFAULT FALSE,
  sponsored_at TIMESTAMPTZ,
  sponsored_until TIMESTAMPTZ,
  auto_boost_applied BOOLEAN NOT NULL DEFAULT FALSE,
  auto_boost_recurrent BOOLEAN NOT NULL DEFAULT FALSE,
  created_at TIMESTAMPTZ NOT NULL,
  updated_at TIMESTAMPTZ
);
CREATE TABLE IF NOT EXISTS cpc_transactions (
  id TEXT PRIMARY KEY,
  agency_id TEXT NOT NULL REFERENCES agencies(id),
  type TEXT NOT NULL CHECK (type IN ('credit', 'debit')),
  amount NUMERIC(12,2) NOT NULL,
  currency TEXT NOT NULL DEFAULT 'eur',
  credits_added NUMERIC(12,2),
  description TEXT NOT NULL,
  stripe_payment_intent_id TEXT UNIQUE,
  stripe_charge_id TEXT UNIQUE,
  stripe_checkout_session_id TEXT UNIQUE,
  metadata JSONB NOT NULL DEFAULT '{}'::jsonb,
  created_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS listings_status_idx ON listings(status);
CREATE INDEX IF NOT EXISTS listings_agency_idx ON listings(agency_id);
CREATE INDEX IF NOT EXISTS listings_city_idx ON listings(LOWER(city));
CREATE INDEX IF NOT EXISTS listings_price_idx ON listings(price);
CREATE INDEX IF NOT EXISTS listings_created_idx ON listings(created_at DESC);
CREATE INDEX IF NOT EXISTS listings_geo_idx ON listings(lng, lat);
CREATE INDEX IF NOT EXISTS agencies_subscription_idx ON agencies(stripe_subscription_id);
CREATE INDEX IF NOT EXISTS cpc_transactions_agency_idx ON cpc_transactions(agency_id, created_at DESC);
"""

LISTING_COLUMNS = (
    "id, title, description, price, surface, rooms, bedrooms, property_type, city, department, region, "
    "postal_code, lat, lng, location_precision, agency_id, status, images, renovation_level, "
    "renovation_score, renovation_keywords, required_works, dpe_class, ges_class, energy_cost_min, "
    "energy_cost_max, copro_is_subject, copro_annual_charges, copro_procedure, fingerprint, clicks, "
    "is_sponsored, sponsored_at, sponsored_until, auto_boost_applied, auto_boost_recurrent, created_at, updated_at"
)

TRANSACTION_COLUMNS = (
    "id, agency_id, type, amount, currency, credits_added, description, stripe_payment_intent_id, "
    "stripe_charge_id, stripe_checkout_session_id, metadata, created_at"
)


def listing_from_row(r: Dict[str, Any]) -> Listing:
    point = None
    if r.get("lat") is not None and r.get("lng") is not None:
        point = {"lat": r["lat"], "lng": r["lng"]}
    return Listing.model_validate(
        {
            "id": r["id"],
            "title": r["title"],
            "description": r.get("description") or "",
            "price": r["price"],
            "surface": r.get("surface"),
            "rooms": r.get("rooms"),
            "bedrooms": r.get("bedrooms"),
            "property_type": r.get("property_type") or "other",
            "location": {
                "city": r["city"],
                "department": r.get("department") or "",
                "region": r.get("region") or "",
                "postal_code": r.get("postal_code"),
                "point": point,
                "precision": r.get("location_precision") or "exact",
            },
            "agency_id": r.get("agency_id"),
            "status": r.get("status") or "active",
            "images": r.get("images") or [],
            "renovation_level": r.get("renovation_level"),
            "renovation_score": r.get("renovation_score") or 0,
            "renovation_keywords": r.get("renovation_keywords") or [],
            "required_works": r.get("required_works") or [],
            "diagnostics": {
                "dpe_class": r.get("dpe_class"),
                "ges_class": r.get("ges_class"),
                "energy_cost_min": r.get("energy_cost_min"),
                "energy_cost_max": r.get("energy_cost_max"),
            },
            "copropriety": {
                "is_subject": r.get("copro_is_subject"),
                "annual_charges": r.get("copro_annual_charges"),
                "procedure_in_progress": r.get("copro_procedure"),
            },
            "fingerprint": r.get("fingerprint"),
            "clicks": r.get("clicks") or 0,
            "is_sponsored": bool(r.get("is_sponsored")),
            "sponsored_at": r.get("sponsored_at"),
            "sponsored_until": r.get("sponsored_until"),
            "auto_boost_applied": bool(r.get("auto_boost_applied")),
            "auto_boost_recurrent": bool(r.get("auto_boost_recurrent")),
            "created_at": r["created_at"],
            "updated_at": r.get("updated_at"),
        }
    )


def agency_from_row(r: Dict[str, Any]) -> Agency:
    return Agency.model_validate(
        {
            "id": r["id"],
            "company_name": r["company_name"],
            "email": r.get("email"),
            "status": r.get("status") or "pending",
            "stripe_customer_id": r.get("stripe_customer_id"),
            "subscription": {
                "pack": r.get("pack") or "FREE",
                "start_date": r.get("subscription_start"),
                "end_date": r.get("subscription_end"),
                "auto_renew": bool(r.get("auto_renew")),
                "history": r.get("subscription_history") or [],
                "stripe_subscription_id": r.get("stripe_subscription_id"),
                "stripe_price_id": r.get("stripe_price_id"),
                "status": r.get("subscription_status"),
                "current_period_end": r.get("current_period_end"),
                "last_event_at": r.get("subscription_event_at"),
            },
            "cpc": {
                "balance": r.get("cpc_balance") or Decimal("0"),
                "total_spent": r.get("cpc_total_spent") or Decimal("0"),
                "cost_per_click": r.get("cpc_cost_per_click") or Decimal("0.50"),
                "clicks_this_month": r.get("cpc_clicks_this_month") or 0,
                "last_recharge_at": r.get("cpc_last_recharge_at"),
            },
            "created_at": r["created_at"],
            "updated_at": r.get("updated_at"),
        }
    )


def transaction_from_row(r: Dict[str, Any]) -> CpcTransaction:
    return CpcTransaction.model_validate(
        {
            "id": r["id"],
            "agency_id": r["agency_id"],
            "type": r["type"],
            "amount": r["amount"],
            "currency": r.get("currency") or "eur",
            "credits_added": r.get("credits_added"),
            "description": r["description"],
            "refs": {
                "payment_intent_id": r.get("stripe_payment_intent_id"),
                "charge_id": r.get("stripe_charge_id"),
                "checkout_session_id": r.get("stripe_checkout_session_id"),
            },
            "metadata": r.get("metadata") or {},
            "created_at": r["created_at"],
        }
    )


def filter_clauses(filters: FilterConfig) -> tuple[List[str], List[object]]:
    """Translate a FilterConfig into SQL predicates with FilterEngine semantics."""
    where: List[str] = []
    params: List[object] = []
    if filters.statuses:
        where.append("status = ANY(%s)")
        params.append(list(filters.statuses))
    if filters.query:
        like = f"%{filters.query.strip().lower()}%"
        where.append("(LOWER(title) LIKE %s OR LOWER(description) LIKE %s)")
        params.extend([like, like])
    if filters.city:
        where.append("LOWER(city) = %s")
        params.append(filters.city.strip().lower())
    if filters.postal_code:
        where.append("postal_code = %s")
        params.append(filters.postal_code.strip())
    if filters.property_types:
        where.append("property_type = ANY(%s)")
        params.append(list(filters.property_types))
    for column, low, high in (
        ("price", filters.min_price, filters.max_price),
        ("surface", filters.min_surface, filters.max_surface),
        ("renovation_level", filters.min_renovation_level, filters.max_renovation_level),
    ):
        if low is not None:
            where.append(f"{column} >= %s")
            params.append(low)
        if high is not None:
            where.append(f"{column} <= %s")
            params.append(high)
    if filters.min_rooms is not None:
        where.append("GREATEST(COALESCE(rooms, 0), COALESCE(bedrooms, 0)) >= %s")
        params.append(filters.min_rooms)
    if filters.required_works:
        where.append(
            "EXISTS (SELECT 1 FROM jsonb_array_elements_text(required_works) w WHERE LOWER(w) = ANY(%s))"
        )
        params.append([w.strip().lower() for w in filters.required_works if w.strip()])
    if filters.dpe_classes:
        where.append("UPPER(dpe_class) = ANY(%s)")
        params.append([c.strip().upper() for c in filters.dpe_classes])
    if filters.ges_classes:
        where.append("UPPER(ges_class) = ANY(%s)")
        params.append([c.strip().upper() for c in filters.ges_classes])
    if filters.min_energy_cost is not None or filters.max_energy_cost is not None:
        ends = []
        for column in ("energy_cost_min", "energy_cost_max"):
            conds = [f"{column} IS NOT NULL"]
            if filters.min_energy_cost is not None:
                conds.append(f"{column} >= %s")
                params.append(filters.min_energy_cost)
            if filters.max_energy_cost is not None:
                conds.append(f"{column} <= %s")
                params.append(filters.max_energy_cost)
            ends.append("(" + " AND ".join(conds) + ")")
        where.append("(" + " OR ".join(ends) + ")")
    if filters.copropriety_subject is not None:
        where.append("copro_is_subject = %s")
        params.append(filters.copropriety_subject)
    if filters.max_copropriety_charges is not None:
        where.append("copro_annual_charges <= %s")
        params.append(filters.max_copropriety_charges)
    if filters.copropriety_procedure is not None:
        where.append("copro_procedure = %s")
        params.append(filters.copropriety_procedure)
    return where, params


class PostgresStore:
    """Listing and agency store backed by PostgreSQL.

    Balance integrity rests on two structural guards: the debit is a single
    conditional UPDATE (plus a CHECK constraint on the column), and every
    external payment identifier carries a UNIQUE constraint so a re-delivered
    credit can't be inserted twice.
    """

    def __init__(self, url: Optional[str] = None) -> None:
        self.url = url or db_url()

    def init_schema(self) -> None:
        with connect(self.url) as conn:
            with conn.cursor() as cur:
                cur.execute(SCHEMA)
            conn.commit()

    def _fetch(self, sql: str, params: Iterable[object]) -> List[Dict[str, Any]]:
        with connect(self.url) as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                cur.execute(sql, list(params))
                return [dict(r) for r in cur.fetchall()]

    # Listings
    def get_listing(self, listing_id: str) -> Optional[Listing]:
        rows = self._fetch(f"SELECT {LISTING_COLUMNS} FROM listings WHERE id = %s", (listing_id,))
        return listing_from_row(rows[0]) if rows else None

    def find_listings(
        self,
        filters: FilterConfig,
        bbox: Optional[BoundingBox] = None,
        limit: Optional[int] = None,
        sponsored_first_at: Optional[datetime] = None,
    ) -> List[Listing]:
        where, params = filter_clauses(filters)
        if bbox is not None:
            where.append("lng BETWEEN %s AND %s AND lat BETWEEN %s AND %s")
            params.extend([bbox.west, bbox.east, bbox.south, bbox.north])
        sql = f"SELECT {LISTING_COLUMNS} FROM listings"
        if where:
            sql += " WHERE " + " AND ".join(where)
        if sponsored_first_at is not None:
            sql += (
                " ORDER BY (is_sponsored AND (sponsored_at IS NULL OR sponsored_at <= %s)"
                " AND (sponsored_until IS NULL OR sponsored_until >= %s)) DESC, created_at DESC"
            )
            params.extend([sponsored_first_at, sponsored_first_at])
        if limit is not None:
            sql += " LIMIT %s"
            params.append(limit)
        return [listing_from_row(r) for r in self._fetch(sql, params)]

    def insert_listing(self, listing: Listing) -> Listing:
        loc = listing.location
        point = loc.point
        values = (
            listing.id, listing.title, listing.description, listing.price, listing.surface,
            listing.rooms, listing.bedrooms, listing.property_type, loc.city, loc.department,
            loc.region, loc.postal_code, point.lat if point else None, point.lng if point else None,
            loc.precision, listing.agency_id, listing.status, psycopg2.extras.Json(listing.images),
            listing.renovation_level, listing.renovation_score,
            psycopg2.extras.Json(listing.renovation_keywords), psycopg2.extras.Json(listing.required_works),
            listing.diagnostics.dpe_class, listing.diagnostics.ges_class,
            listing.diagnostics.energy_cost_min, listing.diagnostics.energy_cost_max,
            listing.copropriety.is_subject, listing.copropriety.annual_charges,
            listing.copropriety.procedure_in_progress, listing.fingerprint, listing.clicks,
            listing.is_sponsored, listing.sponsored_at, listing.sponsored_until,
            listing.auto_boost_applied, listing.auto_boost_recurrent, listing.created_at, listing.updated_at,
        )
        placeholders = ", ".join(["%s"] * len(values))
        with connect(self.url) as conn:
            try:
                with conn.cursor() as cur:
                    cur.execute(f"INSERT INTO listings ({LISTING_COLUMNS}) VALUES ({placeholders})", values)
                conn.commit()
            except psycopg2.errors.UniqueViolation:
                conn.rollback()
                raise ValidationError("duplicate listing") from None
        return listing

    def count_active_listings(self, agency_id: str) -> int:
        rows = self._fetch(
            "SELECT COUNT(*) AS n FROM listings WHERE agency_id = %s AND status = 'active'", (agency_id,)
        )
        return int(rows[0]["n"]) if rows else 0

    def increment_clicks(self, listing_id: str) -> None:
        with connect(self.url) as conn:
            with conn.cursor() as cur:
                cur.execute("UPDATE listings SET clicks = clicks + 1 WHERE id = %s", (listing_id,))
            conn.commit()

    def set_sponsorship(
        self,
        listing_id: str,
        sponsored: bool,
        sponsored_at: Optional[datetime] = None,
        sponsored_until: Optional[datetime] = None,
    ) -> None:
        with connect(self.url) as conn:
            with conn.cursor() as cur:
                if sponsored:
                    cur.execute(
                        "UPDATE listings SET is_sponsored = TRUE, sponsored_at = %s, sponsored_until = %s, "
                        "auto_boost_applied = FALSE, updated_at = NOW() WHERE id = %s",
                        (sponsored_at, sponsored_until, listing_id),
                    )
                else:
                    cur.execute(
                        "UPDATE listings SET is_sponsored = FALSE, updated_at = NOW() WHERE id = %s",
                        (listing_id,),
                    )
                if cur.rowcount == 0:
                    raise NotFound(f"Listing {listing_id} not found")
            conn.commit()

    # Agencies
    def get_agency(self, agency_id: str) -> Optional[Agency]:
        rows = self._fetch("SELECT * FROM agencies WHERE id = %s", (agency_id,))
        return agency_from_row(rows[0]) if rows else None

    def get_agencies(self, agency_ids: Iterable[str]) -> Dict[str, Agency]:
        ids = sorted(set(agency_ids))
        if not ids:
            return {}
        rows = self._fetch("SELECT * FROM agencies WHERE id = ANY(%s)", (ids,))
        return {r["id"]: agency_from_row(r) for r in rows}

    def find_agency_by_subscription(self, subscription_id: str) -> Optional[Agency]:
        rows = self._fetch("SELECT * FROM agencies WHERE stripe_subscription_id = %s LIMIT 1", (subscription_id,))
        return agency_from_row(rows[0]) if rows else None

    def save_agency(self, agency: Agency) -> None:
        sub, cpc = agency.subscription, agency.cpc
        history = [h.model_dump(mode="json") for h in sub.history]
        with connect(self.url) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO agencies (id, company_name, email, status, stripe_customer_id, pack,
                      subscription_start, subscription_end, auto_renew, subscription_history,
                      stripe_subscription_id, stripe_price_id, subscription_status, current_period_end,
                      subscription_event_at, cpc_balance, cpc_total_spent, cpc_cost_per_click,
                      cpc_clicks_this_month, cpc_last_recharge_at, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (id) DO UPDATE SET
                      company_name = EXCLUDED.company_name,
                      email = EXCLUDED.email,
                      status = EXCLUDED.status,
                      stripe_customer_id = EXCLUDED.stripe_customer_id,
                      cpc_cost_per_click = EXCLUDED.cpc_cost_per_click,
                      updated_at = EXCLUDED.updated_at
                    """,
                    (
                        agency.id, agency.company_name, agency.email, agency.status, agency.stripe_customer_id,
                        sub.pack, sub.start_date, sub.end_date, sub.auto_renew, psycopg2.extras.Json(history),
                        sub.stripe_subscription_id, sub.stripe_price_id, sub.status, sub.current_period_end,
                        sub.last_event_at, cpc.balance, cpc.total_spent, cpc.cost_per_click,
                        cpc.clicks_this_month, cpc.last_recharge_at, agency.created_at, agency.updated_at,
                    ),
                )
            conn.commit()

    # Ledger
    def find_transaction(self, refs: PaymentRefs) -> Optional[CpcTransaction]:
        where: List[str] = []
        params: List[object] = []
        for column, value in (
            ("stripe_payment_intent_id", refs.payment_intent_id),
            ("stripe_charge_id", refs.charge_id),
            ("stripe_checkout_session_id", refs.checkout_session_id),
        ):
            if value:
                where.append(f"{column} = %s")
                params.append(value)
        if not where:
            return None
        rows = self._fetch(
            f"SELECT {TRANSACTION_COLUMNS} FROM cpc_transactions WHERE " + " OR ".join(where) + " LIMIT 1",
            params,
        )
        return transaction_from_row(rows[0]) if rows else None

    def _insert_transaction(self, cur: Any, tx: CpcTransaction) -> bool:
        cur.execute(
            f"""
            INSERT INTO cpc_transactions ({TRANSACTION_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT DO NOTHING
            RETURNING id
            """,
            (
                tx.id, tx.agency_id, tx.type, tx.amount, tx.currency, tx.credits_added, tx.description,
                tx.refs.payment_intent_id, tx.refs.charge_id, tx.refs.checkout_session_id,
                psycopg2.extras.Json(tx.metadata), tx.created_at,
            ),
        )
        return cur.fetchone() is not None

    def apply_credit(self, tx: CpcTransaction, now: datetime) -> Optional[Decimal]:
        with connect(self.url) as conn:
            with conn.cursor() as cur:
                if not self._insert_transaction(cur, tx):
                    conn.rollback()
                    return None
                cur.execute(
                    "UPDATE agencies SET cpc_balance = cpc_balance + %s, cpc_last_recharge_at = %s, "
                    "updated_at = %s WHERE id = %s RETURNING cpc_balance",
                    (tx.amount, now, now, tx.agency_id),
                )
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    raise NotFound(f"Agency {tx.agency_id} not found")
            conn.commit()
            return Decimal(row[0])

    def apply_debit(self, tx: CpcTransaction, now: datetime) -> Optional[Decimal]:
        with connect(self.url) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE agencies SET cpc_balance = cpc_balance - %s, cpc_total_spent = cpc_total_spent + %s "
                    "WHERE id = %s AND cpc_balance >= %s RETURNING cpc_balance",
                    (tx.amount, tx.amount, tx.agency_id, tx.amount),
                )
                row = cur.fetchone()
                if row is None:
                    conn.rollback()
                    return None
                self._insert_transaction(cur, tx)
            conn.commit()
            return Decimal(row[0])

    def bump_click_counter(self, agency_id: str, now: datetime) -> int:
        with connect(self.url) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    UPDATE agencies SET
                      cpc_clicks_this_month = CASE
                        WHEN date_trunc('month', updated_at) = date_trunc('month', %s::timestamptz)
                        THEN cpc_clicks_this_month + 1 ELSE 1 END,
                      updated_at = %s
                    WHERE id = %s
                    RETURNING cpc_clicks_this_month
                    """,
                    (now, now, agency_id),
                )
                row = cur.fetchone()
            conn.commit()
        if row is None:
            raise NotFound(f"Agency {agency_id} not found")
        return int(row[0])

    def list_transactions(self, agency_id: str, limit: int = 50) -> List[CpcTransaction]:
        rows = self._fetch(
            f"SELECT {TRANSACTION_COLUMNS} FROM cpc_transactions WHERE agency_id = %s "
            "ORDER BY created_at DESC LIMIT %s",
            (agency_id, limit),
        )
        return [transaction_from_row(r) for r in rows]

    # Subscriptions
    def _lock_subscription(self, cur: Any, agency_id: str) -> Dict[str, Any]:
        cur.execute(
            "SELECT pack, subscription_start, subscription_history, subscription_event_at "
            "FROM agencies WHERE id = %s FOR UPDATE",
            (agency_id,),
        )
        row = cur.fetchone()
        if row is None:
            raise NotFound(f"Agency {agency_id} not found")
        return dict(row)

    def apply_subscription(self, agency_id: str, change: SubscriptionChange, now: datetime) -> bool:
        with connect(self.url) as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                current = self._lock_subscription(cur, agency_id)
                if is_stale(current["subscription_event_at"], change.event_at):
                    conn.rollback()
                    return False
                history = list(current["subscription_history"] or [])
                if current["pack"] != change.pack:
                    start = current["subscription_start"] or change.period_start
                    history.append(
                        {
                            "pack": current["pack"],
                            "start_date": start.isoformat() if start else None,
                            "end_date": now.isoformat(),
                            "reason": change.reason,
                        }
                    )
                cur.execute(
                    """
                    UPDATE agencies SET pack = %s, subscription_start = %s, auto_renew = TRUE,
                      subscription_history = %s, stripe_subscription_id = %s, stripe_price_id = %s,
                      subscription_status = %s, current_period_end = %s,
                      subscription_event_at = COALESCE(%s, subscription_event_at), updated_at = %s
                    WHERE id = %s
                    """,
                    (
                        change.pack, change.period_start, psycopg2.extras.Json(history), change.subscription_id,
                        change.price_id, change.status, change.period_end, change.event_at, now, agency_id,
                    ),
                )
            conn.commit()
        return True

    def cancel_subscription(self, agency_id: str, event_at: Optional[datetime], now: datetime) -> bool:
        with connect(self.url) as conn:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                current = self._lock_subscription(cur, agency_id)
                if is_stale(current["subscription_event_at"], event_at):
                    conn.rollback()
                    return False
                start = current["subscription_start"] or now
                history = list(current["subscription_history"] or [])
                history.append(
                    {
                        "pack": current["pack"],
                        "start_date": start.isoformat(),
                        "end_date": now.isoformat(),
                        "reason": "Subscription cancelled",
                    }
                )
                cur.execute(
                    """
                    UPDATE agencies SET pack = 'FREE', auto_renew = FALSE, subscription_end = %s,
                      subscription_history = %s, stripe_subscription_id = NULL, stripe_price_id = NULL,
                      subscription_status = 'canceled', current_period_end = NULL,
                      subscription_event_at = COALESCE(%s, subscription_event_at), updated_at = %s
                    WHERE id = %s
                    """,
                    (now, psycopg2.extras.Json(history), event_at, now, agency_id),
                )
            conn.commit()
        return True

    def set_subscription_status(
        self,
        agency_id: str,
        status: str,
        period_end: Optional[datetime] = None,
        auto_renew: Optional[bool] = None,
    ) -> None:
        with connect(self.url) as conn:
            with conn.cursor() as cur:
                cur.execute(
                    "UPDATE agencies SET subscription_status = %s, "
                    "current_period_end = COALESCE(%s, current_period_end), "
                    "auto_renew = COALESCE(%s, auto_renew), updated_at = NOW() WHERE id = %s",
                    (status, period_end, auto_renew, agency_id),
                )
            conn.commit()
