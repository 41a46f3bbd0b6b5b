from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

import psycopg2
import pytest

import reno_market.repositories.postgres as pg
from conftest import NOW, make_listing
from reno_market.errors import StoreUnavailable
from reno_market.filters import FilterConfig
from reno_market.models import CpcTransaction, PaymentRefs
from reno_market.repositories import SubscriptionChange


class FakeCursor:
    def __init__(self, conn):
        self.conn = conn
        self.rowcount = 1

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.conn.executed.append((" ".join(sql.split()), params))

    def fetchone(self):
        return self.conn.rows.pop(0) if self.conn.rows else None

    def fetchall(self):
        rows, self.conn.rows = self.conn.rows, []
        return rows


class FakeConn:
    def __init__(self, rows=None):
        self.rows = list(rows or [])
        self.executed = []
        self.commits = 0
        self.rollbacks = 0
        self.closed = False

    def cursor(self, cursor_factory=None):
        return FakeCursor(self)

    def commit(self):
        self.commits += 1

    def rollback(self):
        self.rollbacks += 1

    def close(self):
        self.closed = True


@pytest.fixture
def conn(monkeypatch):
    fake = FakeConn()
    monkeypatch.setattr(pg.psycopg2, "connect", lambda url: fake)
    return fake


def tx(kind="debit", amount="0.50", **refs):
    return CpcTransaction(
        id="tx1",
        agency_id="a1",
        type=kind,
        amount=Decimal(amount),
        description="test",
        refs=PaymentRefs(**refs),
        created_at=NOW,
    )


def test_init_schema_declares_unique_payment_refs(conn):
    pg.PostgresStore("postgresql://test").init_schema()

    sql = conn.executed[0][0]
    assert "stripe_payment_intent_id TEXT UNIQUE" in sql
    assert "stripe_charge_id TEXT UNIQUE" in sql
    assert "stripe_checkout_session_id TEXT UNIQUE" in sql
    assert "CHECK (cpc_balance >= 0)" in sql
    assert conn.commits == 1 and conn.closed


def test_debit_is_a_single_conditional_update(conn):
    conn.rows = [(Decimal("1.50"),), ("tx1",)]

    balance = pg.PostgresStore("x").apply_debit(tx(), NOW)

    assert balance == Decimal("1.50")
    sql, params = conn.executed[0]
    assert sql.startswith("UPDATE agencies SET cpc_balance = cpc_balance - %s")
    assert "WHERE id = %s AND cpc_balance >= %s RETURNING cpc_balance" in sql
    assert params == (Decimal("0.50"), Decimal("0.50"), "a1", Decimal("0.50"))
    assert conn.executed[1][0].startswith("INSERT INTO cpc_transactions")
    assert conn.commits == 1


def test_declined_debit_rolls_back(conn):
    conn.rows = []

    assert pg.PostgresStore("x").apply_debit(tx(), NOW) is None
    assert len(conn.executed) == 1
    assert conn.rollbacks == 1 and conn.commits == 0


def test_duplicate_credit_hits_on_conflict(conn):
    conn.rows = []

    result = pg.PostgresStore("x").apply_credit(tx("credit", "50", payment_intent_id="pi_1"), NOW)

    assert result is None
    sql, params = conn.executed[0]
    assert "ON CONFLICT DO NOTHING RETURNING id" in sql
    assert "pi_1" in params
    assert len(conn.executed) == 1
    assert conn.rollbacks == 1


def test_credit_increments_balance_in_same_transaction(conn):
    conn.rows = [("tx1",), (Decimal("50.00"),)]

    assert pg.PostgresStore("x").apply_credit(tx("credit", "50", payment_intent_id="pi_1"), NOW) == Decimal("50.00")
    assert conn.executed[1][0].startswith("UPDATE agencies SET cpc_balance = cpc_balance + %s")
    assert conn.commits == 1


def test_filters_translate_to_sql(conn):
    cfg = FilterConfig(query="Grange", city="Limoges", min_price=50_000, dpe_classes=["f", "G"], min_rooms=3)

    pg.PostgresStore("x").find_listings(cfg, limit=10, sponsored_first_at=NOW)

    sql, params = conn.executed[0]
    assert "status = ANY(%s)" in sql
    assert "(LOWER(title) LIKE %s OR LOWER(description) LIKE %s)" in sql
    assert "LOWER(city) = %s" in sql
    assert "price >= %s" in sql
    assert "UPPER(dpe_class) = ANY(%s)" in sql
    assert sql.endswith("LIMIT %s")
    assert "ORDER BY (is_sponsored" in sql
    assert params[:4] == [["active"], "%grange%", "%grange%", "limoges"]
    assert ["F", "G"] in params
    assert params[-1] == 10


def test_listing_rows_are_validated(conn):
    row = {
        "id": "l1",
        "title": "Ferme",
        "price": 90_000.0,
        "city": "Guéret",
        "lat": 46.17,
        "lng": 1.87,
        "location_precision": "approx",
        "images": [],
        "created_at": NOW,
        "is_sponsored": True,
        "sponsored_until": datetime(2026, 3, 17, tzinfo=timezone.utc),
    }
    conn.rows = [row]

    listing = pg.PostgresStore("x").get_listing("l1")

    assert listing.location.point.lat == 46.17
    assert listing.location.precision == "approx"
    assert listing.sponsorship_window_open(NOW)


def test_click_counter_resets_by_month_in_sql(conn):
    conn.rows = [(1,)]

    assert pg.PostgresStore("x").bump_click_counter("a1", NOW) == 1
    assert "date_trunc('month', updated_at)" in conn.executed[0][0]


def test_stale_subscription_event_is_not_written(conn):
    conn.rows = [
        {
            "pack": "PREMIUM",
            "subscription_start": NOW,
            "subscription_history": [],
            "subscription_event_at": datetime(2026, 3, 15, 13, tzinfo=timezone.utc),
        }
    ]
    change = SubscriptionChange(pack="STARTER", period_start=NOW, subscription_id="sub_1", event_at=NOW)

    assert not pg.PostgresStore("x").apply_subscription("a1", change, NOW)
    assert "FOR UPDATE" in conn.executed[0][0]
    assert len(conn.executed) == 1


def test_unreachable_database_raises_store_unavailable(monkeypatch):
    def refuse(url):
        raise psycopg2.OperationalError("connection refused")

    monkeypatch.setattr(pg.psycopg2, "connect", refuse)
    with pytest.raises(StoreUnavailable):
        pg.PostgresStore("x").get_listing("l1")


def test_insert_listing_writes_all_columns(conn):
    pg.PostgresStore("x").insert_listing(make_listing("l1", "a1"))

    sql, params = conn.executed[0]
    assert sql.count("%s") == len(params) == len(pg.LISTING_COLUMNS.split(","))
    assert conn.commits == 1
