from __future__ import annotations

from conftest import make_listing
from reno_market.filters import FilterConfig, FilterEngine
from reno_market.models import Copropriety, Diagnostics


def included(cfg: FilterConfig, listing) -> bool:
    return FilterEngine(cfg).apply(listing).included


def test_inactive_listings_are_excluded_by_default():
    result = FilterEngine(FilterConfig()).apply(make_listing("l1", status="sold"))
    assert not result.included
    assert result.reasons == ["status:sold"]


def test_text_city_and_price_band():
    listing = make_listing("l1", title="Longère à rénover", city="Quimper", price=150_000)

    assert included(FilterConfig(query="LONGÈRE", city="quimper", min_price=100_000, max_price=150_000), listing)
    assert not included(FilterConfig(query="appartement"), listing)
    assert not included(FilterConfig(city="Brest"), listing)
    assert not included(FilterConfig(max_price=149_999), listing)


def test_rooms_use_the_larger_count():
    listing = make_listing("l1", rooms=2, bedrooms=4)
    assert included(FilterConfig(min_rooms=4), listing)
    assert not included(FilterConfig(min_rooms=5), listing)


def test_ranges_exclude_unknown_values():
    listing = make_listing("l1", surface=None, renovation_level=3)
    assert not included(FilterConfig(min_surface=20), listing)
    assert included(FilterConfig(min_renovation_level=2, max_renovation_level=3), listing)


def test_diagnostics_and_copropriety():
    listing = make_listing(
        "l1",
        diagnostics=Diagnostics(dpe_class="F", ges_class="E", energy_cost_min=2100, energy_cost_max=2900),
        copropriety=Copropriety(is_subject=True, annual_charges=1200, procedure_in_progress=False),
        required_works=["Toiture", "Électricité"],
    )

    assert included(FilterConfig(dpe_classes=["f", "g"], ges_classes=["E"]), listing)
    assert not included(FilterConfig(dpe_classes=["A"]), listing)
    assert included(FilterConfig(min_energy_cost=2500, max_energy_cost=3000), listing)
    assert not included(FilterConfig(min_energy_cost=3000), listing)
    assert included(FilterConfig(copropriety_subject=True, max_copropriety_charges=1500), listing)
    assert not included(FilterConfig(copropriety_procedure=True), listing)
    assert included(FilterConfig(required_works=["toiture"]), listing)
    assert not included(FilterConfig(required_works=["plomberie"]), listing)
