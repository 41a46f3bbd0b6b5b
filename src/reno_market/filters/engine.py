from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from pydantic import BaseModel

from reno_market.models import Listing


class FilterConfig(BaseModel):
    """Search filters shared by the list and map queries."""

    query: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    property_types: List[str] = []
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_surface: Optional[float] = None
    max_surface: Optional[float] = None
    min_rooms: Optional[int] = None
    min_renovation_level: Optional[int] = None
    max_renovation_level: Optional[int] = None
    required_works: List[str] = []
    dpe_classes: List[str] = []
    ges_classes: List[str] = []
    min_energy_cost: Optional[int] = None
    max_energy_cost: Optional[int] = None
    copropriety_subject: Optional[bool] = None
    max_copropriety_charges: Optional[int] = None
    copropriety_procedure: Optional[bool] = None
    statuses: List[str] = ["active"]


@dataclass
class FilterResult:
    included: bool
    reasons: List[str]


class FilterEngine:
    """Apply the boolean search filters to a single listing.

    The PostgreSQL store translates the same config into SQL; this engine
    backs the in-memory store and is the reference for those semantics.
    """

    def __init__(self, config: FilterConfig) -> None:
        self.config = config

    def apply(self, listing: Listing) -> FilterResult:
        cfg = self.config
        reasons: List[str] = []

        if cfg.statuses and listing.status not in cfg.statuses:
            reasons.append(f"status:{listing.status}")
            return FilterResult(False, reasons)

        if cfg.query:
            text = f"{listing.title} {listing.description}".lower()
            if cfg.query.strip().lower() not in text:
                reasons.append("query_not_matched")
                return FilterResult(False, reasons)

        if cfg.city and listing.location.city.lower() != cfg.city.strip().lower():
            reasons.append("city")
            return FilterResult(False, reasons)
        if cfg.postal_code and (listing.location.postal_code or "") != cfg.postal_code.strip():
            reasons.append("postal_code")
            return FilterResult(False, reasons)

        if cfg.property_types and listing.property_type not in cfg.property_types:
            reasons.append("property_type")
            return FilterResult(False, reasons)

        # Price band
        if cfg.min_price is not None and listing.price < cfg.min_price:
            reasons.append("price_below_min")
            return FilterResult(False, reasons)
        if cfg.max_price is not None and listing.price > cfg.max_price:
            reasons.append("price_above_max")
            return FilterResult(False, reasons)

        if not self._in_range(listing.surface, cfg.min_surface, cfg.max_surface):
            reasons.append("surface")
            return FilterResult(False, reasons)

        if cfg.min_rooms is not None:
            rooms = max(listing.rooms or 0, listing.bedrooms or 0)
            if rooms < cfg.min_rooms:
                reasons.append("rooms")
                return FilterResult(False, reasons)

        if not self._in_range(listing.renovation_level, cfg.min_renovation_level, cfg.max_renovation_level):
            reasons.append("renovation_level")
            return FilterResult(False, reasons)
        if cfg.required_works and not set(self._norm(cfg.required_works)) & set(self._norm(listing.required_works)):
            reasons.append("required_works")
            return FilterResult(False, reasons)

        diag = listing.diagnostics
        if cfg.dpe_classes and (diag.dpe_class or "").upper() not in self._upper(cfg.dpe_classes):
            reasons.append("dpe_class")
            return FilterResult(False, reasons)
        if cfg.ges_classes and (diag.ges_class or "").upper() not in self._upper(cfg.ges_classes):
            reasons.append("ges_class")
            return FilterResult(False, reasons)
        if cfg.min_energy_cost is not None or cfg.max_energy_cost is not None:
            # either end of the declared energy cost range may match
            if not any(
                v is not None and self._in_range(v, cfg.min_energy_cost, cfg.max_energy_cost)
                for v in (diag.energy_cost_min, diag.energy_cost_max)
            ):
                reasons.append("energy_cost")
                return FilterResult(False, reasons)

        copro = listing.copropriety
        if cfg.copropriety_subject is not None and copro.is_subject != cfg.copropriety_subject:
            reasons.append("copropriety_subject")
            return FilterResult(False, reasons)
        if cfg.max_copropriety_charges is not None and (
            copro.annual_charges is None or copro.annual_charges > cfg.max_copropriety_charges
        ):
            reasons.append("copropriety_charges")
            return FilterResult(False, reasons)
        if cfg.copropriety_procedure is not None and copro.procedure_in_progress != cfg.copropriety_procedure:
            reasons.append("copropriety_procedure")
            return FilterResult(False, reasons)

        return FilterResult(True, reasons)

    @staticmethod
    def _in_range(value: Optional[float], low: Optional[float], high: Optional[float]) -> bool:
        if low is None and high is None:
            return True
        if value is None:
            return False
        if low is not None and value < low:
            return False
        if high is not None and value > high:
            return False
        return True

    @staticmethod
    def _norm(words: Iterable[str]) -> List[str]:
        return [w.strip().lower() for w in words if w and w.strip()]

    @staticmethod
    def _upper(words: Iterable[str]) -> List[str]:
        return [w.strip().upper() for w in words if w and w.strip()]
