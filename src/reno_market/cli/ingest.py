from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pydantic

from reno_market.config import Settings
from reno_market.errors import ValidationError
from reno_market.models import Agency, Listing
from reno_market.repositories import build_store
from reno_market.utils.log import configure_logging

logger = logging.getLogger(__name__)


def load(data: Any, settings: Settings) -> tuple[List[Agency], List[Listing]]:
    """Parse either a bare listing array or ``{"agencies": [...], "listings": [...]}``."""
    if isinstance(data, dict):
        raw_agencies = data.get("agencies") or []
        raw_listings = data.get("listings") or []
    else:
        raw_agencies, raw_listings = [], data or []

    now = datetime.now(timezone.utc)
    agencies: List[Agency] = []
    for obj in raw_agencies:
        obj = dict(obj)
        obj.setdefault("created_at", now)
        cpc: Dict[str, Any] = dict(obj.get("cpc") or {})
        cpc.setdefault("cost_per_click", settings.base_cpc_cost)
        obj["cpc"] = cpc
        try:
            agencies.append(Agency.model_validate(obj))
        except pydantic.ValidationError as e:
            logger.warning("Skipping agency %s: %s", obj.get("id"), e.errors()[0]["msg"])
    listings: List[Listing] = []
    for obj in raw_listings:
        obj = dict(obj)
        obj.setdefault("created_at", now)
        try:
            listings.append(Listing.model_validate(obj))
        except pydantic.ValidationError as e:
            logger.warning("Skipping listing %s: %s", obj.get("id"), e.errors()[0]["msg"])
    return agencies, listings


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Load agencies and listings JSON into the configured store")
    parser.add_argument("file", type=Path, help="Path to a JSON file")
    args = parser.parse_args(argv)

    settings = Settings()
    configure_logging(settings.log_level)
    agencies, listings = load(json.loads(args.file.read_text(encoding="utf-8")), settings)

    store = build_store(settings)
    store.init_schema()
    for agency in agencies:
        store.save_agency(agency)
    inserted = 0
    for listing in listings:
        try:
            store.insert_listing(listing)
            inserted += 1
        except ValidationError as e:
            logger.warning("Skipping listing %s: %s", listing.id, e)
    print(f"Saved {len(agencies)} agencies, inserted {inserted} listings")


if __name__ == "__main__":
    main()
