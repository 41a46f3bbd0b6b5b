from __future__ import annotations

import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from reno_market.errors import ValidationError
from reno_market.filters import FilterConfig
from reno_market.repositories.base import AgencyStore, ListingStore

from .geo import APPROX_PAD_KM, BoundingBox, masked
from .ledger import utcnow
from .ranking import RankedListing, RankingEngine

logger = logging.getLogger(__name__)

MIN_ZOOM = 0
MAX_ZOOM = 22
# from this zoom on, clustered listings are also returned as individual points
DETAIL_ZOOM = 15


def pool_size(zoom: int) -> int:
    if zoom >= 14:
        return 500
    if zoom >= 12:
        return 200
    return 100


def cell_size(zoom: int) -> float:
    """Grid cell edge in degrees."""
    if zoom < 12:
        return 0.05
    if zoom < 14:
        return 0.02
    return 0.01


def point_marker(r: RankedListing) -> Dict[str, Any]:
    listing = r.listing
    point = listing.location.point
    return {
        "id": listing.id,
        "lat": point.lat,
        "lng": point.lng,
        "title": listing.title,
        "price": listing.price,
        "propertyType": listing.property_type,
        "city": listing.location.city,
        "precision": listing.location.precision,
        "isSponsored": r.sponsored,
        "agencyPack": r.agency_pack,
        "mapHighlight": r.map_highlight,
    }


def cluster(ranked: List[RankedListing], zoom: int) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
    """Bin listings into a zoom-dependent grid.

    Returns ``(clusters, points)``. Cells holding one listing become points;
    fuller cells become a cluster with the member count, mean center and
    member bounding box. Input order is kept inside every cell.
    """
    size = cell_size(zoom)
    cells: Dict[Tuple[int, int], List[RankedListing]] = {}
    for r in ranked:
        point = r.listing.location.point
        if point is None:
            continue
        cell = (math.floor(point.lng / size), math.floor(point.lat / size))
        cells.setdefault(cell, []).append(r)

    clusters: List[Dict[str, Any]] = []
    points: List[Dict[str, Any]] = []
    for (x, y), members in cells.items():
        if len(members) == 1:
            points.append(point_marker(members[0]))
            continue
        lats = [m.listing.location.point.lat for m in members]
        lngs = [m.listing.location.point.lng for m in members]
        clusters.append(
            {
                "id": f"cluster-{x},{y}",
                "count": len(members),
                "center": {"lat": sum(lats) / len(lats), "lng": sum(lngs) / len(lngs)},
                "bbox": [min(lngs), min(lats), max(lngs), max(lats)],
                "listingIds": [m.listing.id for m in members],
                "sponsoredCount": sum(1 for m in members if m.sponsored),
            }
        )
        if zoom >= DETAIL_ZOOM:
            points.extend(point_marker(m) for m in members)
    return clusters, points


class MapService:
    def __init__(
        self,
        listings: ListingStore,
        agencies: AgencyStore,
        obfuscation_secret: str,
        engine: Optional[RankingEngine] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.listings = listings
        self.agencies = agencies
        self.secret = obfuscation_secret
        self.engine = engine or RankingEngine()
        self.clock = clock

    def query(self, filters: FilterConfig, bbox: BoundingBox, zoom: int) -> Dict[str, Any]:
        if not MIN_ZOOM <= zoom <= MAX_ZOOM:
            raise ValidationError(f"zoom must be between {MIN_ZOOM} and {MAX_ZOOM}")
        now = self.clock()
        # displaced points can cross the edge either way
        candidates = self.listings.find_listings(
            filters, bbox=bbox.padded(APPROX_PAD_KM), limit=pool_size(zoom), sponsored_first_at=now
        )
        candidates = [masked(l, self.secret) for l in candidates]
        candidates = [l for l in candidates if l.location.point is not None and bbox.contains(l.location.point)]
        agencies = self.agencies.get_agencies({l.agency_id for l in candidates if l.agency_id})
        ranked = self.engine.enrich(candidates, agencies, now)
        ranked.sort(key=lambda r: r.priority, reverse=True)
        clusters, points = cluster(ranked, zoom)
        logger.debug("Map zoom %d: %d clusters, %d points", zoom, len(clusters), len(points))
        return {"clusters": clusters, "points": points, "bbox": bbox.as_list(), "zoom": zoom}
