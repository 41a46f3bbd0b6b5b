from __future__ import annotations

import hashlib
import math
import random
from dataclasses import dataclass
from typing import Optional, Tuple

from reno_market.errors import ValidationError
from reno_market.models import GeoPoint, Listing

EARTH_RADIUS_KM = 6371.0088
METERS_PER_DEGREE = 111_000.0
APPROX_MIN_METERS = 150.0
APPROX_MAX_METERS = 400.0
# covers the largest displacement when selecting by area
APPROX_PAD_KM = 0.5


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two points in kilometres."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2 - lat1
    dlng = math.radians(b.lng - a.lng)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(min(1.0, math.sqrt(h)))


@dataclass(frozen=True)
class BoundingBox:
    west: float
    south: float
    east: float
    north: float

    def __post_init__(self) -> None:
        if any(math.isnan(v) for v in (self.west, self.south, self.east, self.north)):
            raise ValidationError("Invalid bbox: coordinates must be numbers")
        if self.west >= self.east or self.south >= self.north:
            raise ValidationError("Invalid bbox: expected west < east and south < north")

    @classmethod
    def parse(cls, raw: Optional[str]) -> "BoundingBox":
        """Parse ``"west,south,east,north"``."""
        if not raw:
            raise ValidationError("bbox parameter is required (west,south,east,north)")
        parts = [p.strip() for p in raw.split(",")]
        if len(parts) != 4:
            raise ValidationError("Invalid bbox format. Expected: west,south,east,north")
        try:
            west, south, east, north = (float(p) for p in parts)
        except ValueError:
            raise ValidationError("Invalid bbox format. Expected: west,south,east,north") from None
        return cls(west, south, east, north)

    @classmethod
    def around(cls, center: GeoPoint, radius_km: float) -> "BoundingBox":
        """Smallest lat/lng box containing the circle; used to prefilter radius search."""
        dlat = radius_km / (METERS_PER_DEGREE / 1000.0)
        cos_lat = max(math.cos(math.radians(center.lat)), 1e-6)
        dlng = dlat / cos_lat
        return cls(
            max(-180.0, center.lng - dlng),
            max(-90.0, center.lat - dlat),
            min(180.0, center.lng + dlng),
            min(90.0, center.lat + dlat),
        )

    def padded(self, km: float) -> "BoundingBox":
        dlat = km / (METERS_PER_DEGREE / 1000.0)
        widest = max(abs(self.south), abs(self.north))
        dlng = dlat / max(math.cos(math.radians(widest)), 1e-6)
        return BoundingBox(
            max(-180.0, self.west - dlng),
            max(-90.0, self.south - dlat),
            min(180.0, self.east + dlng),
            min(90.0, self.north + dlat),
        )

    def contains(self, point: GeoPoint) -> bool:
        return self.west <= point.lng <= self.east and self.south <= point.lat <= self.north

    def as_list(self) -> list:
        return [self.west, self.south, self.east, self.north]


def _offset_rng(listing_id: str, secret: str) -> random.Random:
    digest = hashlib.sha256(f"{secret}:{listing_id}".encode("utf-8")).digest()
    return random.Random(int.from_bytes(digest[:8], "big"))


def obfuscate(point: GeoPoint, listing_id: str, secret: str) -> GeoPoint:
    """Displace ``point`` by 150-400 m along a bearing derived from the listing id.

    The same listing always lands on the same displaced position, and the
    offset can't be undone without ``secret``.
    """
    rng = _offset_rng(listing_id, secret)
    radius_deg = rng.uniform(APPROX_MIN_METERS, APPROX_MAX_METERS) / METERS_PER_DEGREE
    bearing = rng.uniform(0.0, 2 * math.pi)
    lat_offset = radius_deg * math.cos(bearing)
    lng_offset = radius_deg * math.sin(bearing) / max(math.cos(math.radians(point.lat)), 1e-6)
    return GeoPoint(
        lat=max(-90.0, min(90.0, point.lat + lat_offset)),
        lng=max(-180.0, min(180.0, point.lng + lng_offset)),
    )


def public_point(listing: Listing, secret: str) -> Optional[GeoPoint]:
    """The only coordinate of a listing that may leave the core."""
    point = listing.location.point
    if point is None:
        return None
    if listing.location.precision == "approx":
        return obfuscate(point, listing.id, secret)
    return point


def lng_lat(point: GeoPoint) -> Tuple[float, float]:
    return (point.lng, point.lat)


def masked(listing: Listing, secret: str) -> Listing:
    """Copy of ``listing`` carrying its public point instead of the true one."""
    if listing.location.precision != "approx" or listing.location.point is None:
        return listing
    location = listing.location.model_copy(update={"point": public_point(listing, secret)})
    return listing.model_copy(update={"location": location})
