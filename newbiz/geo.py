"""Geospatial helpers."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

EARTH_RADIUS_M = 6371000.0
METERS_PER_DEGREE = 111000.0


@dataclass(frozen=True)
class BoundingBox:
    min_lat: float
    max_lat: float
    min_lng: float
    max_lng: float

    def contains(self, lat: float, lng: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lng <= lng <= self.max_lng


def haversine_m(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lng2 - lng1)

    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c


def meters_to_lat_degrees(meters: float) -> float:
    return meters / METERS_PER_DEGREE


def meters_to_lng_degrees(meters: float, at_lat: float) -> float:
    cos_lat = math.cos(math.radians(at_lat))
    if abs(cos_lat) < 1e-3:
        cos_lat = 1e-3
    return meters / (METERS_PER_DEGREE * cos_lat)


def bounding_box(lat: float, lng: float, radius_m: float) -> BoundingBox:
    delta_lat = meters_to_lat_degrees(radius_m)
    delta_lng = meters_to_lng_degrees(radius_m, lat)
    return BoundingBox(
        min_lat=lat - delta_lat,
        max_lat=lat + delta_lat,
        min_lng=lng - delta_lng,
        max_lng=lng + delta_lng,
    )


def offset_point(lat: float, lng: float, north_m: float, east_m: float) -> Tuple[float, float]:
    """Shift a point by metric offsets using the flat degree approximation."""
    return lat + meters_to_lat_degrees(north_m), lng + meters_to_lng_degrees(east_m, lat)
