"""
Pure radius geometry for the search map.

Unit conversion, zoom heuristics, handle placement, great-circle distance
and radius clamping.  No I/O.  Spherical-earth approximation (mean radius
6371 km); accuracy near the poles is not a goal.
"""

import math
from typing import List

from search_config import SEARCH_CONFIG
from search_types import GeoPoint

EARTH_RADIUS_KM = 6371.0
KM_PER_MILE = 1.60934

# (max radius km, zoom) steps, smallest radius first.
ZOOM_STEPS = (
    (5.0, 13),
    (10.0, 12),
    (25.0, 11),
    (50.0, 10),
    (100.0, 9),
)
ZOOM_FLOOR = 8


def km_to_miles(km: float) -> float:
    return km / KM_PER_MILE


def miles_to_km(miles: float) -> float:
    return miles * KM_PER_MILE


def zoom_for_radius(radius_km: float) -> int:
    """Map zoom that keeps the whole radius circle in view.

    Non-increasing in radius: a larger radius never yields a closer zoom.
    """
    for max_km, zoom in ZOOM_STEPS:
        if radius_km <= max_km:
            return zoom
    return ZOOM_FLOOR


def great_circle_distance_km(a: GeoPoint, b: GeoPoint) -> float:
    """Haversine distance between two points in kilometres."""
    if a == b:
        return 0.0
    lat1, lng1 = math.radians(a.lat), math.radians(a.lng)
    lat2, lng2 = math.radians(b.lat), math.radians(b.lng)

    dlat = lat2 - lat1
    dlng = lng2 - lng1

    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    # Rounding can push h a hair past 1 for antipodal points
    h = min(1.0, max(0.0, h))
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))


def point_at_bearing_distance(anchor: GeoPoint, bearing_deg: float, distance_km: float) -> GeoPoint:
    """Destination point travelling distance_km from anchor on an initial bearing."""
    delta = distance_km / EARTH_RADIUS_KM
    theta = math.radians(bearing_deg)
    lat1 = math.radians(anchor.lat)
    lng1 = math.radians(anchor.lng)

    sin_lat2 = math.sin(lat1) * math.cos(delta) + math.cos(lat1) * math.sin(delta) * math.cos(theta)
    sin_lat2 = min(1.0, max(-1.0, sin_lat2))
    lat2 = math.asin(sin_lat2)
    lng2 = lng1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(lat1),
        math.cos(delta) - math.sin(lat1) * sin_lat2,
    )

    lng_deg = (math.degrees(lng2) + 540.0) % 360.0 - 180.0
    return GeoPoint(math.degrees(lat2), lng_deg)


def clamp(radius_km: float, min_km: float, max_km: float) -> float:
    """Hard floor/ceiling. NaN collapses to the floor."""
    if math.isnan(radius_km):
        return min_km
    return max(min_km, min(max_km, radius_km))


def clamp_radius(radius_km: float) -> float:
    """Clamp to the configured search radius bounds."""
    bounds = SEARCH_CONFIG.radius
    return clamp(radius_km, bounds.min_km, bounds.max_km)


def circle_outline(anchor: GeoPoint, radius_km: float, segments: int = 72) -> List[GeoPoint]:
    """Closed ring of points approximating the radius circle."""
    step = 360.0 / segments
    ring = [point_at_bearing_distance(anchor, i * step, radius_km) for i in range(segments)]
    ring.append(ring[0])
    return ring


def km_per_pixel(lat: float, zoom: int) -> float:
    """Ground resolution of a web-mercator tile pixel at a latitude and zoom."""
    equator_km = 2 * math.pi * EARTH_RADIUS_KM
    return equator_km * math.cos(math.radians(lat)) / (256 * 2 ** zoom)
