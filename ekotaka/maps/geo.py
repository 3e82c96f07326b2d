"""Great-circle helpers. Coordinates are [lng, lat] pairs throughout."""

import math
from typing import Sequence

EARTH_RADIUS_M = 6371000.0


def haversine_m(a: Sequence[float], b: Sequence[float]) -> float:
    """Distance in metres between two [lng, lat] points."""
    lng1, lat1 = a[0], a[1]
    lng2, lat2 = b[0], b[1]
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    h = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return 2 * EARTH_RADIUS_M * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def bounding_box(center: Sequence[float], radius_m: float) -> tuple[float, float, float, float]:
    """(min_lng, min_lat, max_lng, max_lat) enclosing a circle; used to prefilter in SQL."""
    lng, lat = center[0], center[1]
    d_lat = math.degrees(radius_m / EARTH_RADIUS_M)
    cos_lat = max(math.cos(math.radians(lat)), 1e-6)
    d_lng = math.degrees(radius_m / (EARTH_RADIUS_M * cos_lat))
    return lng - d_lng, lat - d_lat, lng + d_lng, lat + d_lat


def valid_coordinates(value) -> bool:
    """True for a [lng, lat] pair within world bounds."""
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return False
    try:
        lng, lat = float(value[0]), float(value[1])
    except (TypeError, ValueError):
        return False
    return -180.0 <= lng <= 180.0 and -90.0 <= lat <= 90.0
