"""
Default distance collaborator.

The core only needs ``distance(a, b) -> float``; callers can inject a road
distance from a routing provider instead of this great-circle estimate.
"""

import math
from typing import Callable

from dispatch.models.domain import GeoPoint

DistanceFn = Callable[[GeoPoint, GeoPoint], float]

EARTH_RADIUS_KM = 6371.0


def haversine_km(a: GeoPoint, b: GeoPoint) -> float:
    """Great-circle distance between two points in kilometres."""
    lat1, lat2 = math.radians(a.lat), math.radians(b.lat)
    dlat = lat2 - lat1
    dlng = math.radians(b.lng - a.lng)
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(h))
