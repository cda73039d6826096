from __future__ import annotations

import math

from matcher.models import Location, OperatingArea

EARTH_RADIUS_KM = 6371.0


def haversine_km(origin: Location, point: Location) -> float:
    """Great-circle distance between two points, in kilometers."""
    lat1 = math.radians(origin.latitude)
    lat2 = math.radians(point.latitude)
    delta_lat = math.radians(point.latitude - origin.latitude)
    delta_lon = math.radians(point.longitude - origin.longitude)

    a = (
        math.sin(delta_lat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(delta_lon / 2) ** 2
    )
    if a > 1.0:
        # Rounding near antipodes can push a past 1.
        a = 1.0
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def within_radius(area: OperatingArea, point: Location) -> bool:
    # NaN coordinates yield a NaN distance, and NaN <= r is False.
    return haversine_km(area.center, point) <= area.radius_km
