import math
from collections.abc import Iterable, Mapping
from typing import Any, TypeVar

EARTH_RADIUS_KM = 6371.0

P = TypeVar("P")


def haversine_distance_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lon / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def _coordinates(point: Any) -> tuple[float, float] | None:
    if isinstance(point, Mapping):
        lat, lng = point.get("lat"), point.get("lng")
    else:
        lat, lng = getattr(point, "lat", None), getattr(point, "lng", None)
    if lat is None or lng is None:
        return None
    return float(lat), float(lng)


def filter_by_radius(points: Iterable[P], center_lat: float, center_lng: float, max_km: float) -> list[P]:
    """Points within ``max_km`` of the center, in input order; points without coordinates are dropped."""
    selected = []
    for point in points:
        coords = _coordinates(point)
        if coords is None:
            continue
        if haversine_distance_km(center_lat, center_lng, *coords) <= max_km:
            selected.append(point)
    return selected
