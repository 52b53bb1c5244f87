from __future__ import annotations

from math import asin, cos, radians, sin, sqrt
from typing import Any, Mapping

from attendance_core.services.settings_cache import GeoFence

EARTH_RADIUS_M = 6371000.0


def distance_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = radians(lat1), radians(lat2)
    d_phi = phi2 - phi1
    d_lambda = radians(lon2) - radians(lon1)
    h = sin(d_phi / 2) ** 2 + cos(phi1) * cos(phi2) * sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_M * asin(sqrt(h))


def extract_point(location: Mapping[str, Any] | None) -> tuple[float, float] | None:
    if not isinstance(location, Mapping):
        return None
    lat = location.get("lat", location.get("latitude"))
    lng = location.get("lng", location.get("lon", location.get("longitude")))
    try:
        return float(lat), float(lng)
    except (TypeError, ValueError):
        return None


def evaluate_geo_fence(
    fence: GeoFence,
    location: Mapping[str, Any] | None,
) -> tuple[bool, dict[str, float | str]]:
    point = extract_point(location)
    if point is None:
        return False, {"reason": "no_location_payload"}

    distance_value = distance_m(fence.lat, fence.lng, point[0], point[1])
    flags: dict[str, float | str] = {
        "distance_m": round(distance_value, 2),
        "radius_m": fence.radius_meters,
    }
    return distance_value <= fence.radius_meters, flags
