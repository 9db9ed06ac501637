"""Geometry helpers for live tracking: interpolation, bearings, cheap distances."""

import math
from typing import NamedTuple

EARTH_RADIUS_M = 6_371_000
# Meters per degree of latitude (and of longitude at the equator)
M_PER_DEG = 111_320.0


class LatLng(NamedTuple):
    lat: float
    lng: float


def lerp(a: float, b: float, t: float) -> float:
    return a + (b - a) * t


def interpolate(a: LatLng, b: LatLng, t: float) -> LatLng:
    """Point a fraction `t` of the way from `a` to `b` (linear in degrees)."""
    return LatLng(lerp(a.lat, b.lat, t), lerp(a.lng, b.lng, t))


def bearing(a: LatLng, b: LatLng) -> float:
    """Initial great-circle bearing from a to b, degrees clockwise from north."""
    phi1 = math.radians(a.lat)
    phi2 = math.radians(b.lat)
    dlmb = math.radians(b.lng - a.lng)
    y = math.sin(dlmb) * math.cos(phi2)
    x = math.cos(phi1) * math.sin(phi2) - math.sin(phi1) * math.cos(phi2) * math.cos(dlmb)
    return (math.degrees(math.atan2(y, x)) + 360) % 360


def lerp_bearing(a: float, b: float, t: float) -> float:
    """Interpolate between two bearings along the shortest arc."""
    a %= 360
    b %= 360
    diff = b - a
    if diff > 180:
        diff -= 360
    elif diff < -180:
        diff += 360
    return (a + diff * t) % 360


def approx_sq_dist(a: LatLng, b: LatLng) -> float:
    """Squared planar distance in degrees. Only for comparisons and thresholds."""
    dlat = a.lat - b.lat
    dlng = a.lng - b.lng
    return dlat * dlat + dlng * dlng


def haversine_m(a: LatLng, b: LatLng) -> float:
    """Distance in meters between two lat/lng points."""
    dlat = math.radians(b.lat - a.lat)
    dlng = math.radians(b.lng - a.lng)
    h = (math.sin(dlat / 2) ** 2 +
         math.cos(math.radians(a.lat)) * math.cos(math.radians(b.lat)) *
         math.sin(dlng / 2) ** 2)
    return EARTH_RADIUS_M * 2 * math.asin(math.sqrt(h))


def is_valid_coordinate(lat: float | None, lng: float | None) -> bool:
    """False for missing, non-finite, zero or out-of-range coordinates."""
    if lat is None or lng is None:
        return False
    if not (math.isfinite(lat) and math.isfinite(lng)):
        return False
    if lat == 0 or lng == 0:
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def parse_latlng(raw: str) -> LatLng | None:
    """Parse a 'lat,lng' location string; None for anything else (e.g. an address)."""
    parts = raw.split(",")
    if len(parts) != 2:
        return None
    try:
        lat, lng = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    if not is_valid_coordinate(lat, lng):
        return None
    return LatLng(lat, lng)


def format_latlng(point: LatLng) -> str:
    return f"{point.lat:.6f},{point.lng:.6f}"


class LocalProjection:
    """Equirectangular projection to meters around a reference point.

    Accurate to well under a percent over the few tens of kilometers a
    single trip covers, which is all the route follower needs.
    """

    def __init__(self, origin: LatLng) -> None:
        self.origin = origin
        self._m_per_deg_lng = M_PER_DEG * math.cos(math.radians(origin.lat))

    def to_xy(self, point: LatLng) -> tuple[float, float]:
        return (
            (point.lng - self.origin.lng) * self._m_per_deg_lng,
            (point.lat - self.origin.lat) * M_PER_DEG,
        )

    def to_latlng(self, x: float, y: float) -> LatLng:
        return LatLng(
            self.origin.lat + y / M_PER_DEG,
            self.origin.lng + x / self._m_per_deg_lng,
        )
