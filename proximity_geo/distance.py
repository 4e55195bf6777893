"""
Great-circle distance and threshold filtering against the site inventory.

Distances use the haversine formula on a sphere with the WGS84 equatorial
radius, vectorized with numpy so one origin is compared against the whole
inventory in a single pass.
"""

from __future__ import annotations

import math
from typing import Any, Sequence, Union

import numpy as np

from proximity_geo.models import InputValidationError, SiteRecord

EARTH_RADIUS_M = 6_378_137.0

_UNIT_FACTORS = {
    "meters": 1.0,
    "meter": 1.0,
    "m": 1.0,
    "km": 1000.0,
    "kilometers": 1000.0,
}

Coordinate = tuple[float, float]  # (latitude, longitude) in degrees


def haversine_meters(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in meters between two (lat, lon) points."""
    lat1, lon1 = map(math.radians, a)
    lat2, lon2 = map(math.radians, b)
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(min(1.0, h)))


def round_meters(distance: float) -> int:
    """Whole meters, halves rounded up (2.5 -> 3)."""
    return int(math.floor(distance + 0.5))


def haversine_many(origin: Coordinate, lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    """Distances in meters from `origin` to each (lats[i], lons[i])."""
    lat1 = math.radians(origin[0])
    lon1 = math.radians(origin[1])
    lat2 = np.radians(lats)
    lon2 = np.radians(lons)
    h = np.sin((lat2 - lat1) / 2) ** 2 + math.cos(lat1) * np.cos(lat2) * np.sin((lon2 - lon1) / 2) ** 2
    return 2 * EARTH_RADIUS_M * np.arcsin(np.sqrt(np.minimum(1.0, h)))


def to_meters(value: Any, unit: str) -> float:
    """
    Normalize a caller-supplied threshold to meters.
    Accepts numbers or numeric strings; unit is "meters"/"m" or "km".
    """
    factor = _UNIT_FACTORS.get(str(unit).strip().lower()) if unit is not None else None
    if factor is None:
        raise InputValidationError(f"Invalid distance unit {unit!r}; expected 'meters' or 'km'.")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InputValidationError(f"Invalid distance value {value!r}.") from None
    if not math.isfinite(number) or number <= 0:
        raise InputValidationError("Distance value must be a positive number.")
    return number * factor


def _coordinate_arrays(sites: Any) -> tuple[np.ndarray, np.ndarray]:
    # SiteInventory keeps prebuilt arrays; plain sequences are converted here
    lats = getattr(sites, "latitudes", None)
    lons = getattr(sites, "longitudes", None)
    if lats is not None and lons is not None:
        return lats, lons
    lats = np.fromiter((s.latitude for s in sites), dtype=np.float64, count=len(sites))
    lons = np.fromiter((s.longitude for s in sites), dtype=np.float64, count=len(sites))
    return lats, lons


def nearby(
    origin: Coordinate,
    sites: Union[Sequence[SiteRecord], Any],
    max_meters: float,
) -> list[tuple[SiteRecord, float]]:
    """
    Every site within `max_meters` of `origin`, closest first.
    Ties keep the order of `sites`.
    """
    if len(sites) == 0:
        return []
    lats, lons = _coordinate_arrays(sites)
    distances = haversine_many(origin, lats, lons)
    within = np.flatnonzero(distances <= max_meters)
    ordered = within[np.argsort(distances[within], kind="stable")]
    return [(sites[i], float(distances[i])) for i in ordered]
