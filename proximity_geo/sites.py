"""
Site inventory: the fixed list of infrastructure sites joined against
geocoded complaints. Loaded once from the reference spreadsheet.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, Iterator, Optional

import numpy as np

from proximity_geo.distance import Coordinate, nearby
from proximity_geo.models import FatalConfigurationError, SiteRecord
from proximity_geo.rows import read_table

logger = logging.getLogger(__name__)

# Field -> accepted source headers, first present wins
SITE_COLUMNS: dict[str, tuple[str, ...]] = {
    "site_id": ("Site ID", "Site_ID", "SiteID", "site_id"),
    "region": ("Region/ Zone", "Region/Zone", "Region", "region"),
    "latitude": ("Lat", "lat", "Latitude", "latitude"),
    "longitude": ("Long", "long", "Longitude", "longitude", "Lon", "lon"),
    "admin_region": ("Admin Region",),
    "sub_city": ("Zone (Sub City)", "Sub City"),
    "woreda": ("Wereda", "Woreda"),
    "town": ("Town",),
    "kebele": ("Kebele",),
    "tower_type": ("Tower type", "Tower Type"),
    "power_type": ("Power type", "Power Type"),
    "tower_location": ("Tower location", "Tower Location"),
    "vendor": ("Vendor",),
}


def _pick(row: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        if key in row:
            return row[key]
    return None


def _parse_coordinate(value: Any) -> Optional[float]:
    try:
        number = float(str(value).strip())
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def site_from_row(row: dict[str, Any]) -> Optional[SiteRecord]:
    """Build a SiteRecord, or None when the coordinates are unusable."""
    lat = _parse_coordinate(_pick(row, SITE_COLUMNS["latitude"]))
    lon = _parse_coordinate(_pick(row, SITE_COLUMNS["longitude"]))
    if lat is None or lon is None or not (-90 <= lat <= 90) or not (-180 <= lon <= 180):
        return None

    text = {
        name: str(_pick(row, keys) or "").strip()
        for name, keys in SITE_COLUMNS.items()
        if name not in ("site_id", "latitude", "longitude")
    }
    return SiteRecord(
        site_id=_pick(row, SITE_COLUMNS["site_id"]),
        latitude=lat,
        longitude=lon,
        source_columns=dict(row),
        **text,
    )


class SiteInventory:
    """Immutable site list with coordinate arrays prebuilt for distance scans."""

    def __init__(self, sites: list[SiteRecord]):
        self._sites: tuple[SiteRecord, ...] = tuple(sites)
        self.latitudes = np.fromiter((s.latitude for s in self._sites), dtype=np.float64, count=len(self._sites))
        self.longitudes = np.fromiter((s.longitude for s in self._sites), dtype=np.float64, count=len(self._sites))
        self.latitudes.setflags(write=False)
        self.longitudes.setflags(write=False)

    def __len__(self) -> int:
        return len(self._sites)

    def __getitem__(self, idx: int) -> SiteRecord:
        return self._sites[idx]

    def __iter__(self) -> Iterator[SiteRecord]:
        return iter(self._sites)

    def nearby(self, origin: Coordinate, max_meters: float) -> list[tuple[SiteRecord, float]]:
        return nearby(origin, self, max_meters)


def load_site_inventory(path: str | Path) -> SiteInventory:
    """
    Read the site spreadsheet (.xlsx or .csv).
    Rows without finite coordinates are dropped; a missing, unreadable or
    empty file is fatal.
    """
    path = Path(path)
    if not path.exists():
        raise FatalConfigurationError(f"Site information file not found: {path}")

    try:
        records = read_table(path.name, path.read_bytes())
    except Exception as e:
        raise FatalConfigurationError(f"Failed to read or parse site file {path}: {e}") from e

    sites: list[SiteRecord] = []
    dropped = 0
    for row in records:
        site = site_from_row(row)
        if site is None:
            dropped += 1
            continue
        sites.append(site)

    if dropped:
        logger.warning("Dropped %d site rows without valid coordinates from %s", dropped, path)
    if not sites:
        raise FatalConfigurationError(f"Site file {path} contains no rows with valid coordinates")

    logger.info("Loaded %d sites from %s", len(sites), path)
    return SiteInventory(sites)
