"""
Proximity join: every successfully geocoded row against the site inventory.

Each (row, nearby site) pair becomes one flat record: the row's original
columns first, then the geocoding metadata, the distance, and the site's
columns under a Site_ prefix so they never collide with customer columns.
"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from proximity_geo.distance import nearby, round_meters
from proximity_geo.models import ResolvedRow, SiteRecord

logger = logging.getLogger(__name__)


def site_columns(site: SiteRecord) -> dict[str, Any]:
    return {
        "Site_ID": site.site_id,
        "Site_Region/Zone": site.region,
        "Site_Lat": site.latitude,
        "Site_Long": site.longitude,
        "Site_Admin_Region": site.admin_region,
        "Site_Zone/Sub_City": site.sub_city,
        "Site_Wereda": site.woreda,
        "Site_Town": site.town,
        "Site_Kebele": site.kebele,
        "Site_Tower_Type": site.tower_type,
        "Site_Power_Type": site.power_type,
        "Site_Tower_Location": site.tower_location,
        "Site_Vendor": site.vendor,
    }


def join_row(row: ResolvedRow, site: SiteRecord, distance_meters: float) -> dict[str, Any]:
    return {
        **row.original_columns,
        "Customer_API_Status": row.status.value,
        "Customer_Scraped_Lat": f"{row.latitude:.6f}",
        "Customer_Scraped_Long": f"{row.longitude:.6f}",
        "Customer_Scraped_Resolved_Name": row.resolved_label,
        "Match_Distance_m": round_meters(distance_meters),
        "Match_Distance_km": f"{distance_meters / 1000:.3f}",
        **site_columns(site),
    }


def join_nearby_sites(
    rows: Iterable[ResolvedRow],
    sites: Any,
    max_meters: float,
) -> list[dict[str, Any]]:
    """
    Flattened join of Success rows with every site within `max_meters`.
    Rows keep their input order; sites under one row are closest first.
    Rows with no site in range, that failed geocoding, or that carry no
    coordinates (0 or missing latitude/longitude) add nothing.
    """
    joined: list[dict[str, Any]] = []
    considered = 0
    no_coordinates = 0
    for row in rows:
        if not row.succeeded:
            continue
        if not row.latitude or not row.longitude:
            no_coordinates += 1
            continue
        considered += 1
        for site, distance in nearby((row.latitude, row.longitude), sites, max_meters):
            joined.append(join_row(row, site, distance))

    logger.info("Proximity join: %d rows within %.0fm of %d geocoded rows",
                len(joined), max_meters, considered)
    if no_coordinates:
        logger.warning("Proximity join: skipped %d Success rows without coordinates", no_coordinates)
    return joined
