"""Shared fixtures: a small in-memory gazetteer, a site inventory and a scripted geocoder."""

from __future__ import annotations

import asyncio
from typing import Optional, Union

import pytest
import respx

from proximity_geo.config import FormatterConfig, GeocodingConfig, MatchingConfig
from proximity_geo.gazetteer import FuzzyResolver, GazetteerIndex
from proximity_geo.models import (
    GazetteerEntry,
    GeocodeFound,
    GeocodeNotFound,
    GeocodeOutcome,
    GeocodeTransientError,
    SiteRecord,
)
from proximity_geo.sites import SiteInventory

GAZETTEER = [
    GazetteerEntry("Bole", "Addis Ababa", "Addis Ababa"),
    GazetteerEntry("Kirkos", "Addis Ababa", "Addis Ababa"),
    GazetteerEntry("Mekelle", "Mekelle Special Zone", "Tigray"),
    GazetteerEntry("Jimma", "Jimma Zone", "Oromia"),
    GazetteerEntry("Adama", "East Shewa", "Oromia"),
    GazetteerEntry("Bahir Dar Zuria", "West Gojjam", "Amhara"),
    GazetteerEntry("Hawassa Zuria", "Sidama", "Sidama"),
]

MATCHING = MatchingConfig(
    score_threshold=0.4,
    field_threshold=0.3,
    min_match_length=3,
    name_weight=1.0,
    zone_weight=0.7,
    region_weight=0.5,
)


def make_site(site_id: str, lat: float, lon: float, **extra) -> SiteRecord:
    columns = {"Site ID": site_id, "Lat": str(lat), "Long": str(lon)}
    return SiteRecord(
        site_id=site_id,
        region=extra.pop("region", "CAAZ"),
        latitude=lat,
        longitude=lon,
        source_columns=columns,
        **extra,
    )


class ScriptedGeocoder:
    """
    Stand-in for BaseGeocoder. Each query maps to an outcome, an exception to
    raise, or nothing (defaults to a hit in central Addis Ababa). Optional
    per-query delays let tests force completion order.
    """

    source = "scripted"

    def __init__(
        self,
        outcomes: Optional[dict[str, Union[GeocodeOutcome, Exception]]] = None,
        delays: Optional[dict[str, float]] = None,
        online: bool = True,
    ):
        self.outcomes = outcomes or {}
        self.delays = delays or {}
        self.online = online
        self.calls: list[str] = []
        self.connectivity_checks = 0
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def geocode(self, name: str, zoom_hint: Optional[int] = None) -> GeocodeOutcome:
        self.calls.append(name)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delays.get(name, 0))
            outcome = self.outcomes.get(name)
            if isinstance(outcome, Exception):
                raise outcome
            if outcome is not None:
                return outcome
            return GeocodeFound(
                query=name,
                latitude=9.03,
                longitude=38.74,
                resolved_label=f"{name}, Ethiopia",
                zoom=zoom_hint if zoom_hint is not None else 8,
                source_url="https://www.openstreetmap.org/?mlat=9.030000&mlon=38.740000",
                source=self.source,
            )
        finally:
            self.in_flight -= 1

    async def check_connectivity(self) -> bool:
        self.connectivity_checks += 1
        return self.online

    async def aclose(self) -> None:
        self.closed = True


def not_found(query: str) -> GeocodeNotFound:
    return GeocodeNotFound(query=query, source="scripted")


def transient(query: str, message: str = "Geocoding timed out after 30s", connection_failure: bool = False):
    return GeocodeTransientError(query=query, message=message, connection_failure=connection_failure)


@pytest.fixture
def gazetteer_index() -> GazetteerIndex:
    return GazetteerIndex.build(GAZETTEER, MATCHING)


@pytest.fixture
def resolver(gazetteer_index) -> FuzzyResolver:
    return FuzzyResolver(gazetteer_index, MATCHING)


@pytest.fixture
def inventory() -> SiteInventory:
    return SiteInventory([
        make_site("1001", 9.03, 38.74, town="Addis Ababa", vendor="Huawei"),
        make_site("1002", 9.03, 38.75, town="Addis Ababa", vendor="ZTE"),
        make_site("3001", 13.4967, 39.4753, region="NR", town="Mekelle"),
    ])


@pytest.fixture
def geocoding_config() -> GeocodingConfig:
    return GeocodingConfig(
        provider="nominatim",
        nominatim_url="https://nominatim.test",
        nominatim_user_agent="proximity-geo-tests",
        google_url="https://maps.test/geocode/json",
        google_api_key="test-key",
        country_codes="et",
        rate_limit_rps=0,
        timeout_seconds=5,
        default_zoom=8,
    )


@pytest.fixture
def mock_nominatim():
    """respx mock transport for the Nominatim test host."""
    with respx.mock(base_url="https://nominatim.test", assert_all_called=False) as mock:
        yield mock


@pytest.fixture
def mock_google():
    with respx.mock(base_url="https://maps.test", assert_all_called=False) as mock:
        yield mock


@pytest.fixture
def formatter_config() -> FormatterConfig:
    return FormatterConfig(
        url="http://formatter.test/api/generate",
        model="test-model",
        timeout_seconds=5,
        country="Ethiopia",
    )


@pytest.fixture
def mock_formatter():
    with respx.mock(base_url="http://formatter.test", assert_all_called=False) as mock:
        yield mock
