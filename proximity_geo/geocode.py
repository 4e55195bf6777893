"""
Geocoding client with rate limiting, a hard per-call timeout, and error
normalization.

Every call returns one of:
  - GeocodeFound          coordinates + resolved label + map link
  - GeocodeNotFound       the provider answered but had no usable result
  - GeocodeTransientError timeout, network failure, throttling, bad reply

Exactly one provider request per call: callers decide what to do with a
failure, nothing here retries.

Supports Nominatim (free, rate-limited) and Google Geocoding API.
"""

from __future__ import annotations

import asyncio
import logging
import re
from typing import Optional

import httpx

from proximity_geo.config import GeocodingConfig, get_settings
from proximity_geo.models import (
    GeocodeFound,
    GeocodeNotFound,
    GeocodeOutcome,
    GeocodeTransientError,
)

logger = logging.getLogger(__name__)

MIN_ZOOM = 0
MAX_ZOOM = 21


def normalize_place_query(name: str) -> str:
    """Trim and collapse whitespace; the provider handles case."""
    return re.sub(r"\s+", " ", (name or "").strip())


def clamp_zoom(zoom: Optional[int], default: int) -> int:
    if zoom is None:
        zoom = default
    return max(MIN_ZOOM, min(MAX_ZOOM, int(zoom)))


# ── Rate Limiter ───────────────────────────────────────────────────────

class RateLimiter:
    """Spaces calls at least 1/rate seconds apart across all callers."""

    def __init__(self, rate_per_second: float = 1.0):
        self._rate = rate_per_second
        self._interval = 1.0 / rate_per_second if rate_per_second > 0 else 0.0
        self._lock = asyncio.Lock()
        self._last_call = 0.0

    async def acquire(self):
        if self._interval <= 0:
            return
        async with self._lock:
            loop = asyncio.get_running_loop()
            elapsed = loop.time() - self._last_call
            if elapsed < self._interval:
                await asyncio.sleep(self._interval - elapsed)
            self._last_call = loop.time()


# ── Geocoder Implementations ──────────────────────────────────────────

class BaseGeocoder:
    """
    Shared timeout/error handling. Subclasses implement _lookup() and may
    raise httpx errors freely; geocode() turns them into result objects.

    One httpx.AsyncClient (and its connection pool) is shared by all
    concurrent calls; close it with aclose() or `async with`.
    """

    source = "base"

    def __init__(
        self,
        settings: Optional[GeocodingConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings().geocoding
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.settings.timeout_seconds)
        self.rate_limiter = RateLimiter(self.settings.rate_limit_rps)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def status_url(self) -> str:
        raise NotImplementedError

    async def _lookup(self, query: str, zoom: int) -> GeocodeOutcome:
        raise NotImplementedError

    async def geocode(self, name: str, zoom_hint: Optional[int] = None) -> GeocodeOutcome:
        """Resolve `name` to coordinates. Never raises for provider failures."""
        query = normalize_place_query(name)
        if not query:
            return GeocodeNotFound(query=query, source=self.source)

        zoom = clamp_zoom(zoom_hint, self.settings.default_zoom)
        timeout = self.settings.timeout_seconds

        # The timeout covers the provider round trip, not the wait for a slot
        await self.rate_limiter.acquire()
        try:
            return await asyncio.wait_for(self._lookup(query, zoom), timeout=timeout)

        except asyncio.TimeoutError:
            logger.warning("%s: timed out after %.0fs for '%s'", self.source, timeout, query)
            return GeocodeTransientError(query=query, message=f"Geocoding timed out after {timeout:.0f}s")

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning("%s HTTP %d for '%s'", self.source, status, query)
            message = "Geocoder rate limited" if status == 429 else f"Geocoder returned HTTP {status}"
            return GeocodeTransientError(query=query, message=message)

        except httpx.RequestError as e:
            logger.warning("%s request error for '%s': %s", self.source, query, e)
            return GeocodeTransientError(
                query=query,
                message=f"Network error: {e.__class__.__name__}",
                connection_failure=isinstance(e, (httpx.ConnectError, httpx.NetworkError)),
            )

        except (KeyError, IndexError, TypeError, ValueError) as e:
            logger.error("%s: malformed response for '%s': %s", self.source, query, e)
            return GeocodeTransientError(query=query, message="Malformed geocoder response")

    async def check_connectivity(self) -> bool:
        """True if the provider host answers at all (any HTTP status)."""
        try:
            await self._client.get(self.status_url, timeout=min(10.0, self.settings.timeout_seconds))
            return True
        except httpx.RequestError as e:
            logger.warning("%s unreachable: %s", self.source, e)
            return False


class NominatimGeocoder(BaseGeocoder):
    """Geocode using OpenStreetMap Nominatim (free, 1 req/sec limit)."""

    source = "nominatim"

    @property
    def status_url(self) -> str:
        return f"{self.settings.nominatim_url}/status"

    @staticmethod
    def map_url(latitude: float, longitude: float, zoom: int) -> str:
        return (f"https://www.openstreetmap.org/?mlat={latitude:.6f}&mlon={longitude:.6f}"
                f"#map={zoom}/{latitude:.6f}/{longitude:.6f}")

    async def _lookup(self, query: str, zoom: int) -> GeocodeOutcome:
        params = {
            "q": query,
            "format": "jsonv2",
            "limit": 1,
        }
        if self.settings.country_codes:
            params["countrycodes"] = self.settings.country_codes

        resp = await self._client.get(
            f"{self.settings.nominatim_url}/search",
            params=params,
            headers={"User-Agent": self.settings.nominatim_user_agent},
        )
        resp.raise_for_status()
        results = resp.json()

        if not results:
            logger.debug("Nominatim: no results for '%s'", query)
            return GeocodeNotFound(query=query, source=self.source)

        top = results[0]
        lat = float(top["lat"])
        lon = float(top["lon"])
        return GeocodeFound(
            query=query,
            latitude=lat,
            longitude=lon,
            resolved_label=top.get("display_name") or query,
            zoom=zoom,
            source_url=self.map_url(lat, lon, zoom),
            source=self.source,
        )


class GoogleGeocoder(BaseGeocoder):
    """Geocode using Google Maps Geocoding API (paid, high rate limits)."""

    source = "google"

    @property
    def status_url(self) -> str:
        return self.settings.google_url

    @staticmethod
    def map_url(latitude: float, longitude: float, zoom: int) -> str:
        return f"https://www.google.com/maps/place/{latitude},{longitude}/@{latitude},{longitude},{zoom}z"

    async def _lookup(self, query: str, zoom: int) -> GeocodeOutcome:
        if not self.settings.google_api_key:
            logger.error("Google Geocoding API key not configured")
            return GeocodeTransientError(query=query, message="Google Geocoding API key not configured")

        params = {"address": query, "key": self.settings.google_api_key}
        if self.settings.country_codes:
            codes = self.settings.country_codes.split(",")
            params["components"] = "|".join(f"country:{c.strip().upper()}" for c in codes if c.strip())

        resp = await self._client.get(self.settings.google_url, params=params)
        resp.raise_for_status()
        data = resp.json()

        status = data.get("status")
        if status == "ZERO_RESULTS" or (status == "OK" and not data.get("results")):
            logger.debug("Google Geocoding: no results for '%s'", query)
            return GeocodeNotFound(query=query, source=self.source)
        if status != "OK":
            return GeocodeTransientError(query=query, message=f"Google Geocoding status {status}")

        top = data["results"][0]
        loc = top["geometry"]["location"]
        lat = float(loc["lat"])
        lon = float(loc["lng"])
        return GeocodeFound(
            query=query,
            latitude=lat,
            longitude=lon,
            resolved_label=top.get("formatted_address") or query,
            zoom=zoom,
            source_url=self.map_url(lat, lon, zoom),
            source=self.source,
        )


def get_geocoder(settings: Optional[GeocodingConfig] = None) -> BaseGeocoder:
    """Factory: return the configured geocoder instance."""
    settings = settings or get_settings().geocoding
    if settings.provider == "google":
        return GoogleGeocoder(settings)
    return NominatimGeocoder(settings)
