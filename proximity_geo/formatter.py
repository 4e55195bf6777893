"""
Optional pre-geocode step: ask a local LLM (Ollama-style /api/generate) to
expand raw complaint areas into "Area, City/Zone, Region, Country" search
strings. If the model answers with something that is not a usable JSON
array, every area falls back to "<area>, <country>".
"""

from __future__ import annotations

import json
import logging
from typing import Optional

import httpx
from pydantic import TypeAdapter, ValidationError

from proximity_geo.config import FormatterConfig, get_settings
from proximity_geo.models import FormattedLocation

logger = logging.getLogger(__name__)

_FORMATTED_LIST = TypeAdapter(list[FormattedLocation])


class FormatterUnavailableError(Exception):
    """The formatting model could not be reached or returned an HTTP error."""


def build_prompt(areas: list[str], country: str = "Ethiopia") -> str:
    listing = "\n".join(f"- {area}" for area in areas)
    return (
        f"Format these {country} area names for a map search:\n\n"
        f"Areas to format:\n{listing}\n\n"
        f'Format each area as: "Specific Area, City/Zone, Region, {country}"\n'
        f'For Addis Ababa areas: "Area Name, Addis Ababa, {country}"\n\n'
        'Return ONLY a JSON array where each object has "original" and "formatted" fields.'
    )


def fallback_format(areas: list[str], country: str = "Ethiopia") -> list[FormattedLocation]:
    return [FormattedLocation(original=area, formatted=f"{area}, {country}") for area in areas]


def parse_formatted(text: str, areas: list[str], country: str = "Ethiopia") -> list[FormattedLocation]:
    """Pull the first [...] block out of the model reply, else fall back."""
    start = (text or "").find("[")
    end = (text or "").rfind("]")
    if start == -1 or end <= start:
        logger.warning("Formatter reply had no JSON array, using fallback for %d areas", len(areas))
        return fallback_format(areas, country)
    try:
        return _FORMATTED_LIST.validate_python(json.loads(text[start:end + 1]))
    except (json.JSONDecodeError, ValidationError) as e:
        logger.warning("Formatter reply was not usable (%s), using fallback", e.__class__.__name__)
        return fallback_format(areas, country)


class LocationFormatter:
    """Thin httpx client for the formatting model. Close with aclose() or `async with`."""

    def __init__(
        self,
        settings: Optional[FormatterConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings or get_settings().formatter
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=self.settings.timeout_seconds)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def format_areas(self, areas: list[str]) -> list[FormattedLocation]:
        if not areas:
            return []
        payload = {
            "model": self.settings.model,
            "prompt": build_prompt(areas, self.settings.country),
            "stream": False,
        }
        try:
            resp = await self._client.post(self.settings.url, json=payload)
            resp.raise_for_status()
            reply = resp.json().get("response", "")
        except httpx.HTTPStatusError as e:
            raise FormatterUnavailableError(f"Formatter error: HTTP {e.response.status_code}") from e
        except httpx.RequestError as e:
            raise FormatterUnavailableError(f"Formatter unreachable: {e.__class__.__name__}") from e
        except (ValueError, AttributeError) as e:
            raise FormatterUnavailableError("Formatter returned a malformed body") from e

        return parse_formatted(reply, areas, self.settings.country)
