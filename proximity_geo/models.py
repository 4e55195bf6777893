"""
Data objects used across the pipeline for validation and serialization.

Reference records (gazetteer entries, sites) are frozen dataclasses loaded once
at start-up. Everything that crosses the HTTP boundary is a Pydantic model with
camelCase aliases on the wire.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


# ── Errors ─────────────────────────────────────────────────────────────

class ProximityGeoError(Exception):
    """Base class for errors that abort a whole request."""


class InputValidationError(ProximityGeoError):
    """Malformed or missing caller input. Maps to HTTP 400, never retried."""


class FatalConfigurationError(ProximityGeoError):
    """A reference dataset is missing or unparsable; refuse to serve."""


# ── Reference records ─────────────────────────────────────────────────

@dataclass(frozen=True)
class GazetteerEntry:
    name: str           # woreda / town
    zone_name: str      # sub-city / zone
    region_name: str    # region / city administration


@dataclass(frozen=True)
class MatchResult:
    entry: GazetteerEntry
    score: float        # 0 = exact, lower is better


@dataclass(frozen=True)
class SiteRecord:
    site_id: Any
    region: str
    latitude: float
    longitude: float
    admin_region: str = ""
    sub_city: str = ""
    woreda: str = ""
    town: str = ""
    kebele: str = ""
    tower_type: str = ""
    power_type: str = ""
    tower_location: str = ""
    vendor: str = ""
    # The full source row, keyed by its original headers
    source_columns: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


# ── Enums ──────────────────────────────────────────────────────────────

class ResolveStatus(str, Enum):
    SUCCESS = "Success"
    ERROR = "Error"


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ── Pipeline rows ─────────────────────────────────────────────────────

class InputRow(_WireModel):
    """One uploaded record: the place text plus every original column."""
    place_name: str = ""
    original_columns: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("originalColumns", "original_columns", "originalData"),
    )


class ResolvedRow(_WireModel):
    """Outcome of resolve + geocode for one input row. Never mutated."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    original_columns: dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("originalColumns", "original_columns", "originalData"),
    )
    place_name: str = Field(
        "", validation_alias=AliasChoices("placeName", "place_name", "inputPlace"),
    )
    fuzzy_match: Optional[MatchResult] = None
    query_used: str = ""
    status: ResolveStatus
    latitude: float = 0.0
    longitude: float = 0.0
    zoom: int = 0
    resolved_label: str = Field(
        "N/A", validation_alias=AliasChoices("resolvedLabel", "resolved_label", "positionName"),
    )
    source_url: str = "N/A"
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == ResolveStatus.SUCCESS


# ── Geocoding outcomes ────────────────────────────────────────────────

class GeocodeFound(BaseModel):
    query: str
    latitude: float
    longitude: float
    resolved_label: str
    zoom: int
    source_url: str
    source: str = "nominatim"


class GeocodeNotFound(BaseModel):
    query: str
    source: str = "nominatim"


class GeocodeTransientError(BaseModel):
    query: str
    message: str
    # True when the failure looked like a network outage rather than a bad reply
    connection_failure: bool = False


GeocodeOutcome = Union[GeocodeFound, GeocodeNotFound, GeocodeTransientError]


# ── Batch progress ────────────────────────────────────────────────────

class ProgressEvent(_WireModel):
    index: int              # 1-based completion count
    total: int
    row: ResolvedRow
    position: int           # 0-based index of the row in the upload


class BatchFinished(_WireModel):
    finished: bool = True
    processed: int
    total: int
    succeeded: int
    failed: int
    stopped_early: bool = False
    download_url: Optional[str] = None
    message: Optional[str] = None


class BatchResult(_WireModel):
    # None only for rows never started because the batch stopped early
    rows: list[Optional[ResolvedRow]]
    stopped_early: bool = False
    download_url: Optional[str] = None

    @property
    def completed(self) -> list[ResolvedRow]:
        return [r for r in self.rows if r is not None]

    @property
    def succeeded(self) -> list[ResolvedRow]:
        return [r for r in self.rows if r is not None and r.succeeded]


# ── API request models ────────────────────────────────────────────────

class NearbyRequest(_WireModel):
    latitude: float
    longitude: float
    max_distance_meters: float


class BatchProximityRequest(_WireModel):
    customer_data: list[ResolvedRow]
    max_distance_value: Union[float, str]
    max_distance_unit: str = "meters"


class ProcessLocationsRequest(_WireModel):
    rows: list[InputRow]
    zoom: Optional[int] = None


class FormatLocationsRequest(_WireModel):
    areas: list[str]


# ── API response models ───────────────────────────────────────────────

class CoordinatesResponse(_WireModel):
    input_place: str
    latitude: float
    longitude: float
    zoom: int
    resolved_label: str
    source_url: str


class QueryCoordinates(_WireModel):
    latitude: float
    longitude: float


class NearbyResponse(_WireModel):
    nearby_sites: list[dict[str, Any]]
    query_coordinates: QueryCoordinates
    max_distance: str


class FormattedLocation(_WireModel):
    original: str
    formatted: str


class FormatLocationsResponse(_WireModel):
    success: bool
    original_count: int = 0
    formatted_count: int = 0
    data: list[FormattedLocation] = Field(default_factory=list)
    processing_time: Optional[int] = None  # milliseconds
    error: Optional[str] = None


class HealthResponse(_WireModel):
    status: str = "ok"
    gazetteer_entries: int = 0
    sites: int = 0
    geocoder: str = ""
    batch_workers: int = 0
