"""
FastAPI service for complaint-location resolution and site proximity.

Endpoints:
  POST /api/search                   - Fuzzy-resolve one place name (plain text line)
  GET  /api/coordinates              - Geocode one place name
  POST /api/nearby                   - Sites within N meters of a coordinate
  POST /api/batch-proximity          - Join geocoded rows against the site inventory
  POST /api/process-locations        - Resolve + geocode a JSON batch of rows
  POST /api/process-locations/stream - Same for an uploaded sheet, as server-sent events
  POST /api/format-locations         - Expand raw area names into map-search strings
  GET  /downloads/{filename}         - Exported batch results
  GET  /health                       - Reference data and geocoder status
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, FastAPI, File, Form, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import ValidationError

from proximity_geo.config import get_settings
from proximity_geo.distance import round_meters, to_meters
from proximity_geo.formatter import FormatterUnavailableError, LocationFormatter
from proximity_geo.gazetteer import NO_MATCH_LINE, FuzzyResolver, GazetteerIndex, format_match_line
from proximity_geo.geocode import BaseGeocoder, get_geocoder
from proximity_geo.joiner import join_nearby_sites
from proximity_geo.models import (
    BatchProximityRequest,
    BatchResult,
    CoordinatesResponse,
    FatalConfigurationError,
    FormatLocationsRequest,
    FormatLocationsResponse,
    GeocodeFound,
    GeocodeNotFound,
    HealthResponse,
    InputValidationError,
    NearbyRequest,
    NearbyResponse,
    ProcessLocationsRequest,
    QueryCoordinates,
)
from proximity_geo.orchestrator import BatchOrchestrator
from proximity_geo.rows import export_results, extract_input_rows, read_table
from proximity_geo.sites import SiteInventory, load_site_inventory

logger = logging.getLogger(__name__)

INVALID_QUERY_TEXT = "ERROR: Invalid_search_query_provided"
INVALID_LIMIT_TEXT = "ERROR: Invalid_limit_provided"

router = APIRouter()


# ── Helpers ───────────────────────────────────────────────────────────

def _error(status: int, message: str) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status)


def _resolver(request: Request) -> FuzzyResolver:
    """Current resolver; rebuilt once if the gazetteer file changed on disk."""
    resolver: FuzzyResolver = request.app.state.resolver
    if resolver.index.is_stale():
        logger.info("Gazetteer %s changed, rebuilding index", resolver.index.source_path)
        index = GazetteerIndex.from_file(resolver.index.source_path, resolver.config)
        resolver = FuzzyResolver(index, resolver.config)
        request.app.state.resolver = resolver
    return resolver


def _inventory(request: Request) -> SiteInventory:
    return request.app.state.inventory


def _geocoder(request: Request) -> BaseGeocoder:
    return request.app.state.geocoder


def _formatter(request: Request) -> LocationFormatter:
    return request.app.state.formatter


def _exporter(stem: str):
    settings = get_settings()

    def export(result: BatchResult) -> str:
        path = export_results(result, settings.data.export_dir, stem)
        return f"{settings.api.download_prefix}/{path.name}"

    return export


def _orchestrator(request: Request, zoom: Optional[int], stem: str) -> BatchOrchestrator:
    return BatchOrchestrator(
        resolver=_resolver(request),
        geocoder=_geocoder(request),
        workers=get_settings().batch.workers,
        zoom=zoom,
        exporter=_exporter(stem),
    )


# ══════════════════════════════════════════════════════════════════════
# ENDPOINTS
# ══════════════════════════════════════════════════════════════════════

@router.post("/api/search", response_class=PlainTextResponse)
async def fuzzy_search(request: Request):
    """
    Best gazetteer match for {"query": "..."} as one line:
    "<woreda> <zone> <region> <score>", underscores for inner spaces, or
    "NO_MATCH NO_ZONE NO_REGION 1.0000".

    With {"limit": n} up to n ranked candidates come back, one per line.
    """
    try:
        body = await request.json()
    except ValueError:
        body = None
    query = body.get("query") if isinstance(body, dict) else None
    if not isinstance(query, str) or not query.strip():
        return PlainTextResponse(INVALID_QUERY_TEXT, status_code=400)

    limit = body.get("limit")
    if limit is None:
        return PlainTextResponse(format_match_line(_resolver(request).resolve(query)))
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        return PlainTextResponse(INVALID_LIMIT_TEXT, status_code=400)

    matches = _resolver(request).search(query, limit=limit)
    if not matches:
        return PlainTextResponse(NO_MATCH_LINE)
    return PlainTextResponse("\n".join(format_match_line(m) for m in matches))


@router.get("/api/coordinates", response_model=CoordinatesResponse)
async def coordinates(request: Request, place: Optional[str] = None, zoom: Optional[int] = None):
    """Geocode one place name at an optional zoom hint (default from settings)."""
    if not place or not place.strip():
        return _error(400, "Missing 'place' query parameter")

    outcome = await _geocoder(request).geocode(place, zoom)
    if isinstance(outcome, GeocodeFound):
        return CoordinatesResponse(
            input_place=place,
            latitude=outcome.latitude,
            longitude=outcome.longitude,
            zoom=outcome.zoom,
            resolved_label=outcome.resolved_label,
            source_url=outcome.source_url,
        )
    if isinstance(outcome, GeocodeNotFound):
        return _error(404, "Coordinates not found. Place might be too ambiguous.")
    return _error(500, f"Failed to fetch coordinates: {outcome.message}")


@router.post("/api/nearby", response_model=NearbyResponse)
async def nearby_sites(body: NearbyRequest, request: Request):
    """Sites within maxDistanceMeters of the point, closest first."""
    if not (-90 <= body.latitude <= 90) or not (-180 <= body.longitude <= 180):
        return _error(400, "Invalid coordinate or distance format")
    if body.max_distance_meters < 0:
        return _error(400, "Invalid coordinate or distance format")

    hits = _inventory(request).nearby((body.latitude, body.longitude), body.max_distance_meters)
    return NearbyResponse(
        nearby_sites=[
            {**site.source_columns, "distanceMeters": round_meters(distance)}
            for site, distance in hits
        ],
        query_coordinates=QueryCoordinates(latitude=body.latitude, longitude=body.longitude),
        max_distance=f"{body.max_distance_meters:g} meters",
    )


@router.post("/api/batch-proximity")
async def batch_proximity(body: BatchProximityRequest, request: Request):
    """Flattened (customer row x nearby site) records for every Success row."""
    max_meters = to_meters(body.max_distance_value, body.max_distance_unit)
    inventory = _inventory(request)
    if len(inventory) == 0:
        return _error(500, "Stationary site data is empty or invalid.")

    return JSONResponse(join_nearby_sites(body.customer_data, inventory, max_meters))


@router.post("/api/process-locations")
async def process_locations(body: ProcessLocationsRequest, request: Request):
    """Resolve + geocode a JSON batch; returns every row in input order."""
    orchestrator = _orchestrator(request, body.zoom, "batch")
    result = await orchestrator.run(body.rows)
    return JSONResponse(result.model_dump(mode="json", by_alias=True))


@router.post("/api/process-locations/stream")
async def process_locations_stream(
    request: Request,
    file: UploadFile = File(...),
    place_column: Optional[str] = Form(None, alias="placeColumn"),
    zoom: Optional[int] = Form(None),
):
    """
    Upload a sheet; receive `data: {index, total, row}` per completed row in
    completion order, then `data: {finished: true, downloadUrl, ...}`.
    """
    records = read_table(file.filename or "", await file.read())
    rows = extract_input_rows(records, place_column)
    orchestrator = _orchestrator(request, zoom, file.filename or "upload")

    async def event_source():
        async for frame in orchestrator.stream(rows):
            yield f"data: {frame.model_dump_json(by_alias=True)}\n\n"

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/api/format-locations", response_model=FormatLocationsResponse)
async def format_locations(request: Request):
    """
    Expand raw area names into full map-search strings with the formatting
    model. Unusable model output falls back to "<area>, Ethiopia".
    """
    started = time.monotonic()
    try:
        body = FormatLocationsRequest.model_validate(await request.json())
    except (ValueError, ValidationError):
        return JSONResponse(
            FormatLocationsResponse(success=False, error="Areas array is required")
            .model_dump(mode="json", by_alias=True, exclude_none=True),
            status_code=400,
        )

    try:
        data = await _formatter(request).format_areas(body.areas)
    except FormatterUnavailableError as e:
        logger.error("Location formatting failed: %s", e)
        return JSONResponse(
            FormatLocationsResponse(
                success=False,
                original_count=len(body.areas),
                processing_time=int((time.monotonic() - started) * 1000),
                error=str(e),
            ).model_dump(mode="json", by_alias=True, exclude_none=True),
            status_code=500,
        )

    return FormatLocationsResponse(
        success=True,
        original_count=len(body.areas),
        formatted_count=len(data),
        data=data,
        processing_time=int((time.monotonic() - started) * 1000),
    )


@router.get("/downloads/{filename}")
async def download(filename: str):
    export_dir = Path(get_settings().data.export_dir).resolve()
    path = (export_dir / filename).resolve()
    if path.parent != export_dir or not path.is_file():
        return _error(404, "File not found")
    return FileResponse(
        path,
        filename=path.name,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    )


@router.get("/health", response_model=HealthResponse)
async def health_check(request: Request):
    resolver: FuzzyResolver = request.app.state.resolver
    return HealthResponse(
        status="ok",
        gazetteer_entries=len(resolver.index),
        sites=len(_inventory(request)),
        geocoder=_geocoder(request).source,
        batch_workers=get_settings().batch.workers,
    )


# ── Error mapping ─────────────────────────────────────────────────────

async def _validation_error(request: Request, exc: Any) -> JSONResponse:
    if isinstance(exc, RequestValidationError):
        details = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:]) or 'body'}: {err.get('msg')}"
            for err in exc.errors()
        )
        return _error(400, f"Invalid request: {details}")
    return _error(400, str(exc))


async def _fatal_error(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Reference data unavailable: %s", exc)
    return _error(500, str(exc))


# ── App ───────────────────────────────────────────────────────────────

def create_app(
    resolver: Optional[FuzzyResolver] = None,
    inventory: Optional[SiteInventory] = None,
    geocoder: Optional[BaseGeocoder] = None,
    formatter: Optional[LocationFormatter] = None,
) -> FastAPI:
    """
    Build the app. Anything not injected is loaded from settings at start-up;
    a missing gazetteer or site file aborts start-up.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        logger.info("Starting up API server...")
        app.state.resolver = resolver or FuzzyResolver(
            GazetteerIndex.from_file(settings.data.gazetteer_path, settings.matching),
            settings.matching,
        )
        app.state.inventory = inventory if inventory is not None else load_site_inventory(settings.data.sites_path)
        app.state.geocoder = geocoder or get_geocoder(settings.geocoding)
        app.state.formatter = formatter or LocationFormatter(settings.formatter)
        yield
        if geocoder is None:
            await app.state.geocoder.aclose()
        if formatter is None:
            await app.state.formatter.aclose()
        logger.info("API server shut down.")

    app = FastAPI(
        title="Proximity Geo API",
        description="Resolve complaint locations and find nearby infrastructure sites",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # tighten in production
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(RequestValidationError, _validation_error)
    app.add_exception_handler(InputValidationError, _validation_error)
    app.add_exception_handler(FatalConfigurationError, _fatal_error)
    app.include_router(router)
    return app


app = create_app()
