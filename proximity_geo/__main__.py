"""CLI entrypoint for proximity_geo."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from proximity_geo.logging_config import setup_logging


def main() -> None:
    setup_logging()

    parser = argparse.ArgumentParser(prog="proximity-geo")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("serve")

    resolve_parser = sub.add_parser("resolve")
    resolve_parser.add_argument("query")
    resolve_parser.add_argument("--top-k", type=int, default=1)

    geocode_parser = sub.add_parser("geocode")
    geocode_parser.add_argument("place")
    geocode_parser.add_argument("--zoom", type=int, default=None)

    nearby_parser = sub.add_parser("nearby")
    nearby_parser.add_argument("latitude", type=float)
    nearby_parser.add_argument("longitude", type=float)
    nearby_parser.add_argument("--max-distance", required=True)
    nearby_parser.add_argument("--unit", default="meters", choices=["meters", "km"])

    format_parser = sub.add_parser("format")
    format_parser.add_argument("areas", nargs="+")

    batch_parser = sub.add_parser("batch")
    batch_parser.add_argument("file")
    batch_parser.add_argument("--place-column", default=None)
    batch_parser.add_argument("--zoom", type=int, default=None)
    batch_parser.add_argument("--workers", type=int, default=None)
    batch_parser.add_argument("--max-distance", default=None,
                              help="Also join against the site inventory within this distance")
    batch_parser.add_argument("--unit", default="meters", choices=["meters", "km"])
    batch_parser.add_argument("--out-dir", default=None)

    args = parser.parse_args()

    if args.command == "serve":
        _serve()
    elif args.command == "resolve":
        _resolve(args.query, args.top_k)
    elif args.command == "geocode":
        asyncio.run(_geocode(args.place, args.zoom))
    elif args.command == "nearby":
        _nearby(args.latitude, args.longitude, args.max_distance, args.unit)
    elif args.command == "batch":
        asyncio.run(_batch(args))
    elif args.command == "format":
        asyncio.run(_format(args.areas))


def _serve() -> None:
    import uvicorn

    from proximity_geo.config import get_settings

    settings = get_settings()
    uvicorn.run(
        "proximity_geo.api:app",
        host=settings.api.host,
        port=settings.api.port,
        reload=(settings.env == "development"),
        log_level=settings.log_level.lower(),
    )


def _load_resolver():
    from proximity_geo.config import get_settings
    from proximity_geo.gazetteer import FuzzyResolver, GazetteerIndex

    settings = get_settings()
    index = GazetteerIndex.from_file(settings.data.gazetteer_path, settings.matching)
    return FuzzyResolver(index, settings.matching)


def _resolve(query: str, top_k: int) -> None:
    from proximity_geo.gazetteer import NO_MATCH_LINE, format_match_line

    matches = _load_resolver().search(query, limit=max(1, top_k))
    if not matches:
        print(NO_MATCH_LINE)
    for match in matches:
        print(format_match_line(match))


async def _geocode(place: str, zoom: int | None) -> None:
    from proximity_geo.geocode import get_geocoder

    async with get_geocoder() as geocoder:
        outcome = await geocoder.geocode(place, zoom)
    print(json.dumps(outcome.model_dump(), ensure_ascii=False, indent=2))


def _nearby(latitude: float, longitude: float, max_distance: str, unit: str) -> None:
    from proximity_geo.config import get_settings
    from proximity_geo.distance import round_meters, to_meters
    from proximity_geo.sites import load_site_inventory

    max_meters = to_meters(max_distance, unit)
    inventory = load_site_inventory(get_settings().data.sites_path)
    hits = inventory.nearby((latitude, longitude), max_meters)
    print(f"{len(hits)} sites within {max_meters:.0f}m of ({latitude}, {longitude})")
    for site, distance in hits:
        print(f"  {str(site.site_id):<12} {round_meters(distance):>9d}m  {site.town or site.woreda}  ({site.vendor})")


async def _format(areas: list[str]) -> None:
    from proximity_geo.formatter import LocationFormatter

    async with LocationFormatter() as formatter:
        formatted = await formatter.format_areas(areas)
    for item in formatted:
        print(f"{item.original} -> {item.formatted}")

async def _batch(args: argparse.Namespace) -> None:
    from proximity_geo.config import get_settings
    from proximity_geo.distance import to_meters
    from proximity_geo.geocode import get_geocoder
    from proximity_geo.joiner import join_nearby_sites
    from proximity_geo.models import BatchFinished
    from proximity_geo.orchestrator import BatchOrchestrator
    from proximity_geo.rows import export_results, extract_input_rows, read_table, safe_stem, write_sheet
    from proximity_geo.sites import load_site_inventory

    settings = get_settings()
    out_dir = Path(args.out_dir or settings.data.export_dir)
    source = Path(args.file)

    # Validate everything up front so a bad flag doesn't waste a geocoding run
    max_meters = to_meters(args.max_distance, args.unit) if args.max_distance else None
    inventory = load_site_inventory(settings.data.sites_path) if max_meters else None

    rows = extract_input_rows(read_table(source.name, source.read_bytes()), args.place_column)
    resolver = _load_resolver()

    async with get_geocoder() as geocoder:
        orchestrator = BatchOrchestrator(
            resolver,
            geocoder,
            workers=args.workers,
            zoom=args.zoom,
            exporter=lambda result: str(export_results(result, out_dir, source.name)),
        )
        channel: asyncio.Queue = asyncio.Queue()
        run_task = asyncio.create_task(orchestrator.run(rows, channel))
        while True:
            frame = await channel.get()
            if isinstance(frame, BatchFinished):
                print(f"Finished: {frame.processed}/{frame.total} processed, "
                      f"{frame.succeeded} succeeded, {frame.failed} failed"
                      + (f" (stopped early: {frame.message})" if frame.stopped_early else ""))
                if frame.download_url:
                    print(f"Results written to {frame.download_url}")
                break
            else:
                print(f"[{frame.index}/{frame.total}] {frame.row.status.value:<7} "
                      f"{frame.row.place_name} -> {frame.row.resolved_label}", file=sys.stderr)
        result = await run_task

    if inventory is not None:
        joined = join_nearby_sites(result.succeeded, inventory, max_meters)
        path = write_sheet(joined, out_dir / f"{safe_stem(source.name)}_PROXIMITY_ANALYSIS.xlsx",
                           "Proximity_Results")
        print(f"{len(joined)} proximity rows written to {path}")


if __name__ == "__main__":
    main()
