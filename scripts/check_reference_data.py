from __future__ import annotations

import argparse
import sys
from pathlib import Path

from proximity_geo.config import get_settings
from proximity_geo.gazetteer import FuzzyResolver, GazetteerIndex, format_match_line
from proximity_geo.models import FatalConfigurationError, GazetteerEntry
from proximity_geo.sites import load_site_inventory


def ambiguous_entries(resolver: FuzzyResolver) -> list[tuple[GazetteerEntry, str]]:
    """Entries whose own name resolves to a different entry (or to nothing)."""
    problems: list[tuple[GazetteerEntry, str]] = []
    for entry in resolver.index.entries:
        match = resolver.resolve(entry.name)
        if match is None or match.entry != entry:
            problems.append((entry, format_match_line(match)))
    return problems


def check(gazetteer: Path, sites: Path) -> int:
    settings = get_settings()
    status = 0

    try:
        index = GazetteerIndex.from_file(gazetteer, settings.matching)
    except FatalConfigurationError as e:
        print(f"GAZETTEER FAILED: {e}")
        status = 1
    else:
        print(f"Gazetteer: {len(index)} entries from {gazetteer}")
        problems = ambiguous_entries(FuzzyResolver(index, settings.matching))
        for entry, line in problems:
            print(f"  ambiguous: {entry.name} / {entry.zone_name} / {entry.region_name} -> {line}")
        if problems:
            print(f"  {len(problems)} entries do not resolve to themselves")

    try:
        inventory = load_site_inventory(sites)
    except FatalConfigurationError as e:
        print(f"SITES FAILED: {e}")
        status = 1
    else:
        print(f"Sites: {len(inventory)} with valid coordinates from {sites}")

    return status


def main() -> None:
    settings = get_settings()
    parser = argparse.ArgumentParser(description="Validate the gazetteer and site reference files.")
    parser.add_argument("--gazetteer", default=settings.data.gazetteer_path)
    parser.add_argument("--sites", default=settings.data.sites_path)
    args = parser.parse_args()

    sys.exit(check(Path(args.gazetteer), Path(args.sites)))


if __name__ == "__main__":
    main()
