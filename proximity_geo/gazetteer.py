"""
Gazetteer-based fuzzy resolution of free-text place names.

The gazetteer is a reference list of administrative units (woreda/town,
parent zone, parent region). Complaint addresses are typed by hand and are
often misspelled, so each query is scored against every entry with
edit-distance ratios instead of exact lookups.

Design:
  - GazetteerIndex is built once from the reference file and never mutated.
    It is passed explicitly to FuzzyResolver; rebuild it when the file
    changes (see GazetteerIndex.is_stale).
  - Three searchable fields with weights: name 1.0, zone 0.7, region 0.5.
  - Per field, dissimilarity d = 1 - similarity/100 where similarity blends
    rapidfuzz partial_ratio (substring alignment anywhere in the field) with
    the plain ratio, so an exact field beats a field that merely contains
    the query.
  - A field is a hit when d <= field_threshold. Candidate score is the
    product over hit fields of max(d, eps) ** weight; no hits, no candidate.
  - Candidates with score <= score_threshold survive, best (lowest) first.
"""

from __future__ import annotations

import json
import logging
import re
import sys
from pathlib import Path
from typing import Any, Iterable, Optional

import numpy as np
from rapidfuzz import fuzz, process

from proximity_geo.config import MatchingConfig, get_settings
from proximity_geo.models import FatalConfigurationError, GazetteerEntry, MatchResult

logger = logging.getLogger(__name__)

NO_MATCH_LINE = "NO_MATCH NO_ZONE NO_REGION 1.0000"

# Share of the field similarity taken from the best substring alignment
_PARTIAL_SHARE = 0.8
_EXACT_FLOOR = sys.float_info.epsilon

_WS = re.compile(r"\s+")


def normalize_text(text: str) -> str:
    """Lowercase, trim and collapse whitespace."""
    return _WS.sub(" ", text.strip().lower())


# ══════════════════════════════════════════════════════════════════════
# LOADING
# ══════════════════════════════════════════════════════════════════════

def _entry_from_raw(raw: dict[str, Any]) -> GazetteerEntry:
    """
    Accept both the nested export shape
      {"name": ..., "subcity_zone": {"name": ..., "region_city": {"name": ...}}}
    and a flat {"name", "zone", "region"} record.
    """
    name = str(raw["name"]).strip()
    zone = raw.get("subcity_zone")
    if isinstance(zone, dict):
        region = zone.get("region_city") or {}
        return GazetteerEntry(name, str(zone.get("name", "")).strip(), str(region.get("name", "")).strip())
    return GazetteerEntry(
        name,
        str(raw.get("zone", raw.get("zone_name", ""))).strip(),
        str(raw.get("region", raw.get("region_name", ""))).strip(),
    )


def load_gazetteer(path: str | Path) -> list[GazetteerEntry]:
    """
    Read gazetteer entries from a JSON file.
    Missing, unparsable or empty files are fatal: the service must not
    resolve against a partial reference list.
    """
    path = Path(path)
    if not path.exists():
        raise FatalConfigurationError(f"Gazetteer file not found: {path}")

    try:
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise FatalConfigurationError(f"Failed to read gazetteer {path}: {e}") from e

    raw_list = data.get("basic_woreda_towns") if isinstance(data, dict) else data
    if not isinstance(raw_list, list):
        raise FatalConfigurationError(f"Gazetteer {path} has no entry list")

    entries: list[GazetteerEntry] = []
    for raw in raw_list:
        try:
            entry = _entry_from_raw(raw)
        except (KeyError, TypeError, AttributeError) as e:
            logger.warning("Skipping malformed gazetteer record %r: %s", raw, e)
            continue
        if entry.name:
            entries.append(entry)

    if not entries:
        raise FatalConfigurationError(f"Gazetteer {path} contains no usable entries")

    logger.info("Loaded %d gazetteer entries from %s", len(entries), path)
    return entries


# ══════════════════════════════════════════════════════════════════════
# INDEX
# ══════════════════════════════════════════════════════════════════════

class GazetteerIndex:
    """
    Immutable, pre-normalized view of the gazetteer.

    Build cost is one normalization pass over the entries; queries then run
    vectorized over each field with rapidfuzz.process.cdist.
    """

    def __init__(
        self,
        entries: Iterable[GazetteerEntry],
        weights: tuple[float, float, float] = (1.0, 0.7, 0.5),
        source_path: Optional[Path] = None,
    ):
        self._entries: tuple[GazetteerEntry, ...] = tuple(entries)
        self._fields: tuple[tuple[str, ...], ...] = (
            tuple(normalize_text(e.name) for e in self._entries),
            tuple(normalize_text(e.zone_name) for e in self._entries),
            tuple(normalize_text(e.region_name) for e in self._entries),
        )
        self._field_lengths = tuple(
            np.fromiter((len(t) for t in texts), dtype=np.int64, count=len(texts))
            for texts in self._fields
        )
        self._weights = weights
        self.source_path = source_path
        self.source_mtime = source_path.stat().st_mtime if source_path is not None else None

    @classmethod
    def build(
        cls,
        entries: Iterable[GazetteerEntry],
        config: Optional[MatchingConfig] = None,
        source_path: Optional[Path] = None,
    ) -> "GazetteerIndex":
        """Index `entries` with the field weights from `config`."""
        config = config or get_settings().matching
        return cls(
            entries,
            weights=(config.name_weight, config.zone_weight, config.region_weight),
            source_path=source_path,
        )

    @classmethod
    def from_file(cls, path: str | Path, config: Optional[MatchingConfig] = None) -> "GazetteerIndex":
        path = Path(path)
        return cls.build(load_gazetteer(path), config, source_path=path)

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> tuple[GazetteerEntry, ...]:
        return self._entries

    @property
    def weights(self) -> tuple[float, float, float]:
        return self._weights

    def is_stale(self) -> bool:
        """True when the source file changed after this index was built."""
        if self.source_path is None:
            return False
        try:
            return self.source_path.stat().st_mtime != self.source_mtime
        except OSError:
            return True

    def field_dissimilarity(self, query: str, field_idx: int, min_length: int) -> np.ndarray:
        """Dissimilarity in [0, 1] of `query` against every entry's field."""
        texts = self._fields[field_idx]
        if not texts:
            return np.ones(0)
        partial = process.cdist([query], texts, scorer=fuzz.partial_ratio, dtype=np.float64)[0]
        full = process.cdist([query], texts, scorer=fuzz.ratio, dtype=np.float64)[0]
        similarity = _PARTIAL_SHARE * np.maximum(partial, full) + (1.0 - _PARTIAL_SHARE) * full
        d = 1.0 - similarity / 100.0
        # A field too short to hold a minimum-length match can never hit
        d[self._field_lengths[field_idx] < min_length] = 1.0
        return np.clip(d, 0.0, 1.0)


# ══════════════════════════════════════════════════════════════════════
# RESOLVER
# ══════════════════════════════════════════════════════════════════════

class FuzzyResolver:
    """Best-match lookup of a raw place string against a GazetteerIndex."""

    def __init__(self, index: GazetteerIndex, config: Optional[MatchingConfig] = None):
        self.index = index
        self.config = config or get_settings().matching

    def _prepare(self, query: str) -> str:
        tokens = [t for t in normalize_text(query).split(" ") if len(t) >= self.config.min_match_length]
        return " ".join(tokens)

    def search(self, query: str, limit: Optional[int] = None) -> list[MatchResult]:
        """All candidates passing the score threshold, best first."""
        if not isinstance(query, str):
            return []
        prepared = self._prepare(query)
        if not prepared or len(self.index) == 0:
            return []

        cfg = self.config
        scores = np.ones(len(self.index))
        any_hit = np.zeros(len(self.index), dtype=bool)

        for field_idx, weight in enumerate(self.index.weights):
            d = self.index.field_dissimilarity(prepared, field_idx, cfg.min_match_length)
            hit = d <= cfg.field_threshold
            scores = np.where(hit, scores * np.power(np.maximum(d, _EXACT_FLOOR), weight), scores)
            any_hit |= hit

        keep = np.flatnonzero(any_hit & (scores <= cfg.score_threshold))
        # Stable: equal scores keep gazetteer order
        ranked = keep[np.argsort(scores[keep], kind="stable")]
        if limit is not None:
            ranked = ranked[:limit]

        entries = self.index.entries
        return [MatchResult(entries[i], float(scores[i])) for i in ranked]

    def resolve(self, query: str) -> Optional[MatchResult]:
        """Best surviving candidate, or None when nothing clears the threshold."""
        results = self.search(query, limit=1)
        return results[0] if results else None


# ══════════════════════════════════════════════════════════════════════
# FORMATTING
# ══════════════════════════════════════════════════════════════════════

def _underscore(text: str) -> str:
    return _WS.sub("_", text)


def format_match_line(match: Optional[MatchResult]) -> str:
    """Single line "<name> <zone> <region> <score>" with spaces as underscores."""
    if match is None:
        return NO_MATCH_LINE
    e = match.entry
    return (
        f"{_underscore(e.name)} {_underscore(e.zone_name)} "
        f"{_underscore(e.region_name)} {match.score:.4f}"
    )


def geocode_query_for(match: Optional[MatchResult], raw_place: str) -> str:
    """
    Geocoder query for a row: "<name>, <region>" when resolved (the region
    disambiguates woredas that share a name), else the raw place text.
    """
    if match is None:
        return raw_place.strip()
    e = match.entry
    if e.region_name:
        return f"{e.name}, {e.region_name}"
    return e.name
