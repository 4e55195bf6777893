"""
Spreadsheet in, spreadsheet out.

Uploads (.csv/.txt/.xlsx) become ordered column -> string mappings, and
a finished batch is written back as an .xlsx with the geocoding columns
appended to every original row.
"""

from __future__ import annotations

import io
import logging
import re
from pathlib import Path
from typing import Any, Iterable, Optional
from zipfile import BadZipFile

import pandas as pd
from openpyxl.utils.exceptions import InvalidFileException

from proximity_geo.gazetteer import format_match_line
from proximity_geo.models import BatchResult, InputRow, InputValidationError, ResolvedRow

logger = logging.getLogger(__name__)

PLACE_COLUMN_CANDIDATES = (
    "Specific Area (location where they face service issues)",
    "Specific Area",
    "Area",
)
# Column C when no known header is present
FALLBACK_PLACE_COLUMN_INDEX = 2

_EXCEL_SUFFIXES = {".xlsx", ".xlsm"}
_TEXT_SUFFIXES = {".csv", ".txt"}


def _sniff_separator(text: str) -> str:
    first_line = text.split("\n", 1)[0]
    if "\t" in first_line:
        return "\t"
    if "," in first_line:
        return ","
    return r"\s+"


def read_table(filename: str, content: bytes) -> list[dict[str, str]]:
    """
    Parse an uploaded sheet into one dict per data row. Every cell is a
    string; empty cells are "". Column order follows the header row.

    Raises InputValidationError for unsupported, empty, undecodable or
    otherwise unparseable uploads.
    """
    suffix = Path(filename or "").suffix.lower()
    if suffix in _EXCEL_SUFFIXES:
        try:
            df = pd.read_excel(io.BytesIO(content), sheet_name=0, dtype=str, engine="openpyxl")
        except (BadZipFile, InvalidFileException, ValueError, KeyError) as e:
            raise InputValidationError(f"Could not read {filename!r} as a spreadsheet") from e
    elif suffix in _TEXT_SUFFIXES:
        try:
            text = content.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise InputValidationError(f"{filename!r} is not UTF-8 text") from e
        sep = _sniff_separator(text)
        try:
            df = pd.read_csv(
                io.StringIO(text),
                sep=sep,
                dtype=str,
                engine="python" if sep == r"\s+" else "c",
                skip_blank_lines=True,
            )
        except pd.errors.EmptyDataError as e:
            raise InputValidationError(f"{filename!r} is empty") from e
        except pd.errors.ParserError as e:
            raise InputValidationError(f"Could not parse {filename!r}: {e}") from e
    else:
        raise InputValidationError(f"Unsupported file type {suffix or filename!r}")

    df = df.fillna("")
    df.columns = [str(c).strip() for c in df.columns]
    return [{col: str(val).strip() for col, val in rec.items()} for rec in df.to_dict(orient="records")]


def pick_place_column(columns: list[str], place_column: Optional[str] = None) -> str:
    if place_column:
        if place_column not in columns:
            raise InputValidationError(f"Column {place_column!r} not found in upload")
        return place_column
    for candidate in PLACE_COLUMN_CANDIDATES:
        if candidate in columns:
            return candidate
    if len(columns) > FALLBACK_PLACE_COLUMN_INDEX:
        return columns[FALLBACK_PLACE_COLUMN_INDEX]
    raise InputValidationError("Expected a 'Specific Area' column (or data in column C)")


def extract_input_rows(
    records: list[dict[str, Any]],
    place_column: Optional[str] = None,
) -> list[InputRow]:
    """
    One InputRow per record, in upload order. Blank place names are kept so
    that result positions line up with the sheet; they fail as rows later.
    """
    if not records:
        return []
    column = pick_place_column(list(records[0].keys()), place_column)
    return [
        InputRow(place_name=str(rec.get(column, "") or "").strip(), original_columns=dict(rec))
        for rec in records
    ]


# ── Export ─────────────────────────────────────────────────────────────

def _search_query_from_line(line: str) -> str:
    parts = line.split(" ")[:3]
    return ", ".join(p.replace("_", " ") for p in parts)


def export_record(row: ResolvedRow) -> dict[str, Any]:
    """Original columns plus the geocoding outcome, as one flat sheet row."""
    match_line = format_match_line(row.fuzzy_match)
    return {
        **row.original_columns,
        "API_Status": row.status.value,
        "Customer_Scraped_Latitude": f"{row.latitude:.6f}",
        "Customer_Scraped_Longitude": f"{row.longitude:.6f}",
        "Customer_Scraped_Resolved_Name": row.resolved_label,
        "Customer_Scraped_Map_URL": row.source_url,
        "Customer_API_Status_Error_Message": row.error_message or "",
        "Fuzzy_Match_Woreda_Zone_Region_Score": match_line,
        "Fuzzy_Match_Search_Query": _search_query_from_line(match_line),
    }


def write_sheet(records: Iterable[dict[str, Any]], path: Path, sheet_name: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.DataFrame(list(records)).to_excel(path, sheet_name=sheet_name, index=False, engine="openpyxl")
    return path


def safe_stem(filename: str) -> str:
    stem = Path(filename or "results").stem
    return re.sub(r"[^A-Za-z0-9_-]+", "_", stem).strip("_") or "results"


def export_results(result: BatchResult, directory: str | Path, stem: str) -> Path:
    """Write every completed row to <directory>/<stem>_GEO_RESULTS.xlsx."""
    path = Path(directory) / f"{safe_stem(stem)}_GEO_RESULTS.xlsx"
    write_sheet((export_record(r) for r in result.completed), path, "GeoResults")
    logger.info("Exported %d rows to %s", len(result.completed), path)
    return path
