"""Tests for upload parsing, place-column selection and result export."""

from __future__ import annotations

import pandas as pd
import pytest

from proximity_geo.models import (
    BatchResult,
    GazetteerEntry,
    InputValidationError,
    MatchResult,
    ResolvedRow,
    ResolveStatus,
)
from proximity_geo.rows import (
    export_record,
    export_results,
    extract_input_rows,
    pick_place_column,
    read_table,
    safe_stem,
)


class TestReadTable:
    def test_csv(self):
        content = b"Ticket,Phone,Specific Area\nT-1,0911,Bole\nT-2,,Kirkos\n"
        assert read_table("complaints.csv", content) == [
            {"Ticket": "T-1", "Phone": "0911", "Specific Area": "Bole"},
            {"Ticket": "T-2", "Phone": "", "Specific Area": "Kirkos"},
        ]

    def test_values_stay_strings(self):
        (record,) = read_table("c.csv", b"Phone,Area\n0911000000,Bole\n")
        assert record["Phone"] == "0911000000"

    def test_tab_separated_with_bom(self):
        content = "\ufeffTicket\tArea\nT-1\tBahir Dar\n".encode("utf-8")
        assert read_table("c.txt", content) == [{"Ticket": "T-1", "Area": "Bahir Dar"}]

    def test_whitespace_separated(self):
        assert read_table("c.txt", b"Ticket Area\nT-1 Bole\n") == [{"Ticket": "T-1", "Area": "Bole"}]

    def test_xlsx(self, tmp_path):
        path = tmp_path / "c.xlsx"
        pd.DataFrame({"Ticket": ["T-1"], "Specific Area": ["Adama"]}).to_excel(path, index=False)
        assert read_table("c.xlsx", path.read_bytes()) == [{"Ticket": "T-1", "Specific Area": "Adama"}]

    def test_empty_file(self):
        with pytest.raises(InputValidationError, match="empty"):
            read_table("empty.csv", b"")

    def test_invalid_utf8(self):
        with pytest.raises(InputValidationError, match="UTF-8"):
            read_table("bad.csv", b"Area\n\xff\xfe\n")

    def test_corrupt_xlsx(self):
        with pytest.raises(InputValidationError):
            read_table("broken.xlsx", b"not a zip archive")

    @pytest.mark.parametrize("name", ["c.pdf", "c.xls", "noextension", ""])
    def test_unsupported_type(self, name):
        with pytest.raises(InputValidationError):
            read_table(name, b"anything")


class TestPlaceColumn:
    def test_known_header_preferred(self):
        cols = ["Ticket", "Area", "Specific Area (location where they face service issues)"]
        assert pick_place_column(cols) == "Specific Area (location where they face service issues)"

    def test_fallback_to_column_c(self):
        assert pick_place_column(["Ticket", "Phone", "Location", "Notes"]) == "Location"

    def test_explicit_column(self):
        assert pick_place_column(["Ticket", "Phone", "Where"], "Where") == "Where"

    def test_explicit_column_missing(self):
        with pytest.raises(InputValidationError):
            pick_place_column(["Ticket", "Phone", "Where"], "Area")

    def test_no_usable_column(self):
        with pytest.raises(InputValidationError):
            pick_place_column(["Ticket", "Phone"])

    def test_extract_rows_keeps_blanks_and_order(self):
        records = [
            {"Ticket": "T-1", "Specific Area": " Bole "},
            {"Ticket": "T-2", "Specific Area": ""},
            {"Ticket": "T-3", "Specific Area": "Adama"},
        ]
        rows = extract_input_rows(records)
        assert [r.place_name for r in rows] == ["Bole", "", "Adama"]
        assert rows[1].original_columns == {"Ticket": "T-2", "Specific Area": ""}

    def test_extract_rows_empty(self):
        assert extract_input_rows([]) == []


def _resolved(place: str, ok: bool = True) -> ResolvedRow:
    if ok:
        return ResolvedRow(
            original_columns={"Ticket": "T-1", "Specific Area": place},
            place_name=place,
            fuzzy_match=MatchResult(GazetteerEntry("Bole", "Addis Ababa", "Addis Ababa"), 0.0),
            query_used="Bole, Addis Ababa",
            status=ResolveStatus.SUCCESS,
            latitude=8.99,
            longitude=38.79,
            zoom=8,
            resolved_label="Bole, Addis Ababa, Ethiopia",
            source_url="https://www.openstreetmap.org/",
        )
    return ResolvedRow(
        original_columns={"Ticket": "T-2", "Specific Area": place},
        place_name=place,
        status=ResolveStatus.ERROR,
        error_message="No area name",
    )


class TestExport:
    def test_export_record(self):
        record = export_record(_resolved("bole"))
        assert record["Ticket"] == "T-1"
        assert record["API_Status"] == "Success"
        assert record["Customer_Scraped_Latitude"] == "8.990000"
        assert record["Fuzzy_Match_Woreda_Zone_Region_Score"] == "Bole Addis_Ababa Addis_Ababa 0.0000"
        assert record["Fuzzy_Match_Search_Query"] == "Bole, Addis Ababa, Addis Ababa"
        assert record["Customer_API_Status_Error_Message"] == ""

    def test_export_error_record(self):
        record = export_record(_resolved("", ok=False))
        assert record["API_Status"] == "Error"
        assert record["Customer_Scraped_Resolved_Name"] == "N/A"
        assert record["Customer_API_Status_Error_Message"] == "No area name"
        assert record["Fuzzy_Match_Woreda_Zone_Region_Score"] == "NO_MATCH NO_ZONE NO_REGION 1.0000"

    def test_export_results_skips_unstarted_rows(self, tmp_path):
        result = BatchResult(rows=[_resolved("bole"), _resolved("", ok=False), None], stopped_early=True)
        path = export_results(result, tmp_path / "out", "my complaints.xlsx")
        assert path.name == "my_complaints_GEO_RESULTS.xlsx"

        df = pd.read_excel(path, sheet_name="GeoResults", dtype=str).fillna("")
        assert list(df["Ticket"]) == ["T-1", "T-2"]
        assert list(df["API_Status"]) == ["Success", "Error"]

    def test_safe_stem(self):
        assert safe_stem("../../etc/passwd") == "passwd"
        assert safe_stem("Q3 report (final).csv") == "Q3_report_final"
        assert safe_stem("") == "results"
