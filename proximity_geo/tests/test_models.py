"""
Tests for Pydantic model validation and wire serialization.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from proximity_geo.models import (
    BatchFinished,
    BatchProximityRequest,
    BatchResult,
    GazetteerEntry,
    InputRow,
    MatchResult,
    ProgressEvent,
    ResolvedRow,
    ResolveStatus,
)


class TestInputRow:
    def test_camel_case_parsing(self):
        row = InputRow.model_validate({"placeName": "Bole", "originalColumns": {"Ticket": "T-1"}})
        assert row.place_name == "Bole"
        assert row.original_columns == {"Ticket": "T-1"}

    def test_snake_case_and_legacy_names(self):
        assert InputRow.model_validate({"place_name": "Bole"}).place_name == "Bole"
        assert InputRow.model_validate({"originalData": {"a": 1}}).original_columns == {"a": 1}

    def test_defaults(self):
        row = InputRow()
        assert row.place_name == ""
        assert row.original_columns == {}


class TestResolvedRow:
    def test_error_defaults(self):
        row = ResolvedRow(status=ResolveStatus.ERROR, error_message="No area name")
        assert not row.succeeded
        assert (row.latitude, row.longitude) == (0.0, 0.0)
        assert row.resolved_label == "N/A"
        assert row.source_url == "N/A"

    def test_status_from_wire_value(self):
        row = ResolvedRow.model_validate({"status": "Success", "latitude": 9.0, "longitude": 38.7})
        assert row.succeeded

    def test_unknown_status_rejected(self):
        with pytest.raises(ValidationError):
            ResolvedRow.model_validate({"status": "Maybe"})

    def test_frozen(self):
        row = ResolvedRow(status=ResolveStatus.SUCCESS)
        with pytest.raises(ValidationError):
            row.latitude = 1.0

    def test_wire_shape(self):
        row = ResolvedRow(
            place_name="Mekele",
            fuzzy_match=MatchResult(GazetteerEntry("Mekelle", "Mekelle Special Zone", "Tigray"), 0.05),
            query_used="Mekelle, Tigray",
            status=ResolveStatus.SUCCESS,
        )
        data = row.model_dump(mode="json", by_alias=True)
        assert data["placeName"] == "Mekele"
        assert data["queryUsed"] == "Mekelle, Tigray"
        assert data["status"] == "Success"
        assert data["fuzzyMatch"]["entry"]["name"] == "Mekelle"
        assert data["fuzzyMatch"]["score"] == 0.05


class TestBatchModels:
    def test_result_views(self):
        ok = ResolvedRow(place_name="a", status=ResolveStatus.SUCCESS)
        bad = ResolvedRow(place_name="b", status=ResolveStatus.ERROR)
        result = BatchResult(rows=[ok, None, bad], stopped_early=True)
        assert result.completed == [ok, bad]
        assert result.succeeded == [ok]

    def test_progress_event_json(self):
        event = ProgressEvent(index=1, total=2, row=ResolvedRow(status=ResolveStatus.ERROR), position=1)
        data = event.model_dump(mode="json", by_alias=True)
        assert (data["index"], data["total"], data["position"]) == (1, 2, 1)
        assert data["row"]["status"] == "Error"

    def test_finished_frame(self):
        frame = BatchFinished(processed=2, total=3, succeeded=1, failed=1, stopped_early=True,
                              message="Connection lost")
        data = frame.model_dump(mode="json", by_alias=True)
        assert data["finished"] is True
        assert data["stoppedEarly"] is True
        assert data["downloadUrl"] is None

    def test_batch_proximity_request(self):
        req = BatchProximityRequest.model_validate({
            "customerData": [{"status": "Success", "latitude": 9.03, "longitude": 38.74}],
            "maxDistanceValue": "2",
            "maxDistanceUnit": "km",
        })
        assert req.max_distance_value == "2"
        assert req.customer_data[0].succeeded

    def test_batch_proximity_unit_defaults_to_meters(self):
        req = BatchProximityRequest.model_validate({"customerData": [], "maxDistanceValue": 500})
        assert req.max_distance_unit == "meters"
        assert req.max_distance_value == 500
