"""
Tests for input loading and the end-to-end resolution pipeline, run
against fake HTTP sessions and real on-disk caches.

Run with: pytest tests/test_pipeline.py -v
"""

import csv
import io
import json

import pytest

from buildmap.core.models import Confidence, MatchStatus
from buildmap.core.pipeline import (
    ResolutionPipeline,
    load_overrides,
    load_records,
    read_rows,
    records_from_rows,
)
from buildmap.export.report import ResolutionReportWriter
from buildmap.geo.footprint_matcher import FootprintMatcher
from buildmap.geo.geocoder import GeocodeResolver
from buildmap.ingest.cache import ResponseCache
from buildmap.ingest.nominatim import NominatimClient
from buildmap.ingest.overpass import OverpassClient
from buildmap.utils.retry import RetryableRequest
from buildmap.utils.validation import InputContractError

from conftest import CENTER_LAT, CENTER_LON, FakeResponse, FakeSession, nominatim_hit, square


def write_csv(path, rows, columns=None):
    columns = columns or list(rows[0].keys())
    with open(path, "w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=columns)
        writer.writeheader()
        writer.writerows(rows)
    return path


def element_graph(polygon, way_id=300, tags=None):
    """Overpass response holding a single closed way."""
    coords = list(polygon.exterior.coords)[:-1]
    nodes = [{"type": "node", "id": i + 1, "lon": lon, "lat": lat} for i, (lon, lat) in enumerate(coords)]
    return {"elements": nodes + [{
        "type": "way",
        "id": way_id,
        "nodes": [n["id"] for n in nodes] + [1],
        "tags": tags or {"building": "yes", "addr:housenumber": "1", "addr:street": "Ilica"},
    }]}


class QuerySession(FakeSession):
    """Nominatim stand-in answering by the ``q`` parameter."""

    def __init__(self, answers):
        super().__init__(FakeResponse([]))
        self.answers = answers

    def get(self, url, **kwargs):
        self.calls.append({"method": "get", "url": url, **kwargs})
        return FakeResponse(self.answers.get(kwargs["params"]["q"], []))


ILICA_1 = "Ilica 1, 10000 Zagreb, Croatia"
ILICA_3 = "Ilica 3, 10000 Zagreb, Croatia"


def build_pipeline(tmp_path, retry, geocode_session, overpass_session):
    nominatim = NominatimClient(
        cache=ResponseCache(tmp_path / "cache" / "geocode.json"),
        request=RetryableRequest(retry, session=geocode_session),
        request_delay=0,
        sleep=lambda _: None,
    )
    overpass = OverpassClient(
        cache=ResponseCache(tmp_path / "cache" / "overpass.json"),
        request=RetryableRequest(retry, session=overpass_session),
        request_delay=0,
        sleep=lambda _: None,
    )
    pipeline = ResolutionPipeline(GeocodeResolver(nominatim), FootprintMatcher(overpass))
    return pipeline, nominatim, overpass


@pytest.fixture
def records(tmp_path):
    path = write_csv(tmp_path / "buildings_canonical.csv", [
        {"id": "a", "name": "Kuća A", "address": "Ilica 1"},
        {"id": "b", "name": "Kuća B", "address": "Ilica 3"},
        {"id": "c", "name": "Nepoznato", "address": "Nepostojeća 99"},
    ])
    return load_records(path)


@pytest.fixture
def answers():
    hit = nominatim_hit(CENTER_LAT, CENTER_LON, "1, Ilica, Donji grad, Zagreb")
    return {ILICA_1: [hit], ILICA_3: [hit]}


class TestLoading:
    """Tests for the canonical input contract."""

    def test_load_records_with_optional_columns(self, tmp_path):
        parts = json.dumps([
            {"raw": "Ilica br. 1", "normalized": "Ilica 1", "street": "Ilica", "house_number": "1"},
            "Ilica 3",
        ])
        path = write_csv(tmp_path / "in.csv", [{
            "id": " a ",
            "name": "Kuća A",
            "address": "Ilica 1 / Ilica 3",
            "address_raw": "Ilica br. 1 / Ilica 3",
            "primary_address": "Ilica 1",
            "addresses_json": parts,
        }])

        [record] = load_records(path)

        assert record.id == "a"
        assert record.primary_address == "Ilica 1"
        assert record.address_raw == "Ilica br. 1 / Ilica 3"
        assert [p.normalized for p in record.address_parts] == ["Ilica 1", ""]
        assert record.address_parts[1].raw == "Ilica 3"

    def test_blank_optional_columns_become_none(self, tmp_path):
        path = write_csv(tmp_path / "in.csv", [
            {"id": "a", "name": "A", "address": "Ilica 1", "address_raw": "", "primary_address": ""},
        ])
        [record] = load_records(path)
        assert record.address_raw is None
        assert record.primary_address is None
        assert record.address_parts == ()

    def test_missing_file(self, tmp_path):
        with pytest.raises(InputContractError, match="not found"):
            load_records(tmp_path / "missing.csv")

    def test_missing_column(self, tmp_path):
        path = write_csv(tmp_path / "in.csv", [{"id": "a", "name": "A"}])
        with pytest.raises(InputContractError, match="address"):
            load_records(path)

    def test_duplicate_ids(self, tmp_path):
        path = write_csv(tmp_path / "in.csv", [
            {"id": "a", "name": "A", "address": "Ilica 1"},
            {"id": "a", "name": "B", "address": "Ilica 3"},
        ])
        with pytest.raises(InputContractError, match="duplicate"):
            load_records(path)

    def test_bad_addresses_json(self, tmp_path):
        path = write_csv(tmp_path / "in.csv", [
            {"id": "a", "name": "A", "address": "Ilica 1", "addresses_json": "{not json"},
        ])
        with pytest.raises(InputContractError, match="addresses_json"):
            load_records(path)

    def test_read_rows_keeps_columns(self, tmp_path):
        path = write_csv(tmp_path / "in.csv", [{"id": "a", "name": "A", "address": "Ilica 1", "extra": "x"}])
        columns, rows = read_rows(path)
        assert columns == ["id", "name", "address", "extra"]
        assert records_from_rows(rows, columns)[0].id == "a"

    def test_load_overrides(self, tmp_path):
        path = write_csv(tmp_path / "overrides.csv", [
            {"building_id": "a", "osm_type": "way", "osm_id": "300", "note": "manual"},
            {"building_id": "b", "osm_type": "", "osm_id": "", "note": "todo"},
            {"building_id": "a", "osm_type": "Relation", "osm_id": "42", "note": "corrected"},
        ])

        overrides = load_overrides(path)

        assert list(overrides) == ["a"]
        assert overrides["a"].ref == "relation/42"
        assert overrides["a"].note == "corrected"

    def test_load_overrides_record_id_column(self, tmp_path):
        path = write_csv(tmp_path / "overrides.csv", [
            {"record_id": "a", "osm_type": "way", "osm_id": "7", "note": ""},
        ])
        assert load_overrides(path)["a"].object_id == 7

    def test_bad_override_rows_are_skipped(self, tmp_path):
        path = write_csv(tmp_path / "overrides.csv", [
            {"building_id": "a", "osm_type": "node", "osm_id": "1", "note": ""},
            {"building_id": "b", "osm_type": "way", "osm_id": "12x", "note": ""},
            {"building_id": "c", "osm_type": "relation", "osm_id": "9", "note": "campus"},
        ])
        overrides = load_overrides(path)
        assert sorted(overrides) == ["c"]
        assert overrides["c"].object_id == 9

    def test_no_overrides_file(self):
        assert load_overrides(None) == {}


class TestResolutionPipeline:
    """End-to-end tests over fake services."""

    def test_results_in_input_order(self, tmp_path, fast_retry, records, answers):
        graph = element_graph(square(CENTER_LAT, CENTER_LON, 10))
        pipeline, _, _ = build_pipeline(
            tmp_path, fast_retry, QuerySession(answers), FakeSession(FakeResponse(graph))
        )

        results = pipeline.run(records)

        assert [r.record_id for r in results] == ["a", "b", "c"]
        a, b, c = (r.footprint for r in results)
        assert a.status == MatchStatus.MATCHED
        assert a.confidence == Confidence.HIGH
        assert a.strategy == "radius_80m_point_containment_with_address"
        assert b.status == MatchStatus.MATCHED
        assert b.strategy == "radius_80m_point_containment_with_address"
        assert c.status == MatchStatus.SKIPPED_NO_COORDINATES
        assert not results[2].geocode.is_resolved

    def test_override_applies(self, tmp_path, fast_retry, records, answers):
        graph = element_graph(square(CENTER_LAT, CENTER_LON, 10, east_m=150), way_id=42)
        pipeline, _, overpass = build_pipeline(
            tmp_path, fast_retry, QuerySession(answers), FakeSession(FakeResponse(graph))
        )
        overrides = load_overrides(write_csv(tmp_path / "o.csv", [
            {"building_id": "a", "osm_type": "way", "osm_id": "42", "note": ""},
        ]))

        result = pipeline.resolve_one(records[0], overrides["a"])

        assert result.footprint.strategy == "override_direct"
        assert result.footprint.object_references == ["way/42"]
        assert "way/42" in overpass.cache

    def test_rerun_is_idempotent_and_offline(self, tmp_path, fast_retry, records, answers):
        graph = element_graph(square(CENTER_LAT, CENTER_LON, 10))
        first, nominatim, overpass = build_pipeline(
            tmp_path, fast_retry, QuerySession(answers), FakeSession(FakeResponse(graph))
        )
        first_report = ResolutionReportWriter(tmp_path / "out").build(first.run(records))
        assert nominatim.live_requests > 0
        assert overpass.live_requests > 0

        dead_geocoder = FakeSession(FakeResponse(None, 500))
        dead_overpass = FakeSession(FakeResponse(None, 500))
        second, nominatim, overpass = build_pipeline(tmp_path, fast_retry, dead_geocoder, dead_overpass)
        second_report = ResolutionReportWriter(tmp_path / "out").build(second.run(records))

        assert nominatim.live_requests == 0
        assert overpass.live_requests == 0
        assert dead_geocoder.calls == [] and dead_overpass.calls == []
        assert json.dumps(first_report, sort_keys=True) == json.dumps(second_report, sort_keys=True)

    def test_service_outage_degrades_per_record(self, tmp_path, fast_retry, records):
        pipeline, _, _ = build_pipeline(
            tmp_path,
            fast_retry,
            FakeSession(FakeResponse(None, 503)),
            FakeSession(FakeResponse(None, 503)),
        )

        results = pipeline.run(records)

        assert len(results) == 3
        assert all(r.footprint.status == MatchStatus.SKIPPED_NO_COORDINATES for r in results)

    def test_progress_output(self, tmp_path, fast_retry, records, answers):
        from rich.console import Console

        graph = element_graph(square(CENTER_LAT, CENTER_LON, 10))
        pipeline, _, _ = build_pipeline(
            tmp_path, fast_retry, QuerySession(answers), FakeSession(FakeResponse(graph))
        )
        pipeline.console = Console(file=io.StringIO(), force_terminal=False)
        pipeline.show_progress = True

        assert len(pipeline.run(records)) == 3
