"""
Tests for the Overpass and Nominatim clients: element graph parsing,
caching, rate limiting and failure handling. No live network.

Run with: pytest tests/test_overpass.py -v
"""

import pytest
from shapely.geometry import MultiPolygon, Polygon

from buildmap.core.models import TagClass
from buildmap.ingest.cache import ResponseCache
from buildmap.ingest.nominatim import NominatimClient
from buildmap.ingest.overpass import (
    OverpassClient,
    around_cache_key,
    buildings_around_query,
    classify_tags,
    element_cache_key,
    elements_to_features,
    generic_around_query,
)
from buildmap.utils.retry import RetryableRequest

from conftest import FakeResponse, FakeSession, nominatim_hit


def _nodes(start_id, coords):
    return [
        {"type": "node", "id": start_id + i, "lon": lon, "lat": lat}
        for i, (lon, lat) in enumerate(coords)
    ]


def _ring(start_id, coords):
    """Nodes for an open coordinate ring plus the closed node id list."""
    nodes = _nodes(start_id, coords)
    ids = [n["id"] for n in nodes]
    return nodes, ids + [ids[0]]


OUTER = [(15.9760, 45.8120), (15.9780, 45.8120), (15.9780, 45.8140), (15.9760, 45.8140)]
INNER = [(15.9765, 45.8125), (15.9775, 45.8125), (15.9775, 45.8135), (15.9765, 45.8135)]
SMALL = [(15.9790, 45.8150), (15.9792, 45.8150), (15.9792, 45.8152), (15.9790, 45.8152)]


@pytest.fixture
def element_graph():
    outer_nodes, outer_ids = _ring(1, OUTER)
    inner_nodes, inner_ids = _ring(11, INNER)
    small_nodes, small_ids = _ring(21, SMALL)
    return {
        "elements": outer_nodes + inner_nodes + small_nodes + [
            {"type": "way", "id": 300, "nodes": small_ids,
             "tags": {"building": "yes", "addr:housenumber": "5"}},
            {"type": "way", "id": 200, "nodes": small_ids, "tags": {"building:part": "yes"}},
            {"type": "way", "id": 101, "nodes": outer_ids},
            {"type": "way", "id": 102, "nodes": inner_ids},
            {"type": "way", "id": 103, "nodes": outer_ids[:-1]},
            {"type": "way", "id": 104, "nodes": outer_ids, "tags": {"building": "no"}},
            {"type": "relation", "id": 500, "tags": {"type": "multipolygon", "building": "yes"},
             "members": [
                 {"type": "way", "ref": 101, "role": "outer"},
                 {"type": "way", "ref": 102, "role": "inner"},
             ]},
            {"type": "relation", "id": 600, "tags": {"type": "building", "name": "Kompleks"},
             "members": [
                 {"type": "way", "ref": 101, "role": "outline"},
                 {"type": "way", "ref": 200, "role": "part"},
             ]},
        ]
    }


class TestElementParsing:
    """Tests for converting Overpass element graphs to polygons."""

    def test_features_sorted_and_filtered(self, element_graph):
        features = elements_to_features(element_graph)
        assert [f.ref for f in features] == ["relation/500", "relation/600", "way/200", "way/300"]

    def test_tag_classes(self, element_graph):
        by_ref = {f.ref: f for f in elements_to_features(element_graph)}
        assert by_ref["way/300"].tag_class == TagClass.BUILDING
        assert by_ref["way/200"].tag_class == TagClass.BUILDING_PART
        assert by_ref["relation/600"].tag_class == TagClass.BUILDING_RELATION
        assert by_ref["way/300"].tags["addr:housenumber"] == "5"

    def test_multipolygon_hole_is_subtracted(self, element_graph):
        relation = {f.ref: f for f in elements_to_features(element_graph)}["relation/500"]
        assert isinstance(relation.geometry, Polygon)
        assert len(relation.geometry.interiors) == 1
        assert relation.geometry.area == pytest.approx(0.002 * 0.002 - 0.001 * 0.001)

    def test_building_relation_uses_outline(self, element_graph):
        relation = {f.ref: f for f in elements_to_features(element_graph)}["relation/600"]
        assert relation.geometry.area == pytest.approx(0.002 * 0.002)

    def test_untagged_ways_when_requested(self, element_graph):
        refs = [f.ref for f in elements_to_features(element_graph, include_untagged=True)]
        assert "way/101" in refs
        assert "way/103" not in refs  # not closed

    def test_inline_geometry(self):
        coords = SMALL + [SMALL[0]]
        payload = {"elements": [{
            "type": "way", "id": 9, "tags": {"building": "yes"},
            "geometry": [{"lon": lon, "lat": lat} for lon, lat in coords],
        }]}
        [feature] = elements_to_features(payload)
        assert feature.ref == "way/9"
        assert feature.geometry.is_valid

    def test_disjoint_outers_form_multipolygon(self):
        a_nodes, a_ids = _ring(1, OUTER)
        b_nodes, b_ids = _ring(11, SMALL)
        payload = {"elements": a_nodes + b_nodes + [
            {"type": "way", "id": 1, "nodes": a_ids},
            {"type": "way", "id": 2, "nodes": b_ids},
            {"type": "relation", "id": 7, "tags": {"type": "multipolygon", "historic": "castle"},
             "members": [
                 {"type": "way", "ref": 1, "role": "outer"},
                 {"type": "way", "ref": 2, "role": "outer"},
             ]},
        ]}
        assert elements_to_features(payload) == []
        [feature] = elements_to_features(payload, include_generic=True)
        assert isinstance(feature.geometry, MultiPolygon)
        assert feature.tag_class == TagClass.GENERIC

    @pytest.mark.parametrize("tags,include_generic,expected", [
        ({"building": "yes"}, False, TagClass.BUILDING),
        ({"building": "no"}, False, None),
        ({"building:part": "yes"}, False, TagClass.BUILDING_PART),
        ({"type": "building"}, False, TagClass.BUILDING_RELATION),
        ({"amenity": "fountain"}, False, None),
        ({"amenity": "fountain"}, True, TagClass.GENERIC),
        ({"highway": "primary"}, True, None),
    ])
    def test_classify_tags(self, tags, include_generic, expected):
        assert classify_tags(tags, include_generic) == expected


class TestQueries:
    """Tests for Overpass QL and cache keys."""

    def test_buildings_query(self):
        query = buildings_around_query(45.8131, 15.9772, 80)
        assert 'way["building"](around:80,45.8131,15.9772);' in query
        assert 'relation["type"="building"](around:80,45.8131,15.9772);' in query
        assert 'way["building:part"]' in query
        assert "(._;>;);" in query
        assert "out body;" in query

    def test_generic_query(self):
        query = generic_around_query(45.8131, 15.9772, 200)
        for key in ("amenity", "tourism", "historic", "man_made"):
            assert f'way["{key}"](around:200,45.8131,15.9772);' in query

    def test_cache_keys(self):
        assert around_cache_key("buildings", 45.8131, 15.9772, 80) == "buildings:around:45.8131000,15.9772000,80"
        assert element_cache_key("relation", 42) == "relation/42"


def _overpass(tmp_path, session, retry, sleeps):
    return OverpassClient(
        cache=ResponseCache(tmp_path / "overpass.json"),
        request=RetryableRequest(retry, session=session),
        request_delay=1.5,
        sleep=sleeps.append,
    )


class TestOverpassClient:
    """Tests for the cached, rate-limited Overpass client."""

    def test_live_then_cached(self, tmp_path, fast_retry, element_graph):
        session = FakeSession(FakeResponse(element_graph))
        sleeps = []
        client = _overpass(tmp_path, session, fast_retry, sleeps)

        first = client.buildings_around(45.8131, 15.9772, 80)
        second = client.buildings_around(45.8131, 15.9772, 80)

        assert [f.ref for f in first] == [f.ref for f in second]
        assert len(session.calls) == 1
        assert session.calls[0]["method"] == "post"
        assert "around:80" in session.calls[0]["data"]["data"]
        assert sleeps == [1.5]
        assert client.live_requests == 1

    def test_cache_persists_with_meta(self, tmp_path, fast_retry, element_graph):
        client = _overpass(tmp_path, FakeSession(FakeResponse(element_graph)), fast_retry, [])
        client.buildings_around(45.8131, 15.9772, 120)

        cache = ResponseCache(tmp_path / "overpass.json")
        entry = cache.get(around_cache_key("buildings", 45.8131, 15.9772, 120))
        assert entry["meta"] == {"lat": 45.8131, "lon": 15.9772, "radius_m": 120, "kind": "buildings"}
        assert entry["overpass"] == element_graph

        session = FakeSession(FakeResponse({}, status_code=500))
        rerun = _overpass(tmp_path, session, fast_retry, [])
        assert len(rerun.buildings_around(45.8131, 15.9772, 120)) == 4
        assert session.calls == []

    def test_element_lookup(self, tmp_path, fast_retry, element_graph):
        client = _overpass(tmp_path, FakeSession(FakeResponse(element_graph)), fast_retry, [])
        feature = client.element("way", 101)
        assert feature is not None
        assert feature.ref == "way/101"
        assert client.element("way", 999) is None

    def test_retryable_status_then_success(self, tmp_path, fast_retry, element_graph):
        session = FakeSession(FakeResponse(None, 504), FakeResponse(element_graph))
        client = _overpass(tmp_path, session, fast_retry, [])

        assert len(client.buildings_around(45.8131, 15.9772, 80)) == 4
        assert len(session.calls) == 2

    def test_exhausted_retries_return_none(self, tmp_path, fast_retry):
        session = FakeSession(FakeResponse(None, 429))
        sleeps = []
        client = _overpass(tmp_path, session, fast_retry, sleeps)

        assert client.buildings_around(45.8131, 15.9772, 80) is None
        assert len(session.calls) == fast_retry.max_attempts
        assert sleeps == [1.5]
        # Failures are not cached
        assert len(client.cache) == 0

    def test_bad_request_is_not_retried(self, tmp_path, fast_retry):
        session = FakeSession(FakeResponse(None, 400))
        client = _overpass(tmp_path, session, fast_retry, [])

        assert client.generic_around(45.8131, 15.9772, 200) is None
        assert len(session.calls) == 1

    def test_invalid_json(self, tmp_path, fast_retry):
        session = FakeSession(FakeResponse(ValueError("Expecting value")))
        client = _overpass(tmp_path, session, fast_retry, [])
        assert client.buildings_around(45.8131, 15.9772, 80) is None


class TestNominatimClient:
    """Tests for the cached, rate-limited Nominatim client."""

    def _client(self, tmp_path, session, retry, sleeps):
        return NominatimClient(
            cache=ResponseCache(tmp_path / "geocode.json"),
            request=RetryableRequest(retry, session=session),
            user_agent="buildmap-tests",
            request_delay=1.1,
            sleep=sleeps.append,
        )

    def test_request_parameters(self, tmp_path, fast_retry):
        session = FakeSession(FakeResponse([nominatim_hit(45.81, 15.97, "1, Ilica, Zagreb")]))
        client = self._client(tmp_path, session, fast_retry, [])

        result = client.search("Ilica 1, 10000 Zagreb, Croatia")

        assert result[0]["display_name"] == "1, Ilica, Zagreb"
        call = session.calls[0]
        assert call["method"] == "get"
        assert call["params"] == {
            "q": "Ilica 1, 10000 Zagreb, Croatia",
            "format": "jsonv2",
            "limit": 5,
            "addressdetails": 0,
        }
        assert call["headers"]["User-Agent"] == "buildmap-tests"

    def test_cache_hit_skips_network_and_sleep(self, tmp_path, fast_retry):
        session = FakeSession(FakeResponse([]))
        sleeps = []
        client = self._client(tmp_path, session, fast_retry, sleeps)

        assert client.search("Ilica 1, Zagreb") == []
        assert client.search("  ilica 1,   ZAGREB ") == []
        assert len(session.calls) == 1
        assert sleeps == [1.1]

    def test_failure_returns_none_and_is_not_cached(self, tmp_path, fast_retry):
        session = FakeSession(FakeResponse(None, 503))
        client = self._client(tmp_path, session, fast_retry, [])

        assert client.search("Ilica 1, Zagreb") is None
        assert "Ilica 1, Zagreb" not in client.cache

    def test_unexpected_payload(self, tmp_path, fast_retry):
        session = FakeSession(FakeResponse({"error": "Unable to geocode"}))
        client = self._client(tmp_path, session, fast_retry, [])
        assert client.search("Ilica 1, Zagreb") is None
