"""
Pytest configuration and fixtures for Buildmap tests.

Provides reusable test fixtures for:
- Canonical records and geocode resolutions
- Square footprints placed by metric offsets around a point
- Fake HTTP sessions and fake geocoding/spatial clients (no live network)
"""

import math
from typing import Dict, List, Optional

import pytest
import requests
from shapely.geometry import Polygon

from buildmap.core.models import CanonicalRecord, GeocodeResolution, SpatialFeature, TagClass
from buildmap.utils.retry import RetryConfig


# Zagreb, Trg bana Jelačića
CENTER_LAT = 45.8131
CENTER_LON = 15.9772

METERS_PER_DEG_LAT = 111320.0


# =============================================================================
# GEOMETRY HELPERS
# =============================================================================

def offset(lat: float, lon: float, east_m: float = 0.0, north_m: float = 0.0):
    """Point shifted by a metric offset, as (lat, lon)."""
    dlat = north_m / METERS_PER_DEG_LAT
    dlon = east_m / (METERS_PER_DEG_LAT * math.cos(math.radians(lat)))
    return lat + dlat, lon + dlon


def square(lat: float, lon: float, half_size_m: float, east_m: float = 0.0, north_m: float = 0.0) -> Polygon:
    """Axis-aligned square footprint of side 2*half_size_m centred at an offset from (lat, lon)."""
    clat, clon = offset(lat, lon, east_m, north_m)
    dlat = half_size_m / METERS_PER_DEG_LAT
    dlon = half_size_m / (METERS_PER_DEG_LAT * math.cos(math.radians(clat)))
    return Polygon([
        (clon - dlon, clat - dlat),
        (clon + dlon, clat - dlat),
        (clon + dlon, clat + dlat),
        (clon - dlon, clat + dlat),
        (clon - dlon, clat - dlat),
    ])


def make_feature(
    osm_id: int,
    geometry,
    tags: Optional[dict] = None,
    tag_class: TagClass = TagClass.BUILDING,
    osm_type: str = "way",
) -> SpatialFeature:
    if tags is None:
        tags = {"building:part": "yes"} if tag_class == TagClass.BUILDING_PART else {"building": "yes"}
    return SpatialFeature(osm_type, osm_id, geometry, tags, tag_class)


# =============================================================================
# FAKE HTTP
# =============================================================================

class FakeResponse:
    """Stand-in for requests.Response."""

    def __init__(self, payload=None, status_code: int = 200):
        self._payload = payload
        self.status_code = status_code

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """
    Replays queued responses in order and records every call.

    Once the queue holds a single response it is reused for all further calls.
    """

    def __init__(self, *responses: FakeResponse):
        self.responses = list(responses)
        self.calls: List[Dict] = []

    def _next(self, method: str, url: str, **kwargs) -> FakeResponse:
        self.calls.append({"method": method, "url": url, **kwargs})
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    def get(self, url, **kwargs):
        return self._next("get", url, **kwargs)

    def post(self, url, **kwargs):
        return self._next("post", url, **kwargs)

    def close(self):
        pass


# =============================================================================
# FAKE CLIENTS
# =============================================================================

class FakeGeocodingClient:
    """Answers geocoder queries from a dict; unknown queries return []."""

    def __init__(self, answers: Optional[Dict[str, Optional[list]]] = None):
        self.answers = answers or {}
        self.queries: List[str] = []

    def search(self, query: str):
        self.queries.append(query)
        return self.answers.get(query, [])


class FakeSpatialClient:
    """Answers Overpass lookups from in-memory features."""

    def __init__(
        self,
        by_radius: Optional[Dict[int, Optional[list]]] = None,
        generic: Optional[list] = None,
        elements: Optional[Dict[str, SpatialFeature]] = None,
    ):
        self.by_radius = by_radius or {}
        self.generic = generic or []
        self.elements = elements or {}
        self.building_calls: List[int] = []
        self.generic_calls: List[int] = []
        self.element_calls: List[str] = []

    def buildings_around(self, lat, lon, radius_m):
        self.building_calls.append(radius_m)
        return self.by_radius.get(radius_m, [])

    def generic_around(self, lat, lon, radius_m):
        self.generic_calls.append(radius_m)
        return self.generic

    def element(self, osm_type, osm_id):
        ref = f"{osm_type}/{osm_id}"
        self.element_calls.append(ref)
        return self.elements.get(ref)


def nominatim_hit(
    lat: float,
    lon: float,
    display_name: str = "",
    category: str = "building",
    addresstype: str = "building",
    place_rank: int = 30,
    osm_type: str = "node",
    osm_id: int = 1,
) -> dict:
    """A Nominatim jsonv2 search result item."""
    return {
        "lat": str(lat),
        "lon": str(lon),
        "display_name": display_name,
        "category": category,
        "type": "yes",
        "addresstype": addresstype,
        "place_rank": place_rank,
        "osm_type": osm_type,
        "osm_id": osm_id,
    }


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def fast_retry() -> RetryConfig:
    """Retry config that never waits noticeably."""
    return RetryConfig(max_retries=2, base_delay=0.01, max_delay=0.02, jitter=False)


@pytest.fixture
def main_st_record() -> CanonicalRecord:
    return CanonicalRecord(id="x", name="Main Street House", address="Main St 10, City")


@pytest.fixture
def building_geocode() -> GeocodeResolution:
    """Geocode that resolved to a building-classified node at the city centre."""
    return GeocodeResolution(
        lat=CENTER_LAT,
        lon=CENTER_LON,
        display_name="10, Main St, City",
        query_used="Main St 10, City, Croatia",
        object_type="node",
        object_id=1,
        category="building",
        address_type="building",
        score=320.0,
    )


@pytest.fixture
def square_geocode() -> GeocodeResolution:
    """Geocode that only found a public square."""
    return GeocodeResolution(
        lat=CENTER_LAT,
        lon=CENTER_LON,
        display_name="Trg bana Josipa Jelačića, Zagreb",
        object_type="way",
        object_id=77,
        category="place",
        address_type="square",
        score=20.0,
    )
