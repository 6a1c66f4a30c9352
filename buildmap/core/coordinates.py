"""
Coordinate utilities.

Everything here works in WGS84 (EPSG:4326), the system used by both
Nominatim and Overpass:
- great-circle distances between points
- geodesic polygon areas in square meters
- bounding boxes used for geofencing geocoder hits
"""

from __future__ import annotations

import math
from dataclasses import dataclass

from pyproj import Geod
from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.geometry.polygon import orient

EARTH_RADIUS_M = 6371000.0

_GEOD = Geod(ellps="WGS84")


@dataclass(frozen=True)
class BoundingBox:
    """Latitude/longitude bounding box in WGS84. Edges are inclusive."""

    min_lat: float
    min_lon: float
    max_lat: float
    max_lon: float

    def __post_init__(self):
        if self.min_lat > self.max_lat or self.min_lon > self.max_lon:
            raise ValueError(f"Degenerate bounding box: {self}")

    @property
    def center(self) -> tuple[float, float]:
        """Center as (lat, lon)."""
        return ((self.min_lat + self.max_lat) / 2, (self.min_lon + self.max_lon) / 2)

    def contains(self, lat: float, lon: float) -> bool:
        return self.min_lat <= lat <= self.max_lat and self.min_lon <= lon <= self.max_lon

    def to_tuple(self) -> tuple[float, float, float, float]:
        """Return as (min_lat, min_lon, max_lat, max_lon)."""
        return (self.min_lat, self.min_lon, self.max_lat, self.max_lon)

    @classmethod
    def from_sequence(cls, values) -> "BoundingBox":
        min_lat, min_lon, max_lat, max_lon = (float(v) for v in values)
        return cls(min_lat=min_lat, min_lon=min_lon, max_lat=max_lat, max_lon=max_lon)


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in meters between two points."""
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)

    a = (math.sin(dphi / 2) ** 2
         + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2)
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))


def _oriented(geometry: BaseGeometry) -> BaseGeometry:
    # Shells counter-clockwise, holes clockwise
    if isinstance(geometry, Polygon):
        return orient(geometry, 1.0)
    if isinstance(geometry, MultiPolygon):
        return MultiPolygon([orient(part, 1.0) for part in geometry.geoms])
    return geometry


def geodesic_area_m2(geometry: BaseGeometry) -> float:
    """
    Area of a lon/lat polygon or multipolygon in square meters.

    Rings are reoriented first, so holes are subtracted whatever the winding
    order of the input.
    """
    if geometry is None or geometry.is_empty:
        return 0.0
    area, _perimeter = _GEOD.geometry_area_perimeter(_oriented(geometry))
    return abs(area)


def centroid_distance_m(geometry: BaseGeometry, lat: float, lon: float) -> float:
    """Distance in meters from (lat, lon) to the geometry's centroid."""
    if geometry is None or geometry.is_empty:
        return float("inf")
    centroid = geometry.centroid
    return haversine_m(lat, lon, centroid.y, centroid.x)
