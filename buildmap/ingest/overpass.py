"""
OpenStreetMap footprint fetcher using the Overpass API.

No account required - uses public Overpass API endpoints.
Rate-limited to be respectful to public infrastructure.

Responses are raw element graphs (nodes, ways, relations). They are cached
verbatim and converted to shapely polygons on every read, so a change in
parsing never requires refetching.
"""

from __future__ import annotations

import time
from typing import Any, Callable, Iterable, Optional

import requests
from shapely.geometry import LineString, MultiPolygon, Polygon
from shapely.ops import polygonize, unary_union

from ..core.config import Settings
from ..core.models import SpatialFeature, TagClass
from ..utils.logging_config import get_logger
from ..utils.retry import RetryConfig, RetryableRequest
from .cache import ResponseCache

logger = get_logger(__name__)

# Non-building structures considered by the generic fallback
GENERIC_KEYS = ("amenity", "tourism", "historic", "man_made")

KIND_BUILDINGS = "buildings"
KIND_GENERIC = "generic"


def buildings_around_query(lat: float, lon: float, radius_m: int) -> str:
    """Building ways/relations, building parts and type=building relations near a point."""
    around = f"(around:{radius_m},{lat},{lon})"
    return f"""
[out:json][timeout:25];
(
  way["building"]{around};
  relation["building"]{around};
  way["building:part"]{around};
  relation["building:part"]{around};
  relation["type"="building"]{around};
);
(._;>;);
out body;
"""


def generic_around_query(lat: float, lon: float, radius_m: int) -> str:
    """Tagged non-building structures (landmarks, monuments, fountains) near a point."""
    around = f"(around:{radius_m},{lat},{lon})"
    selectors = "\n".join(
        f'  way["{key}"]{around};\n  relation["{key}"]["type"="multipolygon"]{around};'
        for key in GENERIC_KEYS
    )
    return f"""
[out:json][timeout:25];
(
{selectors}
);
(._;>;);
out body;
"""


def element_query(osm_type: str, osm_id: int) -> str:
    """A single way or relation with everything it references."""
    return f"""
[out:json][timeout:25];
{osm_type}({osm_id});
(._;>;);
out body;
"""


def around_cache_key(kind: str, lat: float, lon: float, radius_m: int) -> str:
    return f"{kind}:around:{lat:.7f},{lon:.7f},{radius_m}"


def element_cache_key(osm_type: str, osm_id: int) -> str:
    return f"{osm_type}/{osm_id}"


class OverpassClient:
    """
    Fetch building footprints from OpenStreetMap.

    Every method returns a list of SpatialFeature (possibly empty), or None
    when the request failed for good.
    """

    def __init__(
        self,
        cache: ResponseCache,
        request: RetryableRequest,
        url: str = "https://overpass-api.de/api/interpreter",
        user_agent: str = "buildmap/0.1",
        request_delay: float = 1.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.cache = cache
        self.request = request
        self.url = url
        self.user_agent = user_agent
        self.request_delay = request_delay
        self._sleep = sleep
        self.live_requests = 0

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        session: Optional[requests.Session] = None,
        cache: Optional[ResponseCache] = None,
    ) -> "OverpassClient":
        retry = RetryConfig(
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay_s,
            max_delay=settings.retry_max_delay_s,
        )
        return cls(
            cache=cache if cache is not None else ResponseCache(settings.overpass_cache_path),
            request=RetryableRequest(retry, session=session, timeout=settings.request_timeout_s),
            url=settings.overpass_url,
            user_agent=settings.user_agent,
            request_delay=settings.overpass_delay_s,
        )

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def buildings_around(self, lat: float, lon: float, radius_m: int) -> Optional[list[SpatialFeature]]:
        key = around_cache_key(KIND_BUILDINGS, lat, lon, radius_m)
        meta = {"lat": lat, "lon": lon, "radius_m": radius_m, "kind": KIND_BUILDINGS}
        payload = self._fetch(key, buildings_around_query(lat, lon, radius_m), meta)
        if payload is None:
            return None
        return elements_to_features(payload)

    def generic_around(self, lat: float, lon: float, radius_m: int) -> Optional[list[SpatialFeature]]:
        key = around_cache_key(KIND_GENERIC, lat, lon, radius_m)
        meta = {"lat": lat, "lon": lon, "radius_m": radius_m, "kind": KIND_GENERIC}
        payload = self._fetch(key, generic_around_query(lat, lon, radius_m), meta)
        if payload is None:
            return None
        return elements_to_features(payload, include_generic=True)

    def element(self, osm_type: str, osm_id: int) -> Optional[SpatialFeature]:
        """Fetch one way/relation by identity; None if unavailable or not a polygon."""
        key = element_cache_key(osm_type, osm_id)
        meta = {"osm_type": osm_type, "osm_id": osm_id}
        payload = self._fetch(key, element_query(osm_type, osm_id), meta)
        if payload is None:
            return None
        for feature in elements_to_features(payload, include_generic=True, include_untagged=True):
            if feature.osm_type == osm_type and feature.osm_id == osm_id:
                return feature
        return None

    # =========================================================================
    # INTERNAL: HTTP + CACHE
    # =========================================================================

    def _fetch(self, key: str, query: str, meta: dict[str, Any]) -> Optional[dict[str, Any]]:
        cached = self.cache.get(key)
        if cached is not None:
            logger.debug("Overpass cache hit", extra={"osm_ref": key})
            return cached.get("overpass", {})

        radius = meta.get("radius_m")
        try:
            logger.info(
                "Fetching data from OpenStreetMap",
                extra={"osm_ref": key, "radius_m": radius},
            )
            response = self.request.post(
                self.url,
                data={"data": query},
                headers={"User-Agent": self.user_agent},
            )
            payload = response.json()
        except requests.RequestException as e:
            logger.warning(
                f"Overpass request failed: {e}",
                extra={
                    "osm_ref": key,
                    "radius_m": radius,
                    "attempts": getattr(e, "attempts", 1),
                    "error_type": type(e).__name__,
                },
            )
            return None
        except ValueError as e:
            logger.warning(f"Overpass returned invalid JSON: {e}", extra={"osm_ref": key})
            return None
        finally:
            self.live_requests += 1
            self._sleep(self.request_delay)

        if not isinstance(payload, dict):
            logger.warning("Overpass returned an unexpected payload", extra={"osm_ref": key})
            return None

        self.cache.put(key, {"meta": meta, "overpass": payload})
        return payload


# =============================================================================
# ELEMENT GRAPH -> POLYGONS
# =============================================================================


def classify_tags(tags: dict, include_generic: bool = False) -> Optional[TagClass]:
    """Tag class of an element, or None if it is not a candidate footprint."""
    if tags.get("type") == "building":
        return TagClass.BUILDING_RELATION
    if tags.get("building", "no") != "no":
        return TagClass.BUILDING
    if tags.get("building:part", "no") != "no":
        return TagClass.BUILDING_PART
    if include_generic and any(key in tags for key in GENERIC_KEYS):
        return TagClass.GENERIC
    return None


def elements_to_features(
    payload: dict[str, Any],
    include_generic: bool = False,
    include_untagged: bool = False,
) -> list[SpatialFeature]:
    """
    Convert an Overpass element graph into polygon features.

    One feature per tagged way or relation that closes into a polygon,
    sorted by (osm_type, osm_id).
    """
    elements = payload.get("elements", [])

    nodes: dict[int, tuple[float, float]] = {}
    ways: dict[int, dict] = {}
    relations: dict[int, dict] = {}

    for element in elements:
        kind = element.get("type")
        if kind == "node" and "lat" in element and "lon" in element:
            nodes[element["id"]] = (element["lon"], element["lat"])
        elif kind == "way":
            ways[element["id"]] = element
        elif kind == "relation":
            relations[element["id"]] = element

    features = []

    for way_id, way in ways.items():
        tags = way.get("tags") or {}
        tag_class = classify_tags(tags, include_generic)
        if tag_class is None:
            if not include_untagged:
                continue
            tag_class = TagClass.GENERIC
        polygon = _way_polygon(way, nodes)
        if polygon is None:
            continue
        features.append(SpatialFeature("way", way_id, polygon, tags, tag_class))

    for relation_id, relation in relations.items():
        tags = relation.get("tags") or {}
        tag_class = classify_tags(tags, include_generic)
        if tag_class is None:
            if not include_untagged:
                continue
            tag_class = TagClass.GENERIC
        geometry = _relation_geometry(relation, ways, relations, nodes)
        if geometry is None:
            continue
        features.append(SpatialFeature("relation", relation_id, geometry, tags, tag_class))

    features.sort(key=lambda f: f.sort_key)
    return features


def _way_coords(way: dict, nodes: dict[int, tuple[float, float]]) -> Optional[list[tuple[float, float]]]:
    if "geometry" in way:
        # "out geom" style responses carry coordinates inline
        return [(p["lon"], p["lat"]) for p in way["geometry"] if p]

    coords = []
    for node_id in way.get("nodes", []):
        if node_id not in nodes:
            return None
        coords.append(nodes[node_id])
    return coords


def _way_polygon(way: dict, nodes: dict[int, tuple[float, float]]) -> Optional[Polygon]:
    coords = _way_coords(way, nodes)
    if not coords or len(coords) < 4 or coords[0] != coords[-1]:
        return None
    return Polygon(coords)


def _member_lines(
    members: Iterable[dict],
    roles: tuple[str, ...],
    ways: dict[int, dict],
    nodes: dict[int, tuple[float, float]],
) -> list[LineString]:
    lines = []
    for member in members:
        if member.get("type") != "way" or member.get("role", "") not in roles:
            continue
        way = ways.get(member.get("ref"))
        if way is None:
            continue
        coords = _way_coords(way, nodes)
        if coords and len(coords) >= 2:
            lines.append(LineString(coords))
    return lines


def _polygonal(geometry) -> Optional[Polygon | MultiPolygon]:
    if geometry is None or geometry.is_empty:
        return None
    if isinstance(geometry, (Polygon, MultiPolygon)):
        return geometry
    polygons = [g for g in getattr(geometry, "geoms", []) if isinstance(g, Polygon)]
    if not polygons:
        return None
    return polygons[0] if len(polygons) == 1 else MultiPolygon(polygons)


def _relation_geometry(
    relation: dict,
    ways: dict[int, dict],
    relations: dict[int, dict],
    nodes: dict[int, tuple[float, float]],
    depth: int = 0,
) -> Optional[Polygon | MultiPolygon]:
    members = relation.get("members", [])
    tags = relation.get("tags") or {}

    if tags.get("type") == "building":
        # Building relations point at their outline; parts carry no footprint of their own
        outline_ways = _member_lines(members, ("outline",), ways, nodes)
        if outline_ways:
            return _polygonal(unary_union(list(polygonize(unary_union(outline_ways)))))
        if depth < 2:
            for member in members:
                nested = relations.get(member.get("ref"))
                if member.get("type") == "relation" and member.get("role") == "outline" and nested:
                    return _relation_geometry(nested, ways, relations, nodes, depth + 1)
        return None

    outer_lines = _member_lines(members, ("outer", ""), ways, nodes)
    if not outer_lines:
        return None
    outer = unary_union(list(polygonize(unary_union(outer_lines))))
    if outer.is_empty:
        return None

    inner_lines = _member_lines(members, ("inner",), ways, nodes)
    if inner_lines:
        inner = unary_union(list(polygonize(unary_union(inner_lines))))
        if not inner.is_empty:
            outer = outer.difference(inner)

    return _polygonal(outer)
