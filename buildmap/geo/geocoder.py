"""
Geocode Resolver.

Tries every candidate address of a record against Nominatim and picks one
winning coordinate. Scoring is a pure function of the hit, the query that
produced it and the configured geofence, so the same cached responses always
yield the same winner.

Selection order:
1. Best hit per query (score desc, then the service's own ranking)
2. Best query per record (score desc, then candidate order)
3. If the winner is a bare square/place, one extra "name, address" query
   competes in the same pool
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

from ..core.config import Settings
from ..core.coordinates import BoundingBox
from ..core.models import CanonicalRecord, GeocodeHit, GeocodeResolution
from ..utils.logging_config import get_logger
from ..utils.validation import ValidationError, validate_coordinates
from .address_queries import AddressQueryGenerator, extract_house_number

logger = get_logger(__name__)


class GeocodingClient(Protocol):
    def search(self, query: str) -> Optional[list[dict]]:
        ...


@dataclass(frozen=True)
class HitWeights:
    """Score contributions for geocoder hits."""

    building_category: float = 120.0
    building_address_type: float = 100.0
    road_penalty: float = -80.0
    house_number_leading: float = 80.0
    house_number_inline: float = 50.0
    max_place_rank_bonus: float = 20.0


@dataclass(frozen=True)
class GeocoderConfig:
    """Values injected into the resolver; defaults target Zagreb."""

    city_bbox: Optional[BoundingBox] = field(
        default_factory=lambda: BoundingBox(45.60, 15.75, 45.97, 16.25)
    )
    weights: HitWeights = field(default_factory=HitWeights)
    place_categories: frozenset[str] = frozenset({"place"})
    place_address_types: frozenset[str] = frozenset({"square", "place"})
    name_assisted_queries: bool = True
    city_center: tuple[float, float] = (45.8131, 15.9772)
    country_bounds: BoundingBox = field(
        default_factory=lambda: BoundingBox(42.0, 13.0, 47.0, 19.5)
    )
    max_distance_from_center_km: float = 50.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "GeocoderConfig":
        city_bbox = BoundingBox.from_sequence(settings.city_bbox)
        return cls(
            city_bbox=city_bbox,
            city_center=tuple(settings.city_center or city_bbox.center),
            country_bounds=BoundingBox.from_sequence(settings.country_bbox),
            max_distance_from_center_km=settings.max_distance_from_center_km,
        )


@dataclass(frozen=True)
class ScoredHit:
    hit: GeocodeHit
    score: float
    in_bounds: bool
    query: str
    query_index: int
    hit_index: int

    @property
    def rank_key(self) -> tuple:
        # Lower sorts first
        return (-self.score, self.query_index, self.hit_index)


def score_hit(
    hit: GeocodeHit,
    query: str,
    weights: HitWeights = HitWeights(),
) -> float:
    """
    Deterministic desirability of a geocoder hit for ``query``.

    Building classification dominates, roads are penalized, house-number
    agreement between query and display text is rewarded, and more specific
    place ranks get a small bonus.
    """
    score = 0.0

    if hit.category == "building":
        score += weights.building_category
    if hit.address_type == "building":
        score += weights.building_address_type

    if hit.category == "highway" or hit.address_type == "road":
        score += weights.road_penalty

    house_number = extract_house_number(query)
    if house_number:
        display = hit.display_name.lower()
        if display.startswith(f"{house_number},"):
            score += weights.house_number_leading
        elif f" {house_number}," in display:
            score += weights.house_number_inline

    if hit.place_rank is not None:
        score += min(weights.max_place_rank_bonus, hit.place_rank)

    return score


def is_in_bounds(hit: GeocodeHit, bbox: Optional[BoundingBox]) -> bool:
    return bbox is None or bbox.contains(hit.lat, hit.lon)


def best_hit(scored: list[ScoredHit]) -> Optional[ScoredHit]:
    """Highest-ranked in-bounds hit; out-of-bounds hits are never selectable."""
    eligible = [s for s in scored if s.in_bounds]
    if not eligible:
        return None
    return min(eligible, key=lambda s: s.rank_key)


class GeocodeResolver:
    """Resolves one CanonicalRecord to at most one coordinate."""

    def __init__(
        self,
        client: GeocodingClient,
        generator: Optional[AddressQueryGenerator] = None,
        config: Optional[GeocoderConfig] = None,
    ):
        self.client = client
        self.generator = generator or AddressQueryGenerator()
        self.config = config or GeocoderConfig()

    def resolve(self, record: CanonicalRecord) -> GeocodeResolution:
        queries = self.generator.generate(record)
        pool: list[ScoredHit] = []
        tried: list[str] = []

        for index, query in enumerate(queries):
            pool.extend(self._score_query(query, index))
            tried.append(query)

        winner = best_hit(pool)

        if winner is not None and self._is_plain_place(winner.hit) and queries:
            assisted = f"{record.name}, {queries[0]}"
            if assisted.casefold() not in {q.casefold() for q in tried}:
                logger.info(
                    "Winner is a square/place, retrying with building name",
                    extra={"record_id": record.id, "query": assisted},
                )
                pool.extend(self._score_query(assisted, len(queries)))
                tried.append(assisted)
                winner = best_hit(pool)

        rejected = sum(1 for s in pool if not s.in_bounds)
        if rejected:
            logger.info(
                f"Geofence rejected {rejected} hit(s)",
                extra={"record_id": record.id},
            )

        if winner is None:
            logger.warning(
                f"No usable geocoding result after {len(tried)} queries",
                extra={"record_id": record.id},
            )
            return GeocodeResolution(addresses_tried=tried)

        hit = winner.hit
        resolution = GeocodeResolution(
            lat=hit.lat,
            lon=hit.lon,
            display_name=hit.display_name,
            query_used=winner.query,
            object_type=hit.osm_type,
            object_id=hit.osm_id,
            category=hit.category,
            address_type=hit.address_type,
            score=winner.score,
            name_assisted=winner.query_index >= len(queries),
            addresses_tried=tried,
        )

        try:
            resolution.warnings = validate_coordinates(
                hit.lat,
                hit.lon,
                country_bounds=self.config.country_bounds,
                city_center=self.config.city_center,
                max_distance_km=self.config.max_distance_from_center_km,
            )
        except ValidationError as e:
            resolution.warnings = [str(e)]
        for warning in resolution.warnings:
            logger.warning(warning, extra={"record_id": record.id})

        logger.info(
            f"Geocoded → ({hit.lat:.5f}, {hit.lon:.5f}) score={winner.score:.0f}",
            extra={"record_id": record.id, "query": winner.query},
        )
        return resolution

    def _score_query(self, query: str, query_index: int) -> list[ScoredHit]:
        payload = self.client.search(query)
        if not payload:
            return []

        scored = []
        for hit_index, item in enumerate(payload):
            hit = GeocodeHit.from_payload(item) if isinstance(item, dict) else None
            if hit is None:
                continue
            scored.append(ScoredHit(
                hit=hit,
                score=score_hit(hit, query, self.config.weights),
                in_bounds=is_in_bounds(hit, self.config.city_bbox),
                query=query,
                query_index=query_index,
                hit_index=hit_index,
            ))
        return scored

    def _is_plain_place(self, hit: GeocodeHit) -> bool:
        if not self.config.name_assisted_queries or hit.is_building:
            return False
        return (
            hit.category in self.config.place_categories
            or hit.address_type in self.config.place_address_types
        )
