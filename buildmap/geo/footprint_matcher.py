"""
Footprint Matcher for Buildmap

Turns a geocoded record into one OSM building footprint, or an explicit
reason why there is none.

Resolution order:
1. Manual override (authoritative)
2. Trusted reference (the geocoder's own building object)
3. Radius ladder over building-tagged ways/relations
4. Generic fallback over landmark structures (fountains, monuments, ...)

Usage:
    matcher = FootprintMatcher(overpass_client, MatcherConfig.from_settings(settings))
    resolution = matcher.match(record, geocode, override=None)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Protocol

from shapely.geometry import MultiPolygon, Point, Polygon
from shapely.geometry.base import BaseGeometry
from shapely.ops import unary_union

from ..core.config import Settings
from ..core.coordinates import centroid_distance_m, geodesic_area_m2, haversine_m
from ..core.models import (
    CanonicalRecord,
    Confidence,
    FootprintResolution,
    GeocodeResolution,
    MatchStatus,
    Override,
    ScoredCandidate,
    SpatialFeature,
    TagClass,
)
from ..utils.logging_config import get_logger
from ..utils.validation import validate_geometry
from .address_queries import dedupe_casefold, extract_house_number, split_segments

logger = get_logger(__name__)


class SpatialClient(Protocol):
    def buildings_around(self, lat: float, lon: float, radius_m: int) -> Optional[list[SpatialFeature]]:
        ...

    def generic_around(self, lat: float, lon: float, radius_m: int) -> Optional[list[SpatialFeature]]:
        ...

    def element(self, osm_type: str, osm_id: int) -> Optional[SpatialFeature]:
        ...


# =============================================================================
# CONFIGURATION
# =============================================================================


@dataclass(frozen=True)
class ScoreWeights:
    """Composite score terms. Containment dwarfs everything else."""

    containment: float = 10000.0
    house_number: float = 120.0
    street: float = 60.0
    distance_cap_m: float = 500.0
    area_cap: float = 2000.0
    area_divisor: float = 10.0
    tag_bonus: dict = field(default_factory=lambda: {
        TagClass.BUILDING: 25.0,
        TagClass.BUILDING_RELATION: 25.0,
        TagClass.BUILDING_PART: 0.0,
        TagClass.GENERIC: 0.0,
    })


@dataclass(frozen=True)
class MatcherConfig:
    radius_steps_m: tuple[int, ...] = (80, 120, 160, 200)
    landmark_radius_m: int = 300
    # Geocode classifications that suggest a landmark rather than a building
    landmark_categories: frozenset[str] = frozenset({
        "place", "amenity", "tourism", "historic", "man_made", "leisure",
    })
    building_address_types: frozenset[str] = frozenset({"building", "house"})

    strong_address_bonus: float = 60.0
    ambiguity_margin: float = 25.0
    part_merge_distance_m: float = 40.0
    part_merge_score_margin: float = 500.0

    generic_fallback: bool = True
    min_area_m2: float = 10.0
    max_area_m2: float = 100000.0
    top_candidates_limit: int = 5
    weights: ScoreWeights = field(default_factory=ScoreWeights)

    @classmethod
    def from_settings(cls, settings: Settings) -> "MatcherConfig":
        return cls(
            radius_steps_m=tuple(settings.radius_steps_m),
            landmark_radius_m=settings.landmark_radius_m,
            generic_fallback=settings.generic_fallback,
            min_area_m2=settings.min_footprint_area_m2,
            max_area_m2=settings.max_footprint_area_m2,
        )


# =============================================================================
# PURE SCORING
# =============================================================================


def record_address_variants(record: CanonicalRecord) -> list[str]:
    """Every known spelling of the record's address, single-segment, deduplicated."""
    sources = [record.primary_address or ""]
    for part in record.address_parts:
        sources.extend([part.normalized, part.raw])
    sources.extend([record.address_raw or "", record.address])

    variants = []
    for source in sources:
        variants.extend(split_segments(source or ""))
    return dedupe_casefold(variants)


def address_bonus(tags: dict, variants: list[str], weights: ScoreWeights = ScoreWeights()) -> float:
    """
    Best agreement between a feature's addr:* tags and any address variant.

    House number equality (case-insensitive) and the tagged street name
    appearing inside the variant each add their weight.
    """
    osm_house_number = str(tags.get("addr:housenumber") or "").strip().lower()
    osm_street = str(tags.get("addr:street") or "").strip().lower()
    if not osm_house_number and not osm_street:
        return 0.0

    best = 0.0
    for variant in variants:
        bonus = 0.0
        house_number = extract_house_number(variant)
        if house_number and osm_house_number and house_number == osm_house_number:
            bonus += weights.house_number
        if osm_street and osm_street in variant.lower():
            bonus += weights.street
        best = max(best, bonus)
    return best


def score_candidate(
    feature: SpatialFeature,
    lat: float,
    lon: float,
    variants: list[str],
    weights: ScoreWeights = ScoreWeights(),
) -> ScoredCandidate:
    """
    Score one footprint against the geocoded point.

    score = containment + address bonus + tag bonus
            + max(0, 500 - distance) + max(0, 2000 - area / 10)
    """
    contains = bool(feature.geometry.covers(Point(lon, lat)))
    # Millimetre and 6-decimal rounding keep mirror-image candidates exactly tied
    distance = round(centroid_distance_m(feature.geometry, lat, lon), 3)
    area = round(geodesic_area_m2(feature.geometry), 3)
    bonus = address_bonus(feature.tags, variants, weights)
    tag_bonus = weights.tag_bonus.get(feature.tag_class, 0.0)
    containment_bonus = weights.containment if contains else 0.0

    score = (
        containment_bonus
        + bonus
        + tag_bonus
        + max(0.0, weights.distance_cap_m - distance)
        + max(0.0, weights.area_cap - area / weights.area_divisor)
    )
    return ScoredCandidate(
        feature=feature,
        contains=contains,
        distance_m=distance,
        area_m2=area,
        address_bonus=bonus,
        tag_bonus=tag_bonus,
        containment_bonus=containment_bonus,
        score=round(score, 6),
    )


def rank_key(candidate: ScoredCandidate) -> tuple:
    return (-candidate.score, candidate.area_m2, candidate.distance_m, candidate.feature.sort_key)


def rank_candidates(scored: list[ScoredCandidate]) -> list[ScoredCandidate]:
    """Containing candidates only when any exist, best first."""
    containing = [c for c in scored if c.contains]
    pool = containing if containing else list(scored)
    return sorted(pool, key=rank_key)


def assign_confidence(candidate: ScoredCandidate, strong_bonus: float = 60.0) -> tuple[Confidence, str]:
    """Confidence label and the signal name that earned it."""
    strong = candidate.address_bonus >= strong_bonus
    if candidate.contains and strong:
        return Confidence.HIGH, "point_containment_with_address"
    if candidate.contains:
        return Confidence.MEDIUM, "point_containment_only"
    if strong:
        return Confidence.MEDIUM, "address_match_only"
    return Confidence.LOW, "nearest_candidate"


def is_ambiguous(ranked: list[ScoredCandidate], margin: float = 25.0, strong_bonus: float = 60.0) -> bool:
    """Top two are near-tied and neither has containment or a strong address bonus."""
    if len(ranked) < 2:
        return False
    first, second = ranked[0], ranked[1]
    if abs(first.score - second.score) > margin:
        return False
    return not any(c.contains or c.address_bonus >= strong_bonus for c in (first, second))


def mergeable_parts(
    winner: ScoredCandidate,
    scored: list[ScoredCandidate],
    max_distance_m: float = 40.0,
    score_margin: float = 500.0,
) -> list[ScoredCandidate]:
    """
    Building parts that belong with a winning part, winner included.

    A part qualifies when its centroid is within ``max_distance_m`` of the
    winner's centroid and its score without the containment term is within
    ``score_margin`` of the winner's.

    One qualifying sibling is enough: the winner plus that sibling is a
    group of two, and any group larger than the winner alone is merged.
    """
    if winner.feature.tag_class != TagClass.BUILDING_PART:
        return [winner]

    anchor = winner.feature.geometry.centroid
    group = [winner]
    for candidate in scored:
        if candidate.ref == winner.ref or candidate.feature.tag_class != TagClass.BUILDING_PART:
            continue
        centroid = candidate.feature.geometry.centroid
        if haversine_m(anchor.y, anchor.x, centroid.y, centroid.x) > max_distance_m:
            continue
        if abs(candidate.signal_score - winner.signal_score) > score_margin:
            continue
        group.append(candidate)

    return sorted(group, key=lambda c: c.feature.sort_key)


def merge_geometries(geometries: list[BaseGeometry]) -> MultiPolygon:
    """Collect polygons into one MultiPolygon, one member per input polygon."""
    polygons: list[Polygon] = []
    for geometry in geometries:
        if isinstance(geometry, Polygon):
            polygons.append(geometry)
        elif isinstance(geometry, MultiPolygon):
            polygons.extend(geometry.geoms)
    return MultiPolygon(polygons)


def _is_usable(feature: SpatialFeature) -> bool:
    geometry = feature.geometry
    return (
        isinstance(geometry, (Polygon, MultiPolygon))
        and not geometry.is_empty
        and geometry.is_valid
    )


# =============================================================================
# MATCHER
# =============================================================================


@dataclass
class _Decision:
    """Outcome of ranking one batch of candidates."""

    winner: ScoredCandidate
    group: list[ScoredCandidate]
    confidence: Confidence
    strategy: str
    ambiguous: bool
    ranked: list[ScoredCandidate]


class FootprintMatcher:
    """
    Per-record footprint state machine.

    Terminal statuses: matched, matched_parts_merged, ambiguous, not_found,
    invalid, skipped_no_coordinates.
    """

    def __init__(self, client: SpatialClient, config: Optional[MatcherConfig] = None):
        self.client = client
        self.config = config or MatcherConfig()

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def match(
        self,
        record: CanonicalRecord,
        geocode: GeocodeResolution,
        override: Optional[Override] = None,
    ) -> FootprintResolution:
        # === STEP 1: Nothing to search around ===
        if not geocode.is_resolved:
            logger.info("No coordinates, skipping footprint", extra={"record_id": record.id})
            return FootprintResolution(
                status=MatchStatus.SKIPPED_NO_COORDINATES,
                strategy="no_coordinates",
            )

        lat, lon = geocode.lat, geocode.lon
        variants = record_address_variants(record)

        # === STEP 2: Manual override ===
        if override is not None:
            resolution = self._from_override(record, override, lat, lon, variants)
            if resolution is not None:
                return resolution

        # === STEP 3: Geocoder's own building object ===
        resolution = self._from_reference(record, geocode, lat, lon, variants)
        if resolution is not None:
            return resolution

        # === STEP 4: Radius ladder ===
        radii_tried: list[int] = []
        for radius in self.radius_steps(geocode):
            radii_tried.append(radius)
            features = self.client.buildings_around(lat, lon, radius)
            if features is None:
                logger.warning(
                    "Building search failed, trying next radius",
                    extra={"record_id": record.id, "radius_m": radius},
                )
                continue

            usable = [f for f in features if _is_usable(f)]
            if not usable:
                logger.debug("No building candidates", extra={"record_id": record.id, "radius_m": radius})
                continue

            scored = [score_candidate(f, lat, lon, variants, self.config.weights) for f in usable]
            decision = self._decide(scored, prefix=f"radius_{radius}m_", merge_parts=True)
            return self._finalize(record, decision, radii_tried)

        # === STEP 5: Generic landmark structures ===
        if self.config.generic_fallback and radii_tried:
            radius = max(radii_tried)
            features = self.client.generic_around(lat, lon, radius)
            usable = [f for f in features or [] if _is_usable(f)]
            if usable:
                scored = [score_candidate(f, lat, lon, variants, self.config.weights) for f in usable]
                decision = self._decide(
                    scored,
                    prefix=f"fallback_generic_{radius}m_",
                    merge_parts=False,
                    max_confidence=Confidence.MEDIUM,
                )
                return self._finalize(record, decision, radii_tried)

        logger.warning(
            f"No footprint within {max(radii_tried, default=0)}m",
            extra={"record_id": record.id},
        )
        return FootprintResolution(
            status=MatchStatus.NOT_FOUND,
            strategy="radius_ladder_exhausted",
            radii_tried=sorted(set(radii_tried)),
        )

    def radius_steps(self, geocode: GeocodeResolution) -> list[int]:
        """Ascending, duplicate-free search radii, with the landmark step when needed."""
        radii = set(self.config.radius_steps_m)
        if self._looks_like_landmark(geocode):
            radii.add(self.config.landmark_radius_m)
        return sorted(radii)

    # =========================================================================
    # INTERNAL: OVERRIDE AND REFERENCE
    # =========================================================================

    def _from_override(
        self,
        record: CanonicalRecord,
        override: Override,
        lat: float,
        lon: float,
        variants: list[str],
    ) -> Optional[FootprintResolution]:
        feature = self.client.element(override.object_type, override.object_id)
        if feature is None:
            logger.warning(
                "Override object unavailable, falling back to search",
                extra={"record_id": record.id, "osm_ref": override.ref},
            )
            return None

        candidate = score_candidate(feature, lat, lon, variants, self.config.weights)
        validation = validate_geometry(feature.geometry, self.config.min_area_m2, self.config.max_area_m2)

        if not validation.is_valid:
            logger.warning(
                f"Override geometry rejected: {'; '.join(validation.errors)}",
                extra={"record_id": record.id, "osm_ref": override.ref},
            )
            return FootprintResolution(
                status=MatchStatus.INVALID,
                object_references=[override.ref],
                strategy="override_direct",
                top_candidates=[candidate.to_dict()],
                validation_errors=validation.errors,
            )

        logger.info("Matched via override", extra={"record_id": record.id, "osm_ref": override.ref})
        return FootprintResolution(
            status=MatchStatus.MATCHED,
            geometry=feature.geometry,
            object_references=[override.ref],
            strategy="override_direct",
            confidence=Confidence.HIGH,
            top_candidates=[candidate.to_dict()],
        )

    def _from_reference(
        self,
        record: CanonicalRecord,
        geocode: GeocodeResolution,
        lat: float,
        lon: float,
        variants: list[str],
    ) -> Optional[FootprintResolution]:
        ref = geocode.object_ref
        if ref is None or not geocode.is_building:
            return None

        feature = self.client.element(geocode.object_type, geocode.object_id)
        if feature is None:
            logger.debug("Geocoder reference unavailable", extra={"record_id": record.id, "osm_ref": ref})
            return None

        validation = validate_geometry(feature.geometry, self.config.min_area_m2, self.config.max_area_m2)
        if not validation.is_valid:
            logger.info(
                f"Geocoder reference failed validation: {'; '.join(validation.errors)}",
                extra={"record_id": record.id, "osm_ref": ref},
            )
            return None

        candidate = score_candidate(feature, lat, lon, variants, self.config.weights)
        confidence, signal = assign_confidence(candidate, self.config.strong_address_bonus)
        if confidence == Confidence.LOW:
            confidence = Confidence.MEDIUM

        logger.info("Matched via geocoder reference", extra={"record_id": record.id, "osm_ref": ref})
        return FootprintResolution(
            status=MatchStatus.MATCHED,
            geometry=feature.geometry,
            object_references=[ref],
            strategy=f"geocoder_reference_{signal}",
            confidence=confidence,
            top_candidates=[candidate.to_dict()],
        )

    # =========================================================================
    # INTERNAL: RANKING AND OUTCOME
    # =========================================================================

    def _decide(
        self,
        scored: list[ScoredCandidate],
        prefix: str,
        merge_parts: bool,
        max_confidence: Optional[Confidence] = None,
    ) -> _Decision:
        cfg = self.config
        ranked = rank_candidates(scored)
        winner = ranked[0]
        confidence, signal = assign_confidence(winner, cfg.strong_address_bonus)

        if max_confidence == Confidence.MEDIUM and confidence == Confidence.HIGH:
            confidence = Confidence.MEDIUM

        group = [winner]
        if merge_parts:
            group = mergeable_parts(winner, scored, cfg.part_merge_distance_m, cfg.part_merge_score_margin)

        strategy = f"{prefix}{signal}"
        ambiguous = False
        if len(group) > 1:
            strategy += "_parts_merged"
        elif is_ambiguous(ranked, cfg.ambiguity_margin, cfg.strong_address_bonus):
            ambiguous = True
            confidence = Confidence.LOW
            strategy += "_ambiguous_top2"

        return _Decision(
            winner=winner,
            group=group,
            confidence=confidence,
            strategy=strategy,
            ambiguous=ambiguous,
            ranked=sorted(scored, key=rank_key),
        )

    def _finalize(
        self,
        record: CanonicalRecord,
        decision: _Decision,
        radii_tried: list[int],
    ) -> FootprintResolution:
        refs = [c.ref for c in decision.group]
        top = [c.to_dict() for c in decision.ranked[: self.config.top_candidates_limit]]

        if len(decision.group) > 1:
            geometry = merge_geometries([c.feature.geometry for c in decision.group])
            # Adjacent parts share edges, so check the dissolved outline
            validation = validate_geometry(
                unary_union([c.feature.geometry for c in decision.group]),
                self.config.min_area_m2,
                self.config.max_area_m2,
            )
            status = MatchStatus.MATCHED_PARTS_MERGED
        else:
            geometry = decision.winner.feature.geometry
            validation = validate_geometry(geometry, self.config.min_area_m2, self.config.max_area_m2)
            status = MatchStatus.AMBIGUOUS if decision.ambiguous else MatchStatus.MATCHED

        if not validation.is_valid:
            logger.warning(
                f"Selected footprint rejected: {'; '.join(validation.errors)}",
                extra={"record_id": record.id, "osm_ref": refs[0]},
            )
            return FootprintResolution(
                status=MatchStatus.INVALID,
                object_references=refs,
                strategy=decision.strategy,
                radii_tried=sorted(set(radii_tried)),
                top_candidates=top,
                validation_errors=validation.errors,
            )

        logger.info(
            f"{status.value} ({decision.confidence.value}) via {decision.strategy}",
            extra={"record_id": record.id, "osm_ref": ",".join(refs)},
        )
        return FootprintResolution(
            status=status,
            geometry=geometry,
            object_references=refs,
            strategy=decision.strategy,
            confidence=decision.confidence,
            radii_tried=sorted(set(radii_tried)),
            top_candidates=top,
        )

    def _looks_like_landmark(self, geocode: GeocodeResolution) -> bool:
        if geocode.is_building:
            return False
        if geocode.category in self.config.landmark_categories:
            return True
        return geocode.address_type not in self.config.building_address_types
