"""
Data models for building records and their resolutions.

Input records and overrides are pydantic models (validated once, at load
time). Everything produced by the pipeline is a plain dataclass.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from shapely.geometry import mapping
from shapely.geometry.base import BaseGeometry


# =============================================================================
# ENUMS
# =============================================================================


class MatchStatus(str, Enum):
    MATCHED = "matched"
    MATCHED_PARTS_MERGED = "matched_parts_merged"
    AMBIGUOUS = "ambiguous"
    NOT_FOUND = "not_found"
    INVALID = "invalid"
    SKIPPED_NO_COORDINATES = "skipped_no_coordinates"


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TagClass(str, Enum):
    BUILDING = "building"
    BUILDING_PART = "building_part"
    BUILDING_RELATION = "building_relation"
    GENERIC = "generic"


# =============================================================================
# INPUT SCHEMA (canonical records produced by the normalization stage)
# =============================================================================


class AddressPart(BaseModel):
    """One machine-parsed segment of a record's address."""

    model_config = ConfigDict(frozen=True)

    raw: str
    normalized: str = ""
    street: str = ""
    house_number: str = ""


class CanonicalRecord(BaseModel):
    """A cleaned, uniquely identified building entry prior to geocoding."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    name: str
    address: str = Field(description="Normalized, possibly multi-segment ('/') address")
    address_raw: Optional[str] = None
    primary_address: Optional[str] = None
    address_parts: tuple[AddressPart, ...] = ()

    @field_validator("id")
    @classmethod
    def _strip_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("id must not be blank")
        return value


class Override(BaseModel):
    """Manually supplied, authoritative OSM object for a record."""

    model_config = ConfigDict(frozen=True)

    record_id: str
    object_type: Literal["way", "relation"]
    object_id: int
    note: str = ""

    @property
    def ref(self) -> str:
        return f"{self.object_type}/{self.object_id}"


# =============================================================================
# GEOCODING
# =============================================================================


@dataclass(frozen=True)
class GeocodeHit:
    """One candidate location returned by the geocoding service."""

    lat: float
    lon: float
    display_name: str = ""
    osm_type: Optional[str] = None
    osm_id: Optional[int] = None
    category: str = ""
    address_type: str = ""
    place_rank: Optional[int] = None
    raw: dict = field(default_factory=dict, compare=False, repr=False)

    @classmethod
    def from_payload(cls, payload: dict) -> Optional["GeocodeHit"]:
        """Build a hit from a Nominatim jsonv2 item; None if it has no usable point."""
        try:
            lat = float(payload["lat"])
            lon = float(payload["lon"])
        except (KeyError, TypeError, ValueError):
            return None

        osm_id = payload.get("osm_id")
        place_rank = payload.get("place_rank")
        return cls(
            lat=lat,
            lon=lon,
            display_name=str(payload.get("display_name") or ""),
            osm_type=payload.get("osm_type"),
            osm_id=int(osm_id) if osm_id is not None else None,
            # jsonv2 uses "category"; plain json uses "class"
            category=str(payload.get("category") or payload.get("class") or ""),
            address_type=str(payload.get("addresstype") or ""),
            place_rank=int(place_rank) if isinstance(place_rank, (int, float)) else None,
            raw=payload,
        )

    @property
    def is_building(self) -> bool:
        return self.category == "building" or self.address_type == "building"


@dataclass
class GeocodeResolution:
    """The chosen geocoding outcome for one record (lat/lon absent when unresolved)."""

    lat: Optional[float] = None
    lon: Optional[float] = None
    display_name: str = ""
    query_used: Optional[str] = None
    object_type: Optional[str] = None
    object_id: Optional[int] = None
    category: str = ""
    address_type: str = ""
    score: Optional[float] = None
    name_assisted: bool = False
    addresses_tried: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def is_resolved(self) -> bool:
        return self.lat is not None and self.lon is not None

    @property
    def is_building(self) -> bool:
        return self.category == "building" or self.address_type == "building"

    @property
    def object_ref(self) -> Optional[str]:
        if self.object_type in ("way", "relation") and self.object_id is not None:
            return f"{self.object_type}/{self.object_id}"
        return None

    def to_dict(self) -> dict:
        return {
            "lat": self.lat,
            "lon": self.lon,
            "display_name": self.display_name,
            "query_used": self.query_used,
            "object_type": self.object_type,
            "object_id": self.object_id,
            "category": self.category,
            "address_type": self.address_type,
            "score": self.score,
            "name_assisted": self.name_assisted,
        }


# =============================================================================
# FOOTPRINTS
# =============================================================================


@dataclass
class SpatialFeature:
    """A polygon/multipolygon OSM element with its tags."""

    osm_type: str
    osm_id: int
    geometry: BaseGeometry
    tags: dict = field(default_factory=dict)
    tag_class: TagClass = TagClass.BUILDING

    @property
    def ref(self) -> str:
        return f"{self.osm_type}/{self.osm_id}"

    @property
    def sort_key(self) -> tuple[str, int]:
        return (self.osm_type, self.osm_id)


@dataclass
class ScoredCandidate:
    """A SpatialFeature with the signals used to rank it."""

    feature: SpatialFeature
    contains: bool
    distance_m: float
    area_m2: float
    address_bonus: float
    tag_bonus: float
    containment_bonus: float
    score: float

    @property
    def ref(self) -> str:
        return self.feature.ref

    @property
    def signal_score(self) -> float:
        """Score without the containment term."""
        return self.score - self.containment_bonus

    def to_dict(self) -> dict:
        return {
            "ref": self.ref,
            "tag_class": self.feature.tag_class.value,
            "contains": self.contains,
            "distance_m": round(self.distance_m, 2),
            "area_m2": round(self.area_m2, 2),
            "address_bonus": self.address_bonus,
            "tag_bonus": self.tag_bonus,
            "score": round(self.score, 3),
        }


@dataclass
class FootprintResolution:
    """Final footprint decision for one record."""

    status: MatchStatus
    geometry: Optional[BaseGeometry] = None
    object_references: list[str] = field(default_factory=list)
    strategy: str = ""
    confidence: Confidence = Confidence.LOW
    radii_tried: list[int] = field(default_factory=list)
    top_candidates: list[dict] = field(default_factory=list)
    validation_errors: list[str] = field(default_factory=list)

    @property
    def has_geometry(self) -> bool:
        return self.geometry is not None

    def geometry_geojson(self) -> Optional[dict[str, Any]]:
        if self.geometry is None:
            return None
        return _listify(mapping(self.geometry))


def _listify(value: Any) -> Any:
    """Turn shapely's nested tuples into lists for stable JSON output."""
    if isinstance(value, dict):
        return {key: _listify(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_listify(item) for item in value]
    return value
