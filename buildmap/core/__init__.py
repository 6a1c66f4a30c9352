"""Core models and utilities."""

from .models import (
    AddressPart,
    CanonicalRecord,
    Confidence,
    FootprintResolution,
    GeocodeHit,
    GeocodeResolution,
    MatchStatus,
    Override,
    ScoredCandidate,
    SpatialFeature,
    TagClass,
)
from .coordinates import BoundingBox, haversine_m, geodesic_area_m2
from .config import Settings

__all__ = [
    "AddressPart",
    "CanonicalRecord",
    "Confidence",
    "FootprintResolution",
    "GeocodeHit",
    "GeocodeResolution",
    "MatchStatus",
    "Override",
    "ScoredCandidate",
    "SpatialFeature",
    "TagClass",
    "BoundingBox",
    "haversine_m",
    "geodesic_area_m2",
    "Settings",
]
