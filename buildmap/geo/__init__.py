"""Address queries, geocode resolution and footprint matching."""

from .address_queries import AddressQueryGenerator, CityContext, StreetWordRule
from .geocoder import GeocodeResolver, GeocoderConfig, HitWeights, score_hit
from .footprint_matcher import (
    FootprintMatcher,
    MatcherConfig,
    ScoreWeights,
    assign_confidence,
    rank_candidates,
    score_candidate,
)

__all__ = [
    "AddressQueryGenerator",
    "CityContext",
    "StreetWordRule",
    "GeocodeResolver",
    "GeocoderConfig",
    "HitWeights",
    "score_hit",
    "FootprintMatcher",
    "MatcherConfig",
    "ScoreWeights",
    "assign_confidence",
    "rank_candidates",
    "score_candidate",
]
