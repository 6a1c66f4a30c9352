"""External service clients and their response cache."""

from .cache import ResponseCache, normalize_key
from .nominatim import NominatimClient
from .overpass import OverpassClient, elements_to_features

__all__ = [
    "ResponseCache",
    "normalize_key",
    "NominatimClient",
    "OverpassClient",
    "elements_to_features",
]
