"""
Input validation utilities for Buildmap.

Provides validation for canonical records, coordinates, and footprint
geometry.

Usage:
    from buildmap.utils.validation import (
        validate_coordinates,
        validate_geometry,
        ValidationError,
    )

    warnings = validate_coordinates(45.8131, 15.9772)
    result = validate_geometry(polygon)
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from shapely.geometry import MultiPolygon, Polygon
from shapely.geometry.base import BaseGeometry

from ..core.coordinates import BoundingBox, geodesic_area_m2, haversine_m
from .logging_config import get_logger

logger = get_logger(__name__)


class ValidationError(ValueError):
    """Raised when input validation fails."""

    def __init__(self, message: str, field: str = "", suggestions: Optional[List[str]] = None):
        super().__init__(message)
        self.field = field
        self.suggestions = suggestions or []


class InputContractError(ValidationError):
    """Input file or records violate the pipeline's input contract. Fatal for a run."""


@dataclass
class GeometryValidation:
    """Outcome of a geometry sanity check."""

    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metrics: Dict[str, Any] = field(default_factory=dict)


# Croatia coordinate bounds
COUNTRY_BOUNDS = BoundingBox(min_lat=42.0, min_lon=13.0, max_lat=47.0, max_lon=19.5)

# Zagreb city centre (Trg bana Jelačića)
CITY_CENTER = (45.8131, 15.9772)
MAX_DISTANCE_FROM_CENTER_KM = 50.0

MIN_BUILDING_AREA_M2 = 10.0
MAX_BUILDING_AREA_M2 = 100000.0

REQUIRED_RECORD_FIELDS = ("id", "name", "address")


def validate_coordinates(
    latitude: Optional[float],
    longitude: Optional[float],
    country_bounds: BoundingBox = COUNTRY_BOUNDS,
    city_center: Sequence[float] = CITY_CENTER,
    max_distance_km: float = MAX_DISTANCE_FROM_CENTER_KM,
) -> List[str]:
    """
    Validate geographic coordinates.

    Args:
        latitude: Latitude in decimal degrees
        longitude: Longitude in decimal degrees
        country_bounds: Coarse bounds the point is expected in
        city_center: (lat, lon) of the target city
        max_distance_km: Distance from the centre beyond which a warning is raised

    Returns:
        List of warnings (empty when the point looks plausible)

    Raises:
        ValidationError: If coordinates are missing or out of range
    """
    if latitude is None or longitude is None:
        raise ValidationError("Missing latitude or longitude", field="coordinates")

    if not (-90 <= latitude <= 90):
        raise ValidationError(
            f"Invalid latitude {latitude}: must be between -90 and 90",
            field="latitude",
        )

    if not (-180 <= longitude <= 180):
        raise ValidationError(
            f"Invalid longitude {longitude}: must be between -180 and 180",
            field="longitude",
        )

    warnings = []
    if not country_bounds.contains(latitude, longitude):
        warnings.append(f"Coordinates outside country bounds: {latitude}, {longitude}")

    distance_km = haversine_m(city_center[0], city_center[1], latitude, longitude) / 1000
    if distance_km > max_distance_km:
        warnings.append(
            f"Coordinates {distance_km:.1f}km from city center (may be incorrect)"
        )

    return warnings


def validate_geometry(
    geometry: Optional[BaseGeometry],
    min_area_m2: float = MIN_BUILDING_AREA_M2,
    max_area_m2: float = MAX_BUILDING_AREA_M2,
) -> GeometryValidation:
    """
    Structural and area sanity check for a footprint.

    Only Polygon/MultiPolygon geometries that are non-empty, topologically
    valid, and between ``min_area_m2`` and ``max_area_m2`` pass.
    """
    if geometry is None or geometry.is_empty:
        return GeometryValidation(is_valid=False, errors=["Missing or empty geometry"])

    if not isinstance(geometry, (Polygon, MultiPolygon)):
        return GeometryValidation(
            is_valid=False,
            errors=[f"Unsupported geometry type: {geometry.geom_type}"],
        )

    result = GeometryValidation(is_valid=True)

    if not geometry.is_valid:
        result.is_valid = False
        result.errors.append("Geometry is not topologically valid")

    area = geodesic_area_m2(geometry)
    result.metrics["area_sq_meters"] = round(area, 2)

    if area < min_area_m2:
        result.is_valid = False
        result.errors.append(f"Geometry area too small: {area:.1f} m²")
    elif area > max_area_m2:
        result.is_valid = False
        result.errors.append(f"Geometry area too large: {area / 1000:.1f}k m²")

    return result


def validate_record_fields(rows: Iterable[Dict[str, Any]], columns: Sequence[str]) -> None:
    """
    Check canonical input rows before any network work is done.

    Raises:
        InputContractError: On missing columns, empty required values, or
            duplicate ids
    """
    missing = [name for name in REQUIRED_RECORD_FIELDS if name not in columns]
    if missing:
        raise InputContractError(
            f"Missing required column(s): {', '.join(missing)}",
            field="columns",
            suggestions=[f"Expected columns: {', '.join(REQUIRED_RECORD_FIELDS)}"],
        )

    seen = set()
    for line_no, row in enumerate(rows, start=2):
        for name in REQUIRED_RECORD_FIELDS:
            if not str(row.get(name) or "").strip():
                raise InputContractError(f"Row {line_no}: empty {name}", field=name)
        record_id = row["id"].strip()
        if record_id in seen:
            raise InputContractError(f"Row {line_no}: duplicate id '{record_id}'", field="id")
        seen.add(record_id)
