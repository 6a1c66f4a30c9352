"""
Configuration management for Buildmap.
"""

from pathlib import Path
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings.

    Can be configured via environment variables or .env file, e.g.
    ``BUILDMAP_CITY_NAME=Split`` or ``BUILDMAP_RADIUS_STEPS_M='[60, 100]'``.
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILDMAP_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    cache_dir: Path = Field(default=Path("cache"))
    output_dir: Path = Field(default=Path("output"))

    # External services
    nominatim_url: str = Field(default="https://nominatim.openstreetmap.org/search")
    overpass_url: str = Field(default="https://overpass-api.de/api/interpreter")
    user_agent: str = Field(
        default="buildmap/0.1 (building footprint resolver)",
        description="Nominatim usage policy requires an identifying user agent",
    )
    accept_language: str = Field(default="en")
    request_timeout_s: float = Field(default=30.0, description="Per-attempt HTTP timeout")
    max_retries: int = Field(default=3, description="Retries after the first attempt")
    retry_base_delay_s: float = Field(default=2.0)
    retry_max_delay_s: float = Field(default=30.0)

    # Fair-use cadence: sleep after every live request, never after cache hits
    geocode_delay_s: float = Field(default=1.1)
    overpass_delay_s: float = Field(default=1.5)
    geocode_result_limit: int = Field(default=5)

    # Target city
    city_name: str = Field(default="Zagreb")
    city_postcode: str = Field(default="10000")
    country_name: str = Field(default="Croatia")
    country_aliases: list[str] = Field(default_factory=lambda: ["croatia", "hrvatska"])
    city_bbox: tuple[float, float, float, float] = Field(
        default=(45.60, 15.75, 45.97, 16.25),
        description="Geofence as (min_lat, min_lon, max_lat, max_lon)",
    )
    city_center: Optional[tuple[float, float]] = Field(
        default=None,
        description="(lat, lon) for distance warnings; the centre of city_bbox when unset",
    )
    country_bbox: tuple[float, float, float, float] = Field(default=(42.0, 13.0, 47.0, 19.5))
    max_distance_from_center_km: float = Field(default=50.0)

    # Address query generation
    street_word_rewrite: bool = Field(default=True)

    # Footprint matching
    radius_steps_m: list[int] = Field(default_factory=lambda: [80, 120, 160, 200])
    landmark_radius_m: int = Field(default=300)
    generic_fallback: bool = Field(default=True)
    min_footprint_area_m2: float = Field(default=10.0)
    max_footprint_area_m2: float = Field(default=100000.0)

    @property
    def geocode_cache_path(self) -> Path:
        return self.cache_dir / "geocode.json"

    @property
    def overpass_cache_path(self) -> Path:
        return self.cache_dir / "overpass.json"

    def ensure_dirs(self) -> None:
        """Create all required directories."""
        for dir_path in [self.cache_dir, self.output_dir]:
            dir_path.mkdir(parents=True, exist_ok=True)


# Global settings instance
settings = Settings()
