"""
Search configuration for Nearby Search.

Owns every constant that shapes a location search: radius bounds and
presets, debounce/throttle windows, cache staleness, and the external
service endpoints.  Endpoint and tuning values can be overridden through
the environment (a local .env is loaded by app.py via python-dotenv).

Frozen dataclasses provide type checking and IDE support without
the indirection of YAML/JSON config files.
"""

import os
from dataclasses import dataclass, field
from typing import Tuple


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


# =============================================================================
# Dataclasses
# =============================================================================

@dataclass(frozen=True)
class RadiusPreset:
    """A quick-select radius button. Stored in km, labelled in miles."""
    km: float
    label: str


@dataclass(frozen=True)
class RadiusConfig:
    """Radius bounds and defaults (kilometres)."""
    min_km: float = 1.0
    max_km: float = 320.0
    default_km: float = 25.0
    presets: Tuple[RadiusPreset, ...] = (
        RadiusPreset(8.0, "5 mi"),
        RadiusPreset(16.0, "10 mi"),
        RadiusPreset(40.0, "25 mi"),
        RadiusPreset(80.0, "50 mi"),
        RadiusPreset(160.0, "100 mi"),
    )


@dataclass(frozen=True)
class GeocodingConfig:
    """Nominatim forward/reverse geocoding settings."""
    base_url: str = "https://nominatim.openstreetmap.org"
    user_agent: str = "NearbySearch/1.0 (listing discovery)"
    country_codes: str = "us"
    suggestion_limit: int = 5
    min_query_chars: int = 3
    debounce_seconds: float = 0.3
    timeout_seconds: float = 10.0
    min_spacing_seconds: float = 1.0   # Nominatim policy: max 1 req/s
    cache_ttl_days: int = 30
    fallback_label: str = "Current Location"


@dataclass(frozen=True)
class ListingSearchConfig:
    """Listing search endpoint and client-side caching."""
    api_base: str = "http://localhost:5000"
    path: str = "/api/listings/search"
    timeout_seconds: float = 10.0
    cache_ttl_seconds: float = 300.0   # 5 minute staleness window
    cache_max_entries: int = 128


@dataclass(frozen=True)
class MapConfig:
    """Interactive radius map behaviour and static rendering."""
    handle_bearing_deg: float = 90.0       # handle sits due east of the anchor
    handle_hit_tolerance_px: float = 18.0
    commit_throttle_seconds: float = 0.4
    circle_segments: int = 72
    width: int = 640
    height: int = 400
    tile_url: str = "http://a.tile.openstreetmap.org/{z}/{x}/{y}.png"


@dataclass(frozen=True)
class SearchConfig:
    """Top-level configuration container."""
    radius: RadiusConfig = field(default_factory=RadiusConfig)
    geocoding: GeocodingConfig = field(default_factory=GeocodingConfig)
    listings: ListingSearchConfig = field(default_factory=ListingSearchConfig)
    map: MapConfig = field(default_factory=MapConfig)
    default_address_label: str = "Selected Location"


def load_config() -> SearchConfig:
    """Build a SearchConfig from defaults plus environment overrides."""
    geo_defaults = GeocodingConfig()
    listing_defaults = ListingSearchConfig()
    return SearchConfig(
        geocoding=GeocodingConfig(
            base_url=os.environ.get("NOMINATIM_BASE_URL", geo_defaults.base_url).rstrip("/"),
            user_agent=os.environ.get("NOMINATIM_USER_AGENT", geo_defaults.user_agent),
            country_codes=os.environ.get("GEOCODE_COUNTRY_CODES", geo_defaults.country_codes),
            min_spacing_seconds=_env_float(
                "NOMINATIM_MIN_SPACING", geo_defaults.min_spacing_seconds
            ),
        ),
        listings=ListingSearchConfig(
            api_base=os.environ.get("LISTINGS_API_BASE", listing_defaults.api_base).rstrip("/"),
            cache_ttl_seconds=_env_float(
                "SEARCH_CACHE_TTL_SECONDS", listing_defaults.cache_ttl_seconds
            ),
        ),
    )


# =============================================================================
# Module-level instance
# =============================================================================

SEARCH_CONFIG = load_config()
