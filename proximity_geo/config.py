"""
Central configuration loaded from environment variables with sensible defaults.
All secrets come from env vars; no hardcoded credentials.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache


def _default_workers() -> int:
    return max((os.cpu_count() or 1) - 1, 2)


@dataclass(frozen=True)
class DataConfig:
    gazetteer_path: str = os.getenv("GAZETTEER_PATH", "data/ethiopian_woredas.json")
    sites_path: str = os.getenv("SITES_PATH", "data/SiteInformation.csv")
    export_dir: str = os.getenv("EXPORT_DIR", "exports")


@dataclass(frozen=True)
class MatchingConfig:
    # Candidates scoring above this are discarded (0 = exact, 1 = unrelated)
    score_threshold: float = float(os.getenv("MATCH_SCORE_THRESHOLD", "0.4"))
    # A single field only counts as a hit at or below this dissimilarity
    field_threshold: float = float(os.getenv("MATCH_FIELD_THRESHOLD", "0.3"))
    min_match_length: int = int(os.getenv("MATCH_MIN_LENGTH", "3"))
    name_weight: float = float(os.getenv("MATCH_WEIGHT_NAME", "1.0"))
    zone_weight: float = float(os.getenv("MATCH_WEIGHT_ZONE", "0.7"))
    region_weight: float = float(os.getenv("MATCH_WEIGHT_REGION", "0.5"))


@dataclass(frozen=True)
class GeocodingConfig:
    provider: str = os.getenv("GEOCODER_PROVIDER", "nominatim")  # nominatim | google
    nominatim_url: str = os.getenv("NOMINATIM_URL", "https://nominatim.openstreetmap.org")
    nominatim_user_agent: str = os.getenv("NOMINATIM_USER_AGENT", "proximity-geo/1.0")
    google_url: str = os.getenv("GOOGLE_GEOCODING_URL", "https://maps.googleapis.com/maps/api/geocode/json")
    google_api_key: str = os.getenv("GOOGLE_GEOCODING_KEY", "")
    # Comma separated ISO codes passed to the provider to bias results
    country_codes: str = os.getenv("GEOCODER_COUNTRY_CODES", "et")
    # Rate limiting
    rate_limit_rps: float = float(os.getenv("GEOCODER_RATE_LIMIT", "1.0"))  # Nominatim wants <=1/s
    # Hard ceiling for one provider round trip; the rate limiter wait is not counted
    timeout_seconds: float = float(os.getenv("GEOCODER_TIMEOUT", "30"))
    default_zoom: int = int(os.getenv("GEOCODER_DEFAULT_ZOOM", "8"))


@dataclass(frozen=True)
class FormatterConfig:
    # Ollama-compatible /api/generate endpoint used to normalize raw area names
    url: str = os.getenv("FORMATTER_URL", "http://localhost:11434/api/generate")
    model: str = os.getenv("FORMATTER_MODEL", "deepseek-coder:latest")
    timeout_seconds: float = float(os.getenv("FORMATTER_TIMEOUT", "120"))
    country: str = os.getenv("FORMATTER_COUNTRY", "Ethiopia")


@dataclass(frozen=True)
class BatchConfig:
    workers: int = int(os.getenv("BATCH_WORKERS", "0")) or _default_workers()


@dataclass(frozen=True)
class APIConfig:
    host: str = os.getenv("API_HOST", "0.0.0.0")
    port: int = int(os.getenv("API_PORT", "8000"))
    download_prefix: str = "/downloads"


@dataclass(frozen=True)
class Settings:
    data: DataConfig = field(default_factory=DataConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    geocoding: GeocodingConfig = field(default_factory=GeocodingConfig)
    formatter: FormatterConfig = field(default_factory=FormatterConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    api: APIConfig = field(default_factory=APIConfig)
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    env: str = os.getenv("APP_ENV", "development")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
