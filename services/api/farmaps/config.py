"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from typing import Optional

from pydantic_settings import BaseSettings

from farmaps.errors import ConfigurationError


class Settings(BaseSettings):
    # ── Farcaster Hub ──────────────────────────────────────────────────────
    farcaster_hub_url: str = ""
    hub_timeout_s: float = 10.0
    hub_page_size: int = 50
    hub_page_delay_ms: int = 125         # pacing between pages, not backoff
    hub_max_pages: int = 200
    hub_max_attempts: int = 6
    hub_backoff_base_ms: int = 500
    hub_backoff_max_ms: int = 8000
    hub_cache_ttl: int = 600             # 10 min for cached link lists

    # ── Neynar (profile hydration) ─────────────────────────────────────────
    neynar_api_key: str = ""
    neynar_base_url: str = "https://api.neynar.com/v2/farcaster"
    neynar_timeout_s: float = 15.0
    hydration_batch_size: int = 100      # /user/bulk accepts at most 100 fids
    hydration_concurrency: int = 4
    hydration_max_attempts: int = 3

    # ── Nominatim (legacy city geocoding) ──────────────────────────────────
    geocode_base_url: str = "https://nominatim.openstreetmap.org"
    geocode_user_agent: str = "FarMaps/1.0 (demo; contact: none)"
    geocode_timeout_s: float = 10.0
    geocode_cache_size: int = 2000
    geocode_cache_ttl: int = 60 * 60 * 24 * 14   # 14 days

    # ── Redis (optional) ───────────────────────────────────────────────────
    redis_url: Optional[str] = None

    # ── Network endpoint defaults ──────────────────────────────────────────
    default_min_score: float = 0.8
    default_limit_each: int = 800
    default_max_each: int = 5000
    network_timeout_s: float = 60.0

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "farmaps-api"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    def require(self, name: str) -> str:
        """Return a required setting or raise if it is empty."""
        value = getattr(self, name)
        if not value:
            raise ConfigurationError(f"Missing env var: {name.upper()}")
        return value


settings = Settings()
