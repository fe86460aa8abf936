"""
Configuration management using Pydantic Settings.
All environment variables are validated at startup.
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# Upper zoom bound (exclusive) -> max markers rendered. The final entry uses
# None as "any zoom above the previous bound".
DEFAULT_ZOOM_CAPS: list[tuple[Optional[float], int]] = [
    (11, 300),
    (13, 500),
    (15, 1000),
    (17, 2000),
    (None, 5000),
]


class Settings(BaseSettings):
    """Sync engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MAPSYNC_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===================
    # Shared cache (Redis)
    # ===================
    redis_url: Optional[str] = Field(default=None, description="Redis URL for the shared cache tier")
    redis_pool_size: int = Field(default=10, ge=1, le=200)

    # ===================
    # Data source (Supabase PostgREST)
    # ===================
    supabase_url: Optional[str] = Field(default=None, description="Supabase project URL")
    supabase_key: Optional[str] = Field(default=None, description="Supabase service or anon key")
    supabase_timeout: float = Field(default=30.0, gt=0)

    # ===================
    # Cache keys & TTLs
    # ===================
    cache_key_version: str = Field(
        default="mapProjectsV8",
        description="Bump whenever query semantics change to orphan stale entries",
    )
    filtered_ids_key_version: str = Field(default="filteredIdsV1")
    cache_ttl: float = Field(default=300.0, description="Seconds a map result stays cached")
    local_cache_ttl: float = Field(default=60.0, description="TTL used when back-filling the local tier")
    filtered_ids_ttl: float = Field(default=30.0)
    local_cache_max_entries: int = Field(default=512, ge=1)

    # ===================
    # Coalescing
    # ===================
    inflight_timeout: float = Field(default=30.0, gt=0, description="Ceiling before a stuck fetch is evicted")

    # ===================
    # Progressive loading
    # ===================
    initial_fetch_limit: int = Field(default=150, ge=1)
    recent_days: int = Field(default=90, ge=1, description="Window for the 'recent developments' action")
    orchestration_dedup_window: float = Field(default=0.05, ge=0)
    full_requires_growth: bool = Field(
        default=True,
        description="Skip on_full when the full result is not larger than the initial one",
    )
    slow_initial_ms: float = Field(default=500.0)
    slow_full_ms: float = Field(default=2000.0)

    # ===================
    # Merging & windowing
    # ===================
    merge_dedup_window: float = Field(default=0.1, ge=0)
    zoom_caps: list[tuple[Optional[float], int]] = Field(default_factory=lambda: list(DEFAULT_ZOOM_CAPS))

    # ===================
    # Logging
    # ===================
    log_level: str = Field(default="INFO")

    @field_validator("cache_ttl", "local_cache_ttl", "filtered_ids_ttl")
    @classmethod
    def validate_ttl(cls, v: float) -> float:
        """TTLs must be positive."""
        if v <= 0:
            raise ValueError("TTL must be greater than zero")
        return v

    @field_validator("zoom_caps")
    @classmethod
    def validate_zoom_caps(cls, v: list[tuple[Optional[float], int]]) -> list[tuple[Optional[float], int]]:
        """Zoom caps must be a monotonic step function ending in an open bound."""
        if not v:
            raise ValueError("zoom_caps must not be empty")
        if v[-1][0] is not None:
            raise ValueError("last zoom cap must have an open upper bound (None)")
        bounds = [b for b, _ in v[:-1]]
        if any(b is None for b in bounds):
            raise ValueError("only the last zoom cap may have an open upper bound")
        if bounds != sorted(bounds) or len(set(bounds)) != len(bounds):
            raise ValueError("zoom cap bounds must be strictly increasing")
        caps = [c for _, c in v]
        if caps != sorted(caps) or caps[0] < 1:
            raise ValueError("zoom caps must be positive and non-decreasing")
        return v

    @property
    def shared_cache_enabled(self) -> bool:
        return bool(self.redis_url)

    @property
    def supabase_configured(self) -> bool:
        """Check if the PostgREST data source has required configuration."""
        return bool(self.supabase_url and self.supabase_key)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
