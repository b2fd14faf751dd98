"""
Configuration management using pydantic-settings.
All settings loaded from environment variables (12-factor app).
"""

from functools import lru_cache
from typing import List
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Reporting calendar
    report_timezone: str = Field(
        default="America/Denver",
        description="IANA timezone used for every date key and day boundary",
    )
    all_time_lookback_years: int = Field(
        default=2, ge=1, le=20, description="Lookback window for the All Time timeframe"
    )

    # Remote store
    store_backend: str = Field(default="postgrest", description="Store backend (postgrest|duckdb)")
    postgrest_url: str = Field(
        default="http://localhost:54321/rest/v1", description="PostgREST base URL"
    )
    postgrest_service_key: str = Field(default="", description="Service role API key")
    postgrest_schema: str = Field(default="public", description="Database schema exposed by PostgREST")
    db_path: str = Field(default="./data/affiliate.duckdb", description="DuckDB file path")

    # Query resilience
    query_timeout_ms: int = Field(default=8000, ge=100, description="Per-attempt query timeout")
    query_max_retries: int = Field(default=3, ge=0, le=10, description="Retries for transient failures")
    retry_base_delay_ms: int = Field(default=1000, ge=0, description="Base delay for exponential backoff")
    write_conflict_retries: int = Field(
        default=5, ge=0, le=20, description="Re-read attempts when a versioned write loses a race"
    )

    # Result cache
    report_cache_ttl_ms: int = Field(default=300_000, ge=0, description="TTL of cached report documents")
    totals_cache_ttl_ms: int = Field(default=300_000, ge=0, description="TTL of cached totals")
    cache_sweep_interval_seconds: int = Field(default=60, ge=1, description="Expired-entry sweep interval")

    # Connection health
    health_probe_interval_ms: int = Field(default=30_000, ge=1000, description="Health probe interval")
    health_probe_timeout_ms: int = Field(default=3000, ge=100, description="Health probe timeout")
    health_probe_table: str = Field(default="approved_users", description="Table used by the health probe")

    # Security
    jwt_secret: str = Field(
        default="change-this-to-a-secure-random-string-in-production",
        description="JWT signing secret",
    )
    jwt_algorithm: str = Field(default="HS256", description="JWT algorithm")
    jwt_expiration_minutes: int = Field(default=1440, description="JWT expiration (24h)")

    # API
    api_host: str = Field(default="0.0.0.0", description="API host")
    api_port: int = Field(default=8000, description="API port")
    api_reload: bool = Field(default=True, description="Enable hot reload")
    cors_origins: str = Field(
        default="http://localhost:3000",
        description="CORS allowed origins (comma-separated)",
    )

    # Logging
    log_level: str = Field(default="info", description="Log level")
    log_format: str = Field(default="json", description="Log format (json|console)")

    # Development
    dev_mode: bool = Field(default=True, description="Development mode")
    start_background_tasks: bool = Field(
        default=True, description="Run health probing and cache sweeping in the app lifespan"
    )

    @field_validator("cors_origins")
    @classmethod
    def parse_cors_origins(cls, v: str) -> List[str]:
        """Parse comma-separated CORS origins."""
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        return v

    @field_validator("report_timezone")
    @classmethod
    def validate_report_timezone(cls, v: str) -> str:
        """Reject timezone names the zoneinfo database does not know."""
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"Unknown IANA timezone: {v}") from e
        return v

    @field_validator("store_backend")
    @classmethod
    def validate_store_backend(cls, v: str) -> str:
        """Validate store backend is a known value."""
        if v.lower() not in {"postgrest", "duckdb"}:
            raise ValueError("Store backend must be one of: postgrest, duckdb")
        return v.lower()


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to ensure singleton behavior.
    """
    return Settings()
