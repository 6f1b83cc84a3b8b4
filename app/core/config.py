"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field(
        "json",
        description="Log format: 'json' for structured logs, 'plain' for text",
    )
    output: str = Field("stdout", description="Log destination: 'stdout' or 'file'")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int | None = Field(
        10_485_760,
        description="Rotate the log file after this many bytes (None disables rotation)",
    )
    backup_count: int = Field(5, description="Number of rotated log files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read and echo the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )

    rate_limit_enabled: bool = Field(
        True,
        description="Enable per-client rate limiting",
    )
    api_rate_limit_requests: int = Field(
        100,
        description="Requests per window for the lenient limiter (statements, exchange rates)",
        ge=1,
    )
    strict_rate_limit_requests: int = Field(
        20,
        description="Requests per window for the strict limiter (Yahoo Finance routes)",
        ge=1,
    )
    rate_limit_window_seconds: int = Field(
        60,
        description="Rate limit window size in seconds",
        ge=1,
    )
    rate_limit_include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers when throttling",
    )
    upstream_timeout_seconds: float = Field(
        10.0,
        description="Timeout applied to every upstream data-provider call",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class CacheSettings(BaseSettings):
    """Response cache configuration (CACHE_* environment variables)."""

    enabled: bool = Field(True, description="Enable the response cache")
    ttl_seconds: int = Field(
        86400,
        description="Time-to-live applied to every cache entry",
        ge=0,
    )
    persistence_enabled: bool = Field(
        False,
        description="Mirror cache entries to JSON files so they survive restarts",
    )
    dir: str = Field(
        default_factory=lambda: str(Path.cwd() / ".cache"),
        description="Directory holding persisted cache files",
    )
    sweep_interval_seconds: float = Field(
        3600.0,
        description="Interval between background sweeps of expired entries",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        case_sensitive=False,
    )


class AlphaVantageSettings(BaseSettings):
    """Alpha Vantage financial statements provider."""

    api_key: str | None = Field(
        None,
        description="Alpha Vantage API key (ALPHAVANTAGE_API_KEY)",
    )
    base_url: str = Field(
        "https://www.alphavantage.co/query",
        description="Alpha Vantage query endpoint",
    )
    include_earnings: bool = Field(
        True,
        description="Also fetch EARNINGS and attach it as the ratio section (one extra call per ticker)",
    )

    model_config = SettingsConfigDict(
        env_prefix="ALPHAVANTAGE_",
        case_sensitive=False,
    )


class ExchangeRateSettings(BaseSettings):
    """European Central Bank reference-rate feed."""

    daily_rates_url: str = Field(
        "https://www.ecb.europa.eu/stats/eurofxref/eurofxref-daily.xml",
        description="ECB daily reference rates XML",
    )

    model_config = SettingsConfigDict(
        env_prefix="ECB_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.

    Environments:
    - development: Local development (DEBUG=true)
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    log: LogSettings = Field(default_factory=LogSettings)
    app: AppSettings = Field(default_factory=AppSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    alpha_vantage: AlphaVantageSettings = Field(default_factory=AlphaVantageSettings)
    exchange_rate: ExchangeRateSettings = Field(default_factory=ExchangeRateSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
