"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Quota policies are read once at process start. Override the defaults with a
JSON mapping in QUOTA_POLICIES, e.g.
``{"bulk-grades": {"max_requests": 10, "window_minutes": 60}}``.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

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


# Nested BaseSettings don't inherit env_file, so populate os.environ first
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class QuotaPolicy(BaseModel):
    """Fixed quota for one mutating endpoint."""

    max_requests: int = Field(..., ge=1)
    window_minutes: int = Field(..., ge=1)


DEFAULT_QUOTA_POLICIES: dict[str, QuotaPolicy] = {
    "import-students": QuotaPolicy(max_requests=10, window_minutes=60),
    "import-subjects": QuotaPolicy(max_requests=10, window_minutes=60),
    "bulk-grades": QuotaPolicy(max_requests=20, window_minutes=60),
    "export-data": QuotaPolicy(max_requests=30, window_minutes=60),
    "create-student": QuotaPolicy(max_requests=100, window_minutes=60),
    "create-grade": QuotaPolicy(max_requests=200, window_minutes=60),
    "update-grade": QuotaPolicy(max_requests=200, window_minutes=60),
    "delete-grade": QuotaPolicy(max_requests=100, window_minutes=60),
}


def _build_app_settings() -> "AppSettings":
    """Build app settings from environment.

    Static type checkers treat required fields as constructor arguments,
    which is not how BaseSettings is populated, hence the type ignore.
    """

    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


def _build_store_settings() -> "StoreSettings":
    return StoreSettings()  # type: ignore[call-arg]


def _build_rate_limit_settings() -> "RateLimitSettings":
    return RateLimitSettings()  # type: ignore[call-arg]


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )
    api_key_required: bool = Field(
        True,
        description="Whether API key authentication is required",
    )
    api_keys: str | None = Field(
        None,
        description="Comma-separated 'actor_id:api_key' pairs identifying actors",
    )
    anonymous_actor: str = Field(
        "anonymous",
        description="Actor id used when authentication is disabled",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="Log format: json or plain")
    output: str = Field("stdout", description="Log output: stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(10_485_760, description="Rotate file after this many bytes (0 disables)")
    backup_count: int = Field(5, description="Rotated files to keep")
    request_id_header: str = Field("X-Request-ID", description="Header carrying the request id")

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class StoreSettings(BaseSettings):
    """Authoritative record store configuration.

    ``memory`` keeps records in-process (the HTTP service itself uses it);
    ``http`` talks to a running gradesync service over HTTP.
    """

    provider: str = Field("memory", description="Record store provider: memory or http")
    base_url: str | None = Field(None, description="Service base URL (required for http)")
    api_key: str | None = Field(None, description="API key sent as X-API-Key (http provider)")
    timeout_seconds: float = Field(10.0, description="Request timeout in seconds")

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Window store configuration for the sliding-window limiter."""

    enabled: bool = Field(True, description="Enforce quotas on mutating endpoints")
    backend: str = Field("memory", description="Window store backend: memory or sqlite")
    sqlite_path: str = Field("data/rate_limits.db", description="SQLite file for the sqlite backend")
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers when throttling",
    )
    retention_minutes: int = Field(
        24 * 60,
        description="Windows older than this are purged by maintenance",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)
    store: StoreSettings = Field(default_factory=_build_store_settings)
    rate_limit: RateLimitSettings = Field(default_factory=_build_rate_limit_settings)
    quota_policies: dict[str, QuotaPolicy] = Field(
        default_factory=lambda: dict(DEFAULT_QUOTA_POLICIES),
        description="Endpoint name -> quota; JSON via QUOTA_POLICIES",
    )

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
settings = Settings()
