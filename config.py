"""
Application configuration via pydantic-settings.

All settings are loaded from environment variables (and .env file).

Sub-configs are composed onto AppSettings by a model_validator so that every
group reads from the same env/dotenv source and can also be instantiated on
its own (handy in workers and tests).
"""

from __future__ import annotations

from typing import Optional

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    mongodb_uri: str
    db_name: str = "tapverse"


class RedisSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Optional; without Redis, dashboard reads skip the cache
    redis_uri: Optional[str] = None
    redis_ttl_seconds: int = 3600

    # Dashboard read cache (DualCache primary/stale windows)
    analytics_cache_primary_ttl: int = 60
    analytics_cache_stale_ttl: int = 600


class AttributionSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Sliding lifetime of a session's tag binding
    attribution_ttl_seconds: int = 1800
    # Trailing interval used to link downstream activity to a tag scan
    correlation_window_seconds: int = 1800

    # Tenant used when nothing else resolves
    default_tenant_id: str = "1"

    # Host parsing: the platform's own apex domain and names that never map
    # to a tenant subdomain
    apex_domain: str = "churchtap.app"
    reserved_subdomains: list[str] = [
        "www",
        "api",
        "admin",
        "master",
        "app",
        "churchtap",
    ]

    # Sessions idle longer than this are soft-expired by the cleanup job
    session_inactivity_hours: int = 24
    # "mongo" (shared, horizontally scalable) or "memory" (single process)
    session_backend: str = "mongo"

    cookie_secure: bool = True


class GeoSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    geoip_city_db: str = "misc/GeoLite2-City.mmdb"
    # Minimum spacing between provider lookups during backfill (≈1 req/sec)
    geo_lookup_interval_seconds: float = 1.0
    geo_backfill_batch_size: int = 100


class LoggingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    log_level: str = "INFO"
    log_format: str = "console"  # "json" in production

    # Sampling rates (0.0–1.0)
    sample_rate_ingest: float = 0.05
    sample_rate_touch: float = 0.01
    sample_rate_rollup: float = 0.20


class SentrySettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    sentry_dsn: str = ""
    sentry_send_pii: bool = False
    sentry_traces_sample_rate: float = 0.1
    sentry_profile_sample_rate: float = 0.05


class WorkerSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    maintenance_interval_seconds: int = 900


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Core
    env: str = "development"
    app_url: str = "https://churchtap.app"
    app_name: str = "tapverse-analytics"

    cors_origins: list[str] = ["*"]

    # OpenAPI docs URL (None disables the docs UI in production)
    docs_url: Optional[str] = "/docs"

    # Sub-configs (composed via model_validator below)
    db: Optional[DatabaseSettings] = None
    redis: Optional[RedisSettings] = None
    attribution: Optional[AttributionSettings] = None
    geo: Optional[GeoSettings] = None
    logging: Optional[LoggingSettings] = None
    sentry: Optional[SentrySettings] = None
    worker: Optional[WorkerSettings] = None

    @model_validator(mode="after")
    def _populate_sub_configs(self) -> "AppSettings":
        if self.db is None:
            self.db = DatabaseSettings()
        if self.redis is None:
            self.redis = RedisSettings()
        if self.attribution is None:
            self.attribution = AttributionSettings()
        if self.geo is None:
            self.geo = GeoSettings()
        if self.logging is None:
            self.logging = LoggingSettings()
        if self.sentry is None:
            self.sentry = SentrySettings()
        if self.worker is None:
            self.worker = WorkerSettings()
        return self

    @property
    def is_production(self) -> bool:
        return self.env == "production"
