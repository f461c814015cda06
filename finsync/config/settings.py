"""
Configuration Management for finsync

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
This makes it easy to see which knobs exist (store location, mirror URL,
sync heuristics, scheduler interval) and ensures they are validated at
startup.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StoreSettings(BaseSettings):
    """Local record store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FINSYNC_STORE_",
        extra="ignore"
    )

    database_path: str = Field(
        default="data/finsync.db",
        description="Path to the local SQLite database file"
    )
    busy_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for a write that hits a locked database"
    )

    @property
    def database_file(self) -> Path:
        return Path(self.database_path)


class RemoteSettings(BaseSettings):
    """Remote mirror (sync backend) configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FINSYNC_REMOTE_",
        extra="ignore"
    )

    base_url: str = Field(
        default="http://localhost:3005/api",
        description="Base URL of the mirror API, including the /api prefix"
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Per-request timeout for mirror calls"
    )

    @field_validator('base_url')
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        """Endpoints are joined with a leading slash."""
        return v.rstrip("/")


class SyncSettings(BaseSettings):
    """Sync engine heuristics."""

    model_config = SettingsConfigDict(
        env_prefix="FINSYNC_SYNC_",
        extra="ignore"
    )

    # A store below BOTH thresholds is "cold" and pulls everything
    cold_account_threshold: int = Field(
        default=2,
        ge=0,
        description="Fewer accounts than this counts towards a cold store"
    )
    cold_category_threshold: int = Field(
        default=5,
        ge=0,
        description="Fewer categories than this counts towards a cold store"
    )
    full_sync_delay_seconds: float = Field(
        default=1.0,
        ge=0.0,
        description="Pause between pull and push in a full sync"
    )


class RecurringSettings(BaseSettings):
    """Recurring transaction scheduler configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FINSYNC_RECURRING_",
        extra="ignore"
    )

    interval_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="Seconds between recurring engine runs"
    )


class ServerSettings(BaseSettings):
    """Mirror server configuration."""

    model_config = SettingsConfigDict(
        env_prefix="FINSYNC_SERVER_",
        extra="ignore"
    )

    database_url: str = Field(
        default="sqlite:///./finance.db",
        description="SQLAlchemy URL of the mirror database"
    )
    host: str = Field(
        default="0.0.0.0",
        description="Interface to bind"
    )
    port: int = Field(
        default=3005,
        ge=1,
        le=65535,
        description="Port to listen on"
    )
    cors_origins: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins"
    )

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    seed_defaults: bool = Field(
        default=True,
        description="Seed default categories and an account into an empty store"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    @property
    def store(self) -> StoreSettings:
        return StoreSettings()

    @property
    def remote(self) -> RemoteSettings:
        return RemoteSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def recurring(self) -> RecurringSettings:
        return RecurringSettings()

    @property
    def server(self) -> ServerSettings:
        return ServerSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}, plus
    {setting_name}_error entries for the ones that failed.
    """
    results = {}
    settings = get_settings()

    for name in ("store", "remote", "sync", "recurring", "server", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
