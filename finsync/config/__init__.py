"""Configuration package."""

from finsync.config.settings import (
    AppSettings,
    RecurringSettings,
    RemoteSettings,
    ServerSettings,
    Settings,
    StoreSettings,
    SyncSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "RecurringSettings",
    "RemoteSettings",
    "ServerSettings",
    "Settings",
    "StoreSettings",
    "SyncSettings",
    "get_settings",
    "validate_all_settings",
]
