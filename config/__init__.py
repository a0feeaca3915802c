"""
Configuration module for HowTube.

Usage:
    from config import settings
    from config import get_settings, is_development

    print(settings.storage_path)

    if is_development():
        print("Running locally")
"""

from .settings import (
    Settings,
    DeploymentMode,
    LogLevel,
    settings,
    get_settings,
    reload_settings,
    is_development,
    is_production,
    get_storage_path,
    get_database_url,
    configure_logging,
)

__all__ = [
    "Settings",
    "DeploymentMode",
    "LogLevel",
    "settings",
    "get_settings",
    "reload_settings",
    "is_development",
    "is_production",
    "get_storage_path",
    "get_database_url",
    "configure_logging",
]
