"""Configuration management module.

This module provides:
- Environment-based configuration with validation
- Component settings classes (applier, managed resources, access)
- Cached settings access via get_settings()
"""

from .settings import (
    AccessSettings,
    ApplierSettings,
    Environment,
    LogFormat,
    LogLevel,
    ManagedResourceSettings,
    Settings,
    get_settings,
)

__all__ = [
    # Main settings
    "Settings",
    "get_settings",
    # Enums
    "Environment",
    "LogLevel",
    "LogFormat",
    # Component settings
    "ApplierSettings",
    "ManagedResourceSettings",
    "AccessSettings",
]
