"""Configuration management for MigrationHub.

Usage:
    >>> from migration_hub.config import get_settings
    >>> settings = get_settings()
    >>> settings.max_workers
    4
"""

from migration_hub.config.settings import Settings, get_settings

__all__ = [
    "Settings",
    "get_settings",
]
