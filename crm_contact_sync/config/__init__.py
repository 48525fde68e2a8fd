"""
crm_contact_sync.config - Configuration management module

Contains configuration loading, validation, and default settings.
"""

from crm_contact_sync.config.loader import (
    AppSettings,
    ConfigError,
    ConfigLoader,
)

__all__ = [
    "AppSettings",
    "ConfigError",
    "ConfigLoader",
]
