"""
crm_contact_sync.utils - Utility module

Path resolution and logging configuration.
"""

from crm_contact_sync.utils.paths import (
    DEFAULT_CONFIG_DIR,
    default_database_path,
    default_token_dir,
    resolve_config_dir,
)

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "default_database_path",
    "default_token_dir",
    "resolve_config_dir",
]
