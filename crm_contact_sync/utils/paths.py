"""
Path resolution for the crm-contact-sync configuration directory.

The configuration directory holds the YAML settings file, the SQLite
database, stored OAuth tokens, logs and the daemon PID file.
"""

from __future__ import annotations

import os
from pathlib import Path

DEFAULT_CONFIG_DIR = Path.home() / ".crm-contact-sync"

CONFIG_DIR_ENV_VAR = "CRM_CONTACT_SYNC_CONFIG_DIR"

DEFAULT_DATABASE_NAME = "sync.db"
DEFAULT_TOKEN_DIR_NAME = "tokens"


def resolve_config_dir(config_dir: Path | str | None = None) -> Path:
    """
    Resolve the configuration directory path.

    Priority:
        1. Explicit config_dir argument
        2. CRM_CONTACT_SYNC_CONFIG_DIR environment variable
        3. ~/.crm-contact-sync
    """
    if config_dir is not None:
        return Path(config_dir).expanduser().resolve()

    env_dir = os.environ.get(CONFIG_DIR_ENV_VAR)
    if env_dir:
        return Path(env_dir).expanduser().resolve()

    return DEFAULT_CONFIG_DIR.expanduser().resolve()


def default_database_path(config_dir: Path | str | None = None) -> Path:
    """Location of the SQLite database inside the configuration directory."""
    return resolve_config_dir(config_dir) / DEFAULT_DATABASE_NAME


def default_token_dir(config_dir: Path | str | None = None) -> Path:
    """Directory where OAuth token bundles are stored."""
    return resolve_config_dir(config_dir) / DEFAULT_TOKEN_DIR_NAME
