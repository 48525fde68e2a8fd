"""CLI package for crm_contact_sync."""

from crm_contact_sync.cli.formatters import (
    show_change_log,
    show_config,
    show_history,
    show_run,
    show_stats,
)
from crm_contact_sync.cli.main import OWNER_ENV_VAR, cli, get_service

__all__ = [
    "OWNER_ENV_VAR",
    "cli",
    "get_service",
    "show_change_log",
    "show_config",
    "show_history",
    "show_run",
    "show_stats",
]
