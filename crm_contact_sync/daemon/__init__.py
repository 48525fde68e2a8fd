"""
crm_contact_sync.daemon - Auto-sync daemon module

Background loop that starts runs for configurations whose next run is due.
"""

import re


def parse_interval(interval: str | int) -> int:
    """Parse an interval string into seconds.

    Accepts interval strings with units (s, m, h, d) or plain integers.

    Args:
        interval: Interval specification. Examples:
            - "30s" -> 30 seconds
            - "5m" -> 5 minutes (300 seconds)
            - "1h" -> 1 hour (3600 seconds)
            - "1d" -> 1 day (86400 seconds)
            - 3600 -> 3600 seconds (pass-through)
            - "3600" -> 3600 seconds (numeric string)

    Returns:
        Interval in seconds as an integer.

    Raises:
        ValueError: If the interval format is invalid or uses an unknown unit.
    """
    if isinstance(interval, bool):
        raise ValueError("Invalid interval type: bool. Expected str or int.")

    if isinstance(interval, int):
        return interval

    if isinstance(interval, str):
        text = interval.lower().strip()
        if text.isdigit():
            return int(text)

        match = re.match(r"^(\d+)\s*([smhd])$", text)
        if not match:
            raise ValueError(
                f"Invalid interval format: '{interval}'. "
                "Use format like '30s', '5m', '1h', or '1d'."
            )

        multipliers = {
            "s": 1,
            "m": 60,
            "h": 3600,
            "d": 86400,
        }
        return int(match.group(1)) * multipliers[match.group(2)]

    raise ValueError(
        f"Invalid interval type: {type(interval).__name__}. Expected str or int."
    )


# Imports after parse_interval to avoid circular dependencies
from crm_contact_sync.daemon.scheduler import (  # noqa: E402
    DaemonAlreadyRunningError,
    DaemonError,
    DaemonScheduler,
    DaemonStats,
    DispatchResult,
    PIDFileError,
    PIDFileManager,
    default_pid_file,
)

__all__ = [
    "parse_interval",
    "DaemonScheduler",
    "DaemonStats",
    "DispatchResult",
    "DaemonError",
    "PIDFileError",
    "DaemonAlreadyRunningError",
    "PIDFileManager",
    "default_pid_file",
]
