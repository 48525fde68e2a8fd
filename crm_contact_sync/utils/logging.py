"""
Logging configuration for crm_contact_sync.

Sets up the ``crm_contact_sync`` logger hierarchy with:
- A console handler (colored when the terminal supports it)
- An optional daily log file capturing DEBUG detail
- Level selection from CLI flags or environment variables
- A run-scoped adapter that prefixes messages with the sync run id
"""

import logging
import os
import sys
from collections.abc import MutableMapping
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from crm_contact_sync.utils.paths import resolve_config_dir

ROOT_LOGGER_NAME = "crm_contact_sync"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

LOG_FILE_PREFIX = "crm_contact_sync_"

ENV_LOG_LEVEL = "CRM_CONTACT_SYNC_LOG_LEVEL"
ENV_DEBUG = "CRM_CONTACT_SYNC_DEBUG"
ENV_LOG_FILE = "CRM_CONTACT_SYNC_LOG_FILE"

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}

# Directory chosen by the last setup_logging() call
_configured_log_dir: Optional[Path] = None


class ColoredFormatter(logging.Formatter):
    """
    Formatter that wraps level names and messages in ANSI colors.

    Colors are dropped when stdout is not a TTY, when NO_COLOR is set,
    or when TERM is "dumb".
    """

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        if not hasattr(sys.stdout, "isatty") or not sys.stdout.isatty():
            return False
        if os.environ.get("NO_COLOR"):
            return False
        return os.environ.get("TERM", "") != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        # Work on a copy so other handlers see the plain record
        record = logging.makeLogRecord(record.__dict__)

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{self.RESET}"
            record.msg = f"{color}{record.msg}{self.RESET}"

        return super().format(record)


class RunLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every message with ``[run <id>]`` so interleaved runs stay readable."""

    def process(
        self, msg: Any, kwargs: MutableMapping[str, Any]
    ) -> tuple[Any, MutableMapping[str, Any]]:
        run_id = (self.extra or {}).get("run_id", "?")
        return f"[run {run_id}] {msg}", kwargs


def get_log_level_from_env() -> int:
    """
    Resolve the log level from the environment.

    CRM_CONTACT_SYNC_DEBUG (1/true/yes) forces DEBUG; otherwise
    CRM_CONTACT_SYNC_LOG_LEVEL is looked up by name, defaulting to INFO.
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    level_str = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()
    return _LEVELS.get(level_str, logging.INFO)


def _daily_log_name() -> str:
    return f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Get the log file path.

    CRM_CONTACT_SYNC_LOG_FILE wins when set ("none" or "disabled" turns
    file logging off). Otherwise the daily file lives in ``log_dir`` or in
    ``<config dir>/logs``.

    Returns:
        Path to the log file, or None if file logging is disabled
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)

    base = log_dir if log_dir else resolve_config_dir() / "logs"
    return base / _daily_log_name()


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure the crm_contact_sync logger hierarchy.

    Args:
        level: Logging level. If None, taken from the environment.
        verbose: Use DEBUG level and the verbose line format.
        log_dir: Directory for the daily log file.
        log_file: Explicit log file path (overrides log_dir).
        enable_file_logging: If False, only the console handler is installed.
        use_colors: Color console output when the terminal supports it.

    Returns:
        The configured ``crm_contact_sync`` logger

    Example:
        setup_logging(verbose=True)
        setup_logging(log_dir=Path("/var/log/crm-contact-sync"))
        setup_logging(enable_file_logging=False)
    """
    global _configured_log_dir

    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    logger.propagate = False

    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT
    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    console_formatter: logging.Formatter
    if use_colors:
        console_formatter = ColoredFormatter(console_format, DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(console_format, DATE_FORMAT)
    console_handler.setFormatter(console_formatter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        file_path = log_file or get_log_file_path(log_dir)
        if file_path:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)
                file_handler = logging.FileHandler(file_path, encoding="utf-8")
                file_handler.setLevel(logging.DEBUG)
                file_handler.setFormatter(
                    logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT)
                )
                logger.addHandler(file_handler)
                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")

    if log_file:
        _configured_log_dir = log_file.parent
    else:
        _configured_log_dir = log_dir

    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Delete all but the ``keep_count`` newest daily log files.

    Args:
        log_dir: Directory holding the logs. Defaults to the directory
                 configured by setup_logging(), then ``<config dir>/logs``.
        keep_count: Files to keep. 0 disables cleanup.

    Returns:
        Number of files deleted
    """
    if keep_count <= 0:
        return 0

    logs_dir = log_dir or _configured_log_dir or resolve_config_dir() / "logs"
    if not logs_dir.exists():
        return 0

    logs = sorted(
        logs_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )

    deleted_count = 0
    for old_log in logs[keep_count:]:
        try:
            old_log.unlink()
            deleted_count += 1
        except OSError as e:
            logging.getLogger(ROOT_LOGGER_NAME).debug(
                f"Could not delete old log {old_log}: {e}"
            )

    return deleted_count


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger inside the crm_contact_sync hierarchy.

    Names that do not already start with ``crm_contact_sync`` are nested
    under it, so ``get_logger("daemon")`` returns
    ``crm_contact_sync.daemon``.
    """
    if not name.startswith(ROOT_LOGGER_NAME):
        name = f"{ROOT_LOGGER_NAME}.{name}"
    return logging.getLogger(name)


def get_run_logger(name: str, run_id: str) -> RunLoggerAdapter:
    """Get a logger that tags every message with ``run_id``."""
    return RunLoggerAdapter(get_logger(name), {"run_id": run_id})


def set_log_level(level: int) -> None:
    """Change the console log level at runtime; file handlers stay at DEBUG."""
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(level)
    for handler in logger.handlers:
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


__all__ = [
    "setup_logging",
    "get_logger",
    "get_run_logger",
    "set_log_level",
    "cleanup_old_logs",
    "ColoredFormatter",
    "RunLoggerAdapter",
    "get_log_level_from_env",
    "get_log_file_path",
    "ROOT_LOGGER_NAME",
    "DEFAULT_FORMAT",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
]
