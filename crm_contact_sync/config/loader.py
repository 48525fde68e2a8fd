"""
Configuration loader module for crm-contact-sync.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Type and range validation of known keys
- Conversion into typed AppSettings with defaults
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml

from crm_contact_sync.daemon import parse_interval
from crm_contact_sync.utils.paths import (
    default_database_path,
    default_token_dir,
    resolve_config_dir,
)

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

# Default OAuth client secrets file name (inside the config directory)
DEFAULT_CLIENT_SECRETS_FILE = "credentials.json"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


class ConfigLoader:
    """
    YAML configuration file loader.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load()

        # With custom path
        loader = ConfigLoader(config_dir=Path("/custom/path"))
        config = loader.load()

        # Load from specific file
        config = loader.load_from_file("/path/to/config.yaml")
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.crm-contact-sync/ or $CRM_CONTACT_SYNC_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    def _get_config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns an empty dict if the file doesn't exist, allowing
        graceful operation with CLI defaults.

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self._get_config_path())

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Args:
            path: Path to the configuration file

        Returns:
            Dictionary containing configuration values, or empty dict if file
            doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)

            # Handle empty files
            if config is None:
                logger.debug(f"Configuration file is empty: {path}")
                return {}

            if not isinstance(config, dict):
                raise ConfigError(
                    f"Configuration file must contain a YAML dictionary, "
                    f"got {type(config).__name__}"
                )

            logger.debug(f"Loaded configuration from {path}")
            return config

        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration structure and values.

        Unknown keys are ignored; known keys must have the expected type
        and range.

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        valid_keys: dict[str, type[Any] | tuple[type[Any], ...]] = {
            # Storage
            "database_path": str,
            # Provider authorization
            "client_secrets_file": str,
            "redirect_uri": str,
            "auth_timeout": int,
            # Workers
            "run_workers": int,
            "action_workers": int,
            "stale_run_minutes": int,
            # API options
            "api_page_size": int,
            "api_max_retries": int,
            "api_initial_retry_delay": (int, float),
            "api_max_retry_delay": (int, float),
            # Logging options
            "log_dir": str,
            "log_retention_count": int,
            "verbose": bool,
            # Daemon options
            "daemon_interval": (str, int),
            "daemon_pid_file": str,
        }

        for key, value in config.items():
            if key not in valid_keys:
                continue
            expected_type = valid_keys[key]
            # bool is an int subclass; reject it for numeric keys
            if not isinstance(value, expected_type) or (
                isinstance(value, bool) and expected_type is not bool
            ):
                if isinstance(expected_type, tuple):
                    type_name = " or ".join(t.__name__ for t in expected_type)
                else:
                    type_name = expected_type.__name__
                raise ConfigError(
                    f"Invalid type for '{key}': expected {type_name}, "
                    f"got {type(value).__name__}"
                )

        positive_int_keys = [
            "auth_timeout",
            "run_workers",
            "action_workers",
            "stale_run_minutes",
            "api_page_size",
            "api_max_retries",
            "log_retention_count",
        ]
        for key in positive_int_keys:
            if key in config:
                value = config[key]
                if value < 1:
                    raise ConfigError(f"{key} must be >= 1, got {value}")

        if "api_page_size" in config and config["api_page_size"] > 1000:
            raise ConfigError(
                f"api_page_size must be <= 1000, got {config['api_page_size']}"
            )

        positive_float_keys = [
            "api_initial_retry_delay",
            "api_max_retry_delay",
        ]
        for key in positive_float_keys:
            if key in config:
                value = config[key]
                if value <= 0:
                    raise ConfigError(f"{key} must be > 0, got {value}")

        if "daemon_interval" in config:
            try:
                seconds = parse_interval(config["daemon_interval"])
            except ValueError as e:
                raise ConfigError(str(e)) from e
            if seconds < 1:
                raise ConfigError(f"daemon_interval must be >= 1s, got {seconds}")

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:  # Only validate if config is not empty
            self.validate(config)
        return config

    def load_settings(self) -> "AppSettings":
        """Load, validate and convert into AppSettings."""
        return AppSettings.from_dict(self.load_and_validate(), config_dir=self.config_dir)


@dataclass
class AppSettings:
    """
    Typed application settings.

    Attributes:
        config_dir: Directory holding config.yaml, tokens and the database
        database_path: SQLite database file
        token_dir: Directory for stored provider tokens
        client_secrets_file: Google OAuth client secrets JSON
        redirect_uri: OAuth callback URL registered for the client
        run_workers: Concurrent sync runs
        action_workers: Concurrent mutations within one run
        stale_run_minutes: Age after which an in-progress run is abandoned
    """

    config_dir: Path
    database_path: Path
    token_dir: Path
    client_secrets_file: Path
    redirect_uri: str = "http://localhost:8080/oauth2/callback"
    auth_timeout: int = 10
    run_workers: int = 2
    action_workers: int = 4
    stale_run_minutes: int = 120
    api_page_size: int = 1000
    api_max_retries: int = 5
    api_initial_retry_delay: float = 1.0
    api_max_retry_delay: float = 60.0
    log_dir: Optional[Path] = None
    log_retention_count: int = 10
    verbose: bool = False
    daemon_interval: str = "5m"
    daemon_pid_file: Optional[Path] = None

    @classmethod
    def from_dict(
        cls, data: dict[str, Any], config_dir: Path | str | None = None
    ) -> "AppSettings":
        """Build settings from a (validated) configuration dictionary."""
        base = resolve_config_dir(config_dir)

        def path_value(key: str, default: Optional[Path]) -> Optional[Path]:
            value = data.get(key)
            return Path(value).expanduser() if value else default

        defaults = cls(
            config_dir=base,
            database_path=default_database_path(base),
            token_dir=default_token_dir(base),
            client_secrets_file=base / DEFAULT_CLIENT_SECRETS_FILE,
        )

        return cls(
            config_dir=base,
            database_path=path_value("database_path", defaults.database_path),
            token_dir=defaults.token_dir,
            client_secrets_file=path_value(
                "client_secrets_file", defaults.client_secrets_file
            ),
            redirect_uri=data.get("redirect_uri", defaults.redirect_uri),
            auth_timeout=data.get("auth_timeout", defaults.auth_timeout),
            run_workers=data.get("run_workers", defaults.run_workers),
            action_workers=data.get("action_workers", defaults.action_workers),
            stale_run_minutes=data.get("stale_run_minutes", defaults.stale_run_minutes),
            api_page_size=data.get("api_page_size", defaults.api_page_size),
            api_max_retries=data.get("api_max_retries", defaults.api_max_retries),
            api_initial_retry_delay=float(
                data.get("api_initial_retry_delay", defaults.api_initial_retry_delay)
            ),
            api_max_retry_delay=float(
                data.get("api_max_retry_delay", defaults.api_max_retry_delay)
            ),
            log_dir=path_value("log_dir", None),
            log_retention_count=data.get(
                "log_retention_count", defaults.log_retention_count
            ),
            verbose=data.get("verbose", defaults.verbose),
            daemon_interval=str(data.get("daemon_interval", defaults.daemon_interval)),
            daemon_pid_file=path_value("daemon_pid_file", None),
        )
