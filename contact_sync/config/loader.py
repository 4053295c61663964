"""
YAML configuration for contact-sync.

The file lives at <config dir>/config.yaml and holds store, matching and
logging settings plus the ``connections`` mapping read by
contact_sync.config.connections.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from contact_sync.utils import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

# Default store file name inside the configuration directory
DEFAULT_STORE_FILE = "contacts.db"

logger = logging.getLogger(__name__)

# Known top-level keys and the types their values must have
CONFIG_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    "store_path": str,
    "max_workers": int,
    "request_timeout": (int, float),
    "default_region": str,
    "fuzzy_name_threshold": (int, float),
    "log_dir": str,
    "log_retention_count": int,
    "verbose": bool,
    "connections": dict,
}


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


def _type_message(
    key: str, expected: type[Any] | tuple[type[Any], ...], value: Any
) -> str:
    if isinstance(expected, tuple):
        type_name = " or ".join(t.__name__ for t in expected)
    else:
        type_name = expected.__name__
    return f"Invalid type for '{key}': expected {type_name}, got {type(value).__name__}"


class ConfigLoader:
    """
    Reads ``config.yaml`` from the contact-sync configuration directory.

    A missing or empty file yields ``{}`` so every command can fall back to
    its defaults; a file that exists but is not a YAML mapping is an error.

        loader = ConfigLoader()
        config = loader.load_and_validate()
        connections = load_connections(config)
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Args:
            config_dir: Configuration directory. Defaults to
                $CONTACT_SYNC_CONFIG_DIR, then ~/.contact-sync
            config_file: File name inside config_dir
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    @property
    def config_path(self) -> Path:
        return self.config_dir / self.config_file

    def default_store_path(self) -> Path:
        """Store location used when the configuration sets none."""
        return self.config_dir / DEFAULT_STORE_FILE

    def load(self) -> dict[str, Any]:
        """Load ``config_path``; see load_from_file."""
        return self.load_from_file(self.config_path)

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Parse one YAML configuration file.

        Returns:
            The top-level mapping, or an empty dict if the file is missing
            or empty

        Raises:
            ConfigError: If the file cannot be read, is not valid YAML, or
                does not hold a mapping
        """
        path = Path(path)
        if not path.exists():
            logger.debug(f"No configuration file at {path}, using defaults")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse {path}: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read {path}: {e}") from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigError(
                f"{path} must contain a YAML dictionary, got {type(config).__name__}"
            )

        logger.debug(f"Loaded {len(config)} configuration keys from {path}")
        return config

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration structure and values.

        Unknown keys are logged and ignored. Connection entries are checked
        by ConnectionConfig.from_dict when they are loaded; here only their
        container type is checked.

        Raises:
            ConfigError: If a known key has the wrong type or is out of range
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            expected = CONFIG_KEYS.get(key)
            if expected is None:
                logger.warning(f"Ignoring unknown configuration key: {key}")
                continue
            # bool is an int subclass, but True is not a worker count
            if isinstance(value, bool) and expected is not bool:
                raise ConfigError(_type_message(key, expected, value))
            if not isinstance(value, expected):
                raise ConfigError(_type_message(key, expected, value))

        self._check_ranges(config)

    def _check_ranges(self, config: dict[str, Any]) -> None:
        threshold = config.get("fuzzy_name_threshold")
        if threshold is not None and not 0.0 <= threshold <= 1.0:
            raise ConfigError(
                f"fuzzy_name_threshold must be between 0.0 and 1.0, got {threshold}"
            )

        region = config.get("default_region")
        if region is not None and (len(region) != 2 or not region.isalpha()):
            raise ConfigError(
                f"default_region must be a two-letter region code, got {region!r}"
            )

        workers = config.get("max_workers")
        if workers is not None and workers < 1:
            raise ConfigError(f"max_workers must be >= 1, got {workers}")

        # 0 keeps every log file
        retention = config.get("log_retention_count")
        if retention is not None and retention < 0:
            raise ConfigError(f"log_retention_count must be >= 0, got {retention}")

        timeout = config.get("request_timeout")
        if timeout is not None and timeout <= 0:
            raise ConfigError(f"request_timeout must be > 0, got {timeout}")

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Returns:
            Validated configuration dictionary

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config
