"""Configuration loading service.

Reads config.yaml, validates it against AppConfig and layers the
environment overrides shared with the hook client on top. A broken file
never stops the app from starting: it is logged and defaults are used.
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from island_core.models.config import AppConfig

logger = logging.getLogger(__name__)

# Overrides the socket path for both the server and the hook client
SOCKET_PATH_ENV = "CLAUDE_ISLAND_SOCKET"


def env_overrides() -> dict[str, Any]:
    """Config values taken from the environment."""
    overrides: dict[str, Any] = {}
    if socket_path := os.environ.get(SOCKET_PATH_ENV):
        overrides["socket_path"] = socket_path
    return overrides


class ConfigService:
    """Loads, caches and persists the AppConfig for one config file."""

    def __init__(self, config_path: str | Path = "config.yaml"):
        self.config_path = Path(config_path)
        self._config: AppConfig | None = None

    def _read_file(self) -> dict[str, Any]:
        """Raw mapping from the config file, or {} when unusable."""
        if not self.config_path.exists():
            logger.info(f"No config at {self.config_path}, using defaults")
            return {}

        try:
            data = yaml.safe_load(self.config_path.read_text())
        except (OSError, yaml.YAMLError) as e:
            logger.warning(f"Could not read {self.config_path}: {e}, using defaults")
            return {}

        if data is None:
            return {}
        if not isinstance(data, dict):
            logger.warning(f"{self.config_path} is not a mapping, using defaults")
            return {}
        return data

    def load(self) -> AppConfig:
        """Load and validate configuration.

        Returns:
            Validated AppConfig instance. Environment overrides apply even
            when the file itself is rejected.
        """
        overrides = env_overrides()
        try:
            config = AppConfig(**{**self._read_file(), **overrides})
        except ValidationError as e:
            logger.warning(f"Invalid config in {self.config_path}: {e}, using defaults")
            config = AppConfig(**overrides)

        self._config = config
        return config

    def get_config(self) -> AppConfig:
        """Return the cached config, loading it on first use."""
        return self._config if self._config is not None else self.load()

    def reload(self) -> AppConfig:
        """Force reload configuration from disk."""
        self._config = None
        return self.load()

    def save(self, config: AppConfig | None = None) -> bool:
        """Write configuration to disk.

        The file is replaced atomically so a concurrent reader never sees a
        half-written config.

        Args:
            config: Config to save. Uses current config if not provided.

        Returns:
            True if save succeeded.
        """
        config = config or self._config
        if config is None:
            return False

        tmp_path = self.config_path.with_name(self.config_path.name + ".tmp")
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(tmp_path, "w") as f:
                yaml.safe_dump(
                    config.model_dump(mode="json"), f, default_flow_style=False, sort_keys=False
                )
            os.replace(tmp_path, self.config_path)
        except (OSError, yaml.YAMLError) as e:
            logger.error(f"Error saving config to {self.config_path}: {e}")
            tmp_path.unlink(missing_ok=True)
            return False

        self._config = config
        return True


# Module-level singleton
_config_service: ConfigService | None = None


def get_config_service(config_path: str | Path = "config.yaml") -> ConfigService:
    """Get the global config service instance.

    Args:
        config_path: Path to config file (only used on first call).
    """
    global _config_service
    if _config_service is None:
        _config_service = ConfigService(config_path)
    return _config_service


def reset_config_service() -> None:
    """Reset the global config service (for testing)."""
    global _config_service
    _config_service = None
