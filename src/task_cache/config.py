"""Configuration for task-cache, stored as YAML."""

from pathlib import Path
from typing import Any

import structlog
import yaml

logger = structlog.get_logger()

CONFIG_DIR_NAME = ".task-cache"

DEFAULTS: dict[str, Any] = {
    "backend": "memory",
    "memory.path": f"{CONFIG_DIR_NAME}/tasks.yaml",
    "debounce_ms": 400,
    "page_size": 50,
}


class Config:
    """Configuration manager using YAML file storage.

    Local config lives in ``.task-cache/config.yaml`` in the current
    directory, global config in ``~/.task-cache/config.yaml``. Reads look at
    local config first, then global config, then the built-in defaults.
    """

    def __init__(self, use_global: bool = False, config_dir: Path | None = None, home: Path | None = None) -> None:
        """Initialize configuration manager.

        Args:
            use_global: If True, use global config only. If False, use local config with global fallback.
            config_dir: Custom directory holding config.yaml (overrides use_global)
            home: Directory holding the global config directory, defaults to the user's home
        """
        home_dir = (home or Path.home()) / CONFIG_DIR_NAME
        if config_dir is not None:
            self.config_dir = Path(config_dir)
            self.is_global = use_global
        elif use_global:
            self.config_dir = home_dir
            self.is_global = True
        else:
            self.config_dir = Path.cwd() / CONFIG_DIR_NAME
            self.is_global = False

        self.config_file = self.config_dir / "config.yaml"
        self._config: dict[str, Any] = self._read(self.config_file)

        self._global_config: dict[str, Any] = {}
        global_file = home_dir / "config.yaml"
        if not self.is_global and global_file != self.config_file and global_file.exists():
            try:
                self._global_config = self._read(global_file)
            except ValueError as e:
                logger.warning("Failed to load global config", error=str(e))

        logger.debug("Config initialized", config_file=str(self.config_file), is_global=self.is_global)

    @staticmethod
    def _read(path: Path) -> dict[str, Any]:
        if not path.exists():
            logger.debug("Config file does not exist", config_file=str(path))
            return {}
        try:
            with open(path, "r") as f:
                config = yaml.safe_load(f) or {}
        except Exception as e:
            logger.error("Failed to load config", config_file=str(path), error=str(e))
            raise ValueError(f"Failed to load config from {path}: {e}") from e
        if not isinstance(config, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        logger.debug("Config loaded", config_file=str(path), keys=list(config.keys()))
        return config

    def _save(self) -> None:
        try:
            self.config_dir.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, "w") as f:
                yaml.safe_dump(self._config, f, default_flow_style=False, sort_keys=False)
        except Exception as e:
            logger.error("Failed to save config", error=str(e))
            raise ValueError(f"Failed to save config to {self.config_file}: {e}") from e
        logger.debug("Config saved", config_file=str(self.config_file))

    def get(self, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            key: Configuration key
            default: Returned when neither config file nor the built-in defaults have the key

        Returns:
            Configuration value or default
        """
        if key in self._config:
            return self._config[key]
        if not self.is_global and key in self._global_config:
            return self._global_config[key]
        if default is None:
            return DEFAULTS.get(key)
        return default

    def get_int(self, key: str, default: int | None = None) -> int | None:
        """Get a configuration value as an integer.

        Raises:
            ValueError: If the stored value is not an integer
        """
        value = self.get(key, default)
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError) as e:
            raise ValueError(f"Config value {key}={value!r} is not an integer") from e

    def set(self, key: str, value: Any) -> None:
        logger.debug("Setting config value", key=key)
        self._config[key] = value
        self._save()

    def unset(self, key: str) -> None:
        logger.debug("Unsetting config value", key=key)
        if key in self._config:
            del self._config[key]
            self._save()

    def list(self) -> dict[str, Any]:
        """List the explicit settings; for local config, global values are merged under local ones."""
        if self.is_global:
            return self._config.copy()
        merged = self._global_config.copy()
        merged.update(self._config)
        return merged


def get_config(use_global: bool = False) -> Config:
    return Config(use_global=use_global)
