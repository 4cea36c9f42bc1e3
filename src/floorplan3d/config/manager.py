"""Configuration manager for floorplan3d.

Settings live in a JSON file under the user's config directory and are
organized into groups (see ``DEFAULT_CONFIG``). Values missing from the file
fall back to the defaults, so older config files keep working after new
settings are added.
"""

import copy
import json
from pathlib import Path
from typing import Any

from loguru import logger
from platformdirs import user_config_dir

from floorplan3d.config.defaults import DEFAULT_CONFIG

APP_NAME = "floorplan3d"


class ConfigManager:
    """Grouped application settings with change notification."""

    CONFIG_FILENAME = "floorplan3d_config.json"

    def __init__(self, config_dir: str | Path | None = None):
        if config_dir is None:
            self._config_dir = Path(user_config_dir(APP_NAME, APP_NAME))
        else:
            self._config_dir = Path(config_dir)

        self._config_path = self._config_dir / self.CONFIG_FILENAME
        self._data: dict[str, dict[str, Any]] = copy.deepcopy(DEFAULT_CONFIG)
        self._listeners: list = []

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    @property
    def config_path(self) -> Path:
        return self._config_path

    def load(self):
        """Load configuration from disk, merging over the defaults."""
        self._data = copy.deepcopy(DEFAULT_CONFIG)

        if not self._config_path.exists():
            logger.info("No config file found, using defaults.")
            return

        try:
            with open(self._config_path, "r", encoding="utf-8") as f:
                user_data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load config, using defaults: {e}")
            return

        for group, values in user_data.items():
            if group in self._data and isinstance(values, dict):
                self._data[group].update(values)
            else:
                self._data[group] = values

        logger.info(f"Configuration loaded from {self._config_path}")

    def save(self):
        """Write the current configuration to disk (internal keys excluded)."""
        self._config_dir.mkdir(parents=True, exist_ok=True)

        save_data = {}
        for group, values in self._data.items():
            save_data[group] = {k: v for k, v in values.items() if not k.startswith("_")}

        with open(self._config_path, "w", encoding="utf-8") as f:
            json.dump(save_data, f, indent=2)

        logger.info(f"Configuration saved to {self._config_path}")

    def get(self, group: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self._data.get(group, {}).get(key, default)

    def set(self, group: str, key: str, value: Any):
        """Set a configuration value and notify listeners if it changed."""
        if group not in self._data:
            self._data[group] = {}
        old_value = self._data[group].get(key)
        self._data[group][key] = value
        if old_value != value:
            self._notify_listeners(group, key, value, old_value)

    def get_group(self, group: str) -> dict[str, Any]:
        """Get all public values in a configuration group."""
        return {k: v for k, v in self._data.get(group, {}).items() if not k.startswith("_")}

    def get_group_label(self, group: str) -> str:
        """Get the display label for a configuration group."""
        return self._data.get(group, {}).get("_label", group.title())

    def groups(self) -> list[str]:
        """Get list of configuration group names."""
        return list(self._data.keys())

    def add_listener(self, callback):
        """Register ``callback(group, key, new_value, old_value)`` for changes."""
        self._listeners.append(callback)

    def _notify_listeners(self, group: str, key: str, new_value: Any, old_value: Any):
        for listener in self._listeners:
            try:
                listener(group, key, new_value, old_value)
            except Exception as e:
                logger.error(f"Config listener error: {e}")
