"""Configuration for simulated clusters and shell sessions."""

from __future__ import annotations

import copy
import os
from typing import Any

import yaml

from clustersim.configs.config_io import (
    ensure_parent_dir,
    load_json_file,
    load_yaml_file,
    save_json_file,
    save_yaml_file,
)
from clustersim.errors import ConfigError

DEFAULT_CONFIG: dict[str, Any] = {
    "cluster": {
        "name": "dgx-superpod",
        "node_count": 8,
        "system_type": "DGX-A100",
    },
    "shell": {
        "user": "root",
        "current_node": "dgx-00",
        "cwd": "/root",
    },
    "metrics": {
        "seed": 42,
    },
}


class Config:
    """Nested configuration with dotted-key lookup."""

    def __init__(self, config_dict: dict[str, Any] | None = None):
        """Initialize configuration.

        Args:
            config_dict: Optional dictionary to use as base (deep copy)
        """
        self.config = copy.deepcopy(config_dict or {})

    def update(self, config_dict: dict[str, Any]) -> None:
        """Merge overrides into the configuration, one level deep for sections."""
        for key, value in config_dict.items():
            if isinstance(self.config.get(key), dict) and isinstance(value, dict):
                self.config[key] = {**self.config[key], **value}
            else:
                self.config[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key.

        Args:
            key: Configuration key (e.g., 'cluster.node_count')
            default: Default value if key not found

        Returns:
            Configuration value
        """
        value: Any = self.config
        for k in key.split("."):
            if isinstance(value, dict):
                value = value.get(k)
            else:
                return default
        return value if value is not None else default

    def to_dict(self) -> dict[str, Any]:
        return copy.deepcopy(self.config)


class ConfigManager:
    """Manages loading and saving configuration files."""

    @staticmethod
    def load_yaml(filepath: str) -> Config:
        return Config(load_yaml_file(filepath))

    @staticmethod
    def load_json(filepath: str) -> Config:
        return Config(load_json_file(filepath))

    @staticmethod
    def save_yaml(config: Config, filepath: str) -> None:
        ensure_parent_dir(filepath)
        save_yaml_file(filepath, config.to_dict())

    @staticmethod
    def save_json(config: Config, filepath: str) -> None:
        ensure_parent_dir(filepath)
        save_json_file(filepath, config.to_dict())

    @staticmethod
    def load_or_default(
        filepath: str | None = None,
        default_config: dict[str, Any] | None = None,
    ) -> Config:
        """Load configuration from file layered over defaults.

        Args:
            filepath: Optional path to a .yaml/.yml/.json file
            default_config: Base values; DEFAULT_CONFIG when omitted

        Returns:
            Config object

        Raises:
            ConfigError: If the file is missing, unparsable or has an unknown extension
        """
        base = Config(default_config if default_config is not None else DEFAULT_CONFIG)
        if not filepath:
            return base
        if not os.path.exists(filepath):
            raise ConfigError(f"Config file not found: {filepath}")
        try:
            if filepath.endswith((".yaml", ".yml")):
                loaded = ConfigManager.load_yaml(filepath)
            elif filepath.endswith(".json"):
                loaded = ConfigManager.load_json(filepath)
            else:
                raise ConfigError(f"Unsupported config format: {filepath}")
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigError(f"Could not parse {filepath}: {e}") from e
        if not isinstance(loaded.config, dict):
            raise ConfigError(f"Config root must be a mapping: {filepath}")
        base.update(loaded.config)
        return base
