"""Configuration loading for clustersim."""

from clustersim.configs.config import DEFAULT_CONFIG, Config, ConfigManager

__all__ = ["DEFAULT_CONFIG", "Config", "ConfigManager"]
