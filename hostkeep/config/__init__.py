"""Configuration management for hostkeep."""

from .manager import ConfigManager
from .schemas import CONFIG_SCHEMA, DEFAULT_CONFIG

__all__ = ["ConfigManager", "CONFIG_SCHEMA", "DEFAULT_CONFIG"]
