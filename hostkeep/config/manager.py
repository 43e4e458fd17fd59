"""Configuration management for hostkeep."""

import copy
import os
from typing import Any, Dict, List, Optional

import yaml
from jinja2 import Environment, FileSystemLoader

from hostkeep.utils.errors import ConfigurationError, create_error_suggestions, format_validation_errors

from .schemas import DEFAULT_CONFIG
from .validator import ConfigValidator

CONFIG_FILE_NAME = "hostkeep.yml"
USER_CONFIG_PATH = os.path.join("~", ".config", "hostkeep", "config.yml")


def merge_settings(defaults: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively overlay ``overrides`` on a copy of ``defaults``."""
    merged = copy.deepcopy(defaults)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_settings(merged[key], value)
        else:
            merged[key] = value
    return merged


class ConfigManager:
    """Manages hostkeep configuration files."""

    def __init__(self, path: Optional[str] = None, config_file: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            path: Optional custom working directory (defaults to current directory)
            config_file: Explicit configuration file, overriding the search
        """
        self.path = path or os.getcwd()
        self.config_file = config_file
        self.validator = ConfigValidator()
        self._config_cache: Dict[str, Dict[str, Any]] = {}

        # Setup Jinja2 for template rendering
        templates_dir = os.path.join(os.path.dirname(__file__), "..", "templates")
        self.jinja_env = Environment(loader=FileSystemLoader(templates_dir), trim_blocks=True, lstrip_blocks=True)

    def get_config_path(self) -> Optional[str]:
        """
        Locate the configuration file.

        An explicit file wins, then ``hostkeep.yml`` in the working directory,
        then the per-user file.

        Returns:
            Optional[str]: Path to the file, or None when there is none
        """
        if self.config_file:
            return self.config_file

        for candidate in (os.path.join(self.path, CONFIG_FILE_NAME), os.path.expanduser(USER_CONFIG_PATH)):
            if os.path.exists(candidate):
                return candidate

        return None

    def load_config(self, validate: bool = True) -> Dict[str, Any]:
        """
        Load the configuration document.

        Args:
            validate: Whether to validate the configuration

        Returns:
            Dict[str, Any]: The document; ``{"hostkeep": {}}`` when no file exists

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid
        """
        config_path = self.get_config_path()
        if not config_path:
            return {"hostkeep": {}}

        if config_path in self._config_cache:
            return self._config_cache[config_path]

        try:
            with open(config_path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(
                f"Error parsing YAML file {config_path}",
                details=str(e),
                suggestions=create_error_suggestions("configuration_invalid"),
            )

        if config is None:
            config = {"hostkeep": {}}

        if validate:
            errors = self.validate_config(config)
            if errors:
                raise ConfigurationError(
                    f"Invalid configuration in {config_path}",
                    details=format_validation_errors(errors),
                    suggestions=create_error_suggestions("configuration_invalid"),
                )

        self._config_cache[config_path] = config
        return config

    def get_settings(self) -> Dict[str, Any]:
        """The ``hostkeep`` section merged over the defaults."""
        config = self.load_config()
        return merge_settings(DEFAULT_CONFIG, config.get("hostkeep") or {})

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        return self.validator.validate_config(config)

    def create_default_config(self, template_vars: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Create default configuration from template.

        Args:
            template_vars: Variables for template rendering

        Returns:
            Dict[str, Any]: Generated configuration
        """
        return yaml.safe_load(self.render_default_config(template_vars))

    def render_default_config(self, template_vars: Optional[Dict[str, Any]] = None) -> str:
        variables = dict(DEFAULT_CONFIG)
        variables.update(template_vars or {})
        template = self.jinja_env.get_template("hostkeep.yml.j2")
        return template.render(**variables)

    def initialize_config(self, backup_root: Optional[str] = None, force: bool = False) -> str:
        """
        Write a default ``hostkeep.yml`` into the working directory.

        Args:
            backup_root: Where job directories should be created
            force: Overwrite an existing file

        Returns:
            str: Path to created configuration file
        """
        config_path = os.path.join(self.path, CONFIG_FILE_NAME)
        if os.path.exists(config_path) and not force:
            raise ConfigurationError(
                f"Configuration already exists: {config_path}",
                suggestions=["Use --force to overwrite it"],
            )

        template_vars = {}
        if backup_root:
            template_vars["backup_root"] = backup_root

        content = self.render_default_config(template_vars)
        errors = self.validate_config(yaml.safe_load(content))
        if errors:
            raise ConfigurationError("Generated configuration is invalid", details=format_validation_errors(errors))

        with open(config_path, "w", encoding="utf-8") as f:
            f.write(content)

        self.clear_cache()
        return config_path

    def clear_cache(self) -> None:
        """Clear configuration cache."""
        self._config_cache.clear()
