"""Configuration validation for hostkeep."""

import os
from typing import Any, Dict, List

import jsonschema
import yaml

from hostkeep.backup.steps import TREE_STEPS

from .schemas import CONFIG_SCHEMA

# Identifiers taken by built-in steps
RESERVED_STEP_IDS = {spec[0] for spec in TREE_STEPS} | {
    "packages",
    "pip",
    "databases",
    "logs",
    "docker",
    "disk_image",
    "snapshot",
    "compress",
    "encrypt",
    "decrypt",
    "extract",
}


class ConfigValidator:
    """Validates hostkeep configuration files."""

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        """
        Validate a configuration document.

        Args:
            config: Configuration dictionary to validate

        Returns:
            List[str]: List of validation errors (empty if valid)
        """
        errors = []

        try:
            jsonschema.validate(config, CONFIG_SCHEMA)
        except jsonschema.ValidationError as e:
            location = ".".join(str(part) for part in e.absolute_path)
            errors.append(f"Schema validation failed at '{location}': {e.message}" if location else e.message)
            return errors
        except jsonschema.SchemaError as e:
            errors.append(f"Schema error: {e.message}")
            return errors

        section = config.get("hostkeep", {})
        errors.extend(self._validate_extra_steps(section.get("extra_steps", [])))
        return errors

    def _validate_extra_steps(self, extra_steps: List[Dict[str, Any]]) -> List[str]:
        errors = []
        seen = set()
        for entry in extra_steps:
            step_id = entry["id"]
            if step_id in RESERVED_STEP_IDS:
                errors.append(f"extra_steps: '{step_id}' is a built-in step identifier")
            if step_id in seen:
                errors.append(f"extra_steps: duplicate identifier '{step_id}'")
            seen.add(step_id)

            for source in entry["sources"]:
                if not os.path.isabs(os.path.expanduser(source)):
                    errors.append(f"extra_steps.{step_id}: source must be an absolute path: {source}")

        return errors

    def validate_config_file(self, file_path: str) -> List[str]:
        """
        Validate a configuration file.

        Args:
            file_path: Path to configuration file

        Returns:
            List[str]: List of validation errors (empty if valid)
        """
        try:
            with open(file_path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except FileNotFoundError:
            return [f"Configuration file not found: {file_path}"]
        except yaml.YAMLError as e:
            return [f"Invalid YAML syntax: {e}"]

        if config is None:
            return ["Configuration file is empty"]

        return self.validate_config(config)
