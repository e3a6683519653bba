"""Build configuration loading and saving.

This module provides helpers for loading build configurations from YAML or
JSON files and for persisting the build-start snapshot.
"""

import json
from pathlib import Path
from typing import Any

import yaml

from armbian_imagegen.configuration.schema import BuildConfiguration


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def load_configuration(path: Path) -> BuildConfiguration:
    """Load and validate a build configuration file.

    The format is chosen by extension: .json for JSON, anything else is
    parsed as YAML.

    Args:
        path: Path to the configuration file.

    Returns:
        Validated BuildConfiguration.

    Raises:
        pydantic.ValidationError: If data does not match the schema.
    """
    if path.suffix.lower() == ".json":
        data = load_json(path)
    else:
        data = load_yaml(path)
    return BuildConfiguration.model_validate(data)


def save_configuration(config: BuildConfiguration, path: Path) -> Path:
    """Write a configuration as pretty-printed JSON.

    Args:
        config: Configuration to write.
        path: Destination file.

    Returns:
        The written path.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(
        json.dumps(config.model_dump(mode="json", exclude_none=True), indent=2),
        encoding="utf-8",
    )
    return path


__all__ = [
    "load_configuration",
    "load_json",
    "load_yaml",
    "save_configuration",
]
