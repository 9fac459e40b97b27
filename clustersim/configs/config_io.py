"""Shared file I/O for configuration, scenario and definition documents."""

import json
import os
from typing import Any

import yaml


def ensure_parent_dir(filepath: str) -> None:
    """Create parent directory of filepath if needed."""
    parent = os.path.dirname(filepath) or "."
    os.makedirs(parent, exist_ok=True)


def load_yaml_file(filepath: str) -> dict[str, Any]:
    """Load a YAML mapping from disk.

    Args:
        filepath: Path to YAML file

    Returns:
        Loaded document as dict; empty dict if the file is empty
    """
    with open(filepath, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    return data if data is not None else {}


def load_json_file(filepath: str) -> dict[str, Any]:
    """Load a JSON file into a dictionary."""
    with open(filepath, encoding="utf-8") as f:
        data = json.load(f)
    return data if data is not None else {}


def save_yaml_file(filepath: str, data: dict[str, Any]) -> None:
    """Save a dictionary to a YAML file."""
    ensure_parent_dir(filepath)
    with open(filepath, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def save_json_file(filepath: str, data: dict[str, Any], indent: int = 2) -> None:
    """Save a dictionary to a JSON file."""
    ensure_parent_dir(filepath)
    with open(filepath, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=indent)
