# Method for reading settings and credentials files
"""Helper utilities for the small text files the agent reads and writes.

This module provides:
- load_config: Read the JSON settings file.
- parse_map / read_map: ``key=value`` per line maps (credentials, fund snapshots).
- require: Pull a typed value out of a settings dict or raise ConfigError.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Union

from napa.core.errors import ConfigError


# Method for loading the JSON settings file
def load_config(config_path: Union[str, Path]) -> dict:
    """Load configuration from a JSON file.

    Parameters
    - config_path: Path to the config JSON file

    Returns
    - dict: Parsed configuration

    Raises
    - ConfigError: If the file is missing, unreadable or not a JSON object
    """
    try:
        with open(config_path, "r") as f:
            config = json.load(f)
    except (OSError, json.JSONDecodeError) as exc:
        raise ConfigError(f"cannot read config '{config_path}': {exc}") from exc
    if not isinstance(config, dict):
        raise ConfigError(f"config '{config_path}' must be a JSON object")
    return config


# Method for reading a key=value map
def parse_map(lines: Iterable[str]) -> dict[str, str]:
    """Parse ``key=value`` lines. Blank lines and ``#`` comments are skipped.

    Raises
    - ValueError: If a non-blank line has no ``=`` or an empty key
    """
    result: dict[str, str] = {}
    for number, raw in enumerate(lines, 1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        key = key.strip()
        if not sep or not key:
            raise ValueError(f"line {number}: expected key=value, got {line!r}")
        result[key] = value.strip()
    return result


def read_map(file_path: Union[str, Path]) -> dict[str, str]:
    """Read a ``key=value`` per line file into a dict.

    Raises
    - FileNotFoundError: If the path does not exist
    - ValueError: If a line is malformed
    """
    if not os.path.exists(file_path):
        raise FileNotFoundError(f"map file not found at '{file_path}'")
    with open(file_path, "r", encoding="utf-8") as f:
        return parse_map(f)


# Method for pulling typed settings out of a config section
def require(
    section: dict,
    key: str,
    cast: Callable[[Any], Any] = str,
    *,
    default: Optional[Any] = None,
    where: str = "config",
) -> Any:
    """Return ``cast(section[key])``.

    A missing key falls back to *default* when one is given. Missing keys
    without a default and values *cast* rejects raise ``ConfigError``.
    """
    if key not in section:
        if default is not None:
            return default
        raise ConfigError(f"{where}: missing required setting '{key}'")
    try:
        return cast(section[key])
    except (TypeError, ValueError, ArithmeticError) as exc:
        raise ConfigError(f"{where}: invalid value for '{key}': {section[key]!r}") from exc
