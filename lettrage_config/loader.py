"""
Settings loader (``lettrage_config.loader``).

Responsibility
--------------
Load a YAML settings file and parse it into a frozen ``LettrageSettings``.
The public entry point is ``lettrage_config.get_active_settings()``.

Invariants enforced
-------------------
* Unknown keys are rejected; a typo never silently falls back to a default.
* ``database_url`` is required.
* ``max_conflict_attempts`` is an int >= 1.
* ``currency`` is a three-letter upper-case code.
* ``log_level`` is a standard ``logging`` level name.

Failure modes
-------------
* Missing file  -> ``FileNotFoundError`` propagates.
* Malformed YAML  -> ``yaml.YAMLError`` propagates.
* Invalid or unknown keys  -> ``ValueError``.
"""

from __future__ import annotations

import logging
from dataclasses import fields
from pathlib import Path
from typing import Any

import yaml

from lettrage_config.schema import LettrageSettings

_KNOWN_KEYS = frozenset(f.name for f in fields(LettrageSettings))
_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def load_yaml_file(path: Path) -> dict[str, Any]:
    """
    Load a single YAML file and return its contents as a dict.

    Raises:
        FileNotFoundError: if the file does not exist.
        yaml.YAMLError: if the file contains invalid YAML.
        ValueError: if the top level is not a mapping.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at top level")
    return data


def parse_settings(data: dict[str, Any]) -> LettrageSettings:
    """Validate a raw mapping and build ``LettrageSettings``."""
    unknown = set(data) - _KNOWN_KEYS
    if unknown:
        raise ValueError(f"Unknown settings keys: {', '.join(sorted(unknown))}")

    database_url = data.get("database_url")
    if not isinstance(database_url, str) or not database_url.strip():
        raise ValueError("database_url is required")

    echo_sql = data.get("echo_sql", False)
    if not isinstance(echo_sql, bool):
        raise ValueError(f"echo_sql must be a boolean, got {echo_sql!r}")

    attempts = data.get("max_conflict_attempts", 3)
    if not isinstance(attempts, int) or isinstance(attempts, bool) or attempts < 1:
        raise ValueError(
            f"max_conflict_attempts must be an integer >= 1, got {attempts!r}"
        )

    currency = str(data.get("currency", "EUR"))
    if len(currency) != 3 or not currency.isalpha() or not currency.isupper():
        raise ValueError(f"currency must be a 3-letter ISO code, got {currency!r}")

    log_level = str(data.get("log_level", "INFO")).upper()
    if log_level not in _LOG_LEVELS:
        raise ValueError(f"log_level must be one of {sorted(_LOG_LEVELS)}")

    return LettrageSettings(
        database_url=database_url.strip(),
        echo_sql=echo_sql,
        max_conflict_attempts=attempts,
        currency=currency,
        log_level=log_level,
    )


def load_settings(path: Path) -> LettrageSettings:
    """Load and validate the settings file at ``path``."""
    return parse_settings(load_yaml_file(path))


def log_level_number(settings: LettrageSettings) -> int:
    """``logging`` level constant for ``settings.log_level``."""
    return logging.getLevelName(settings.log_level)
