"""
Runtime settings schema.

YAML settings files are parsed into ``LettrageSettings`` by the loader; no
other component reads the file or the environment.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class LettrageSettings:
    """Settings of one lettrage deployment."""

    database_url: str
    echo_sql: bool = False
    # Balance -> plan -> apply rounds before a conflict reaches the caller
    max_conflict_attempts: int = 3
    # ISO 4217 code the minor units belong to; reporting metadata only
    currency: str = "EUR"
    log_level: str = "INFO"
