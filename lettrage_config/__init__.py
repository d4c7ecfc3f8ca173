"""
lettrage_config -- single public entrypoint for runtime settings.

Responsibility:
    ``get_active_settings()`` is the only way to obtain settings at runtime.
    It reads a YAML file (the packaged ``defaults.yaml`` unless a path is
    given) and returns a frozen ``LettrageSettings``.

Failure modes:
    - ``FileNotFoundError`` -- the given settings file does not exist.
    - ``ValueError`` -- missing, unknown or invalid keys.

Every successful call emits a ``LETTRAGE_CONFIG_TRACE`` log record with the
source path and the non-secret settings.
"""

from __future__ import annotations

from pathlib import Path

from lettrage_config.loader import load_settings
from lettrage_config.schema import LettrageSettings
from lettrage_kernel.logging_config import get_logger

_logger = get_logger("config")

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "defaults.yaml"


def get_active_settings(config_path: Path | None = None) -> LettrageSettings:
    """Load the active settings.

    Args:
        config_path: YAML settings file; the packaged defaults when None.
    """
    path = Path(config_path) if config_path is not None else DEFAULT_SETTINGS_PATH
    settings = load_settings(path)
    _logger.info(
        "LETTRAGE_CONFIG_TRACE",
        extra={
            "trace_type": "LETTRAGE_CONFIG_TRACE",
            "source": str(path),
            "max_conflict_attempts": settings.max_conflict_attempts,
            "currency": settings.currency,
            "log_level": settings.log_level,
        },
    )
    return settings


__all__ = [
    "DEFAULT_SETTINGS_PATH",
    "LettrageSettings",
    "get_active_settings",
]
