"""Console logging setup shared by the command line and embedding scripts."""
from __future__ import annotations

import logging
import os

LOG_LEVEL_ENV = "ASCENTFOLIO_LOG_LEVEL"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _coerce_level(level: str | int) -> int:
    """Translate a user provided level into a numeric log level."""

    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def configure_logging(level: str | int | None = None, *, force: bool = False) -> int:
    """Configure the root logger for console output.

    ``level`` falls back to ``ASCENTFOLIO_LOG_LEVEL`` and then to INFO. An
    unknown level name also resolves to INFO. Returns the level that was
    applied.
    """

    raw = level if level is not None else os.getenv(LOG_LEVEL_ENV, "INFO")
    try:
        resolved_level = _coerce_level(raw)
    except ValueError:
        resolved_level = logging.INFO

    root_logger = logging.getLogger()
    if root_logger.handlers and not force:
        root_logger.setLevel(resolved_level)
        return resolved_level

    logging.basicConfig(level=resolved_level, format=LOG_FORMAT, force=force)
    return resolved_level


__all__ = ["configure_logging", "LOG_LEVEL_ENV"]
