"""Logging configuration helpers for the vesting ledger."""
from __future__ import annotations

import logging
import os


def _coerce_level(level: str | int) -> int:
    """Translate a user provided level into a numeric log level."""

    if isinstance(level, int):
        return level
    name = level.upper()
    resolved = logging.getLevelName(name)
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level}")
    return resolved


def configure_logging(level: str | int | None = None, *, force: bool = False) -> None:
    """Configure the root logger for console output.

    The log level defaults to the ``INVESTOR_VESTING_LOG_LEVEL`` environment
    variable when ``level`` is not provided, falling back to INFO. ``force``
    mirrors :func:`logging.basicConfig`'s ``force`` parameter.
    """

    requested = os.getenv("INVESTOR_VESTING_LOG_LEVEL", "INFO") if level is None else level
    try:
        resolved_level = _coerce_level(requested)
    except ValueError:
        resolved_level = logging.INFO

    root_logger = logging.getLogger()
    if root_logger.handlers and not force:
        root_logger.setLevel(resolved_level)
        return

    logging.basicConfig(
        level=resolved_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
        force=force,
    )


__all__ = ["configure_logging"]
