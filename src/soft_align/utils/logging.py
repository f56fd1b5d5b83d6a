"""Logger setup for the ``soft align`` namespace."""

from __future__ import annotations

import logging
from logging import Logger
from typing import Optional, Union

from .env import env_setting

ROOT_LOGGER = "soft align"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def _coerce_level(level: Union[int, str, None]) -> int:
    if level is None:
        level = env_setting("log_level", "INFO")
    if isinstance(level, int):
        return level
    text = str(level).strip()
    if text.isdigit():
        return int(text)
    resolved = logging.getLevelName(text.upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level {level!r}.")
    return resolved


def configure_logging(
    level: Union[int, str, None] = None,
    *,
    name: str = ROOT_LOGGER,
    propagate: bool = False,
    stream: Optional[object] = None,
) -> Logger:
    """Attach one stream handler to ``name`` and set its level.

    ``level`` accepts a number or a level name; without one the
    ``SOFT_ALIGN_LOG_LEVEL`` setting (default ``INFO``) applies. Module loggers
    live under ``"soft align.<area>"`` and inherit from the root configured here.
    Calling this again only updates the level.
    """

    logger = logging.getLogger(name)
    if not any(getattr(handler, "_soft_align", False) for handler in logger.handlers):
        handler = logging.StreamHandler(stream)  # type: ignore[arg-type]
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._soft_align = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.setLevel(_coerce_level(level))
    logger.propagate = propagate
    return logger


__all__ = ["LOG_FORMAT", "ROOT_LOGGER", "configure_logging"]
