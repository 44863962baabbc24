"""Logging helpers."""

from __future__ import annotations

import logging
import sys

from config import LOG_FORMAT, LOG_LEVEL


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the application's handler and level attached."""
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
        logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        logger.propagate = False
    return logger


def set_level(level: int | str) -> None:
    """Change the level of every skyarchive logger created so far."""
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)
    for name in list(logging.root.manager.loggerDict):
        if name.startswith('skyarchive'):
            logging.getLogger(name).setLevel(level)
