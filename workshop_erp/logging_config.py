"""Logging setup for the workshop engine."""

from __future__ import annotations

import logging
from typing import Union

LOGGER_NAME = "workshop_erp"
LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"


def configure_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Attach a single stream handler to the package logger.

    Calling this more than once only updates the level.
    """

    logger = logging.getLogger(LOGGER_NAME)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)
    if not any(getattr(handler, "_workshop_handler", False) for handler in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._workshop_handler = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    return logger


def reset_logging() -> None:
    logger = logging.getLogger(LOGGER_NAME)
    for handler in list(logger.handlers):
        if getattr(handler, "_workshop_handler", False):
            logger.removeHandler(handler)
    logger.setLevel(logging.NOTSET)


__all__ = ["configure_logging", "reset_logging", "LOGGER_NAME"]
