"""Logging helper for console output (and optional extra handlers)."""

from __future__ import annotations

import logging
from typing import Optional, Union

_LOGGER_NAME = "roi_engine"


class _PlaneFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "plane"):
            record.plane = "-"
        return True


def get_logger(name: str) -> logging.Logger:
    """Return a logger configured for console output.

    Parameters
    ----------
    name : str
        Module name, typically ``__name__``.
    """
    base = logging.getLogger(_LOGGER_NAME)
    if not base.handlers:
        base.setLevel(logging.INFO)
        handler = logging.StreamHandler()
        handler.setLevel(logging.INFO)
        formatter = logging.Formatter(
            "[%(asctime)s] [%(levelname)s] %(module)s plane=%(plane)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)
        handler.addFilter(_PlaneFilter())
        base.addHandler(handler)
        base.propagate = False
    if name.startswith(f"{_LOGGER_NAME}."):
        name = name[len(_LOGGER_NAME) + 1 :]
    return logging.getLogger(f"{_LOGGER_NAME}.{name}")


def set_level(level: Union[int, str]) -> None:
    """Update log level for the package logger and all its handlers."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level}")
    base = logging.getLogger(_LOGGER_NAME)
    base.setLevel(level)
    for handler in base.handlers:
        handler.setLevel(level)


def attach_handler(handler: Optional[logging.Handler]) -> None:
    """Optionally attach an extra handler (e.g., a file or capture handler)."""
    if handler is None:
        return
    base = logging.getLogger(_LOGGER_NAME)
    if handler not in base.handlers:
        handler.addFilter(_PlaneFilter())
        base.addHandler(handler)
