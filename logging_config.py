"""
logging_config.py - Centralized logging configuration.

Every module logs through `get_logger(__name__)` and writes pipe-delimited
event lines (`event | key=value | ...`) so import batches can be grepped
after the fact.
"""

from __future__ import annotations

import logging
import os
import sys

NOISY_LOGGERS = ("uvicorn.access", "httpx", "multipart")

_LEVEL_NAMES = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


def level_from_env(default: int = logging.INFO) -> int:
    """Resolve the LOG_LEVEL environment variable to a logging level."""
    raw = os.getenv("LOG_LEVEL", "").strip().lower()
    return _LEVEL_NAMES.get(raw, default)


def setup_logging(level: int | None = None, json_format: bool = False) -> None:
    """Configure root logger with consistent formatting.

    Args:
        level: Logging level. Falls back to LOG_LEVEL, then INFO.
        json_format: If True, emit JSON-like log lines.
    """
    root = logging.getLogger()
    root.setLevel(level if level is not None else level_from_env())
    root.handlers.clear()

    if json_format:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","level":"%(levelname)s",'
            '"module":"%(name)s","message":"%(message)s"}',
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(name)-16s] %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(logging.WARNING, root.level))


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)
