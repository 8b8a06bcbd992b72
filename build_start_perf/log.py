from __future__ import annotations

import logging
import sys

PACKAGE_LOGGER = "build_start_perf"

LEVELS = {
    "log": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


def configure(level: str = "warn") -> logging.Logger:
    """Route package logs to stderr at the CLI's log level."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(LEVELS.get(level, logging.WARNING))
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
    logger.propagate = False
    return logger
