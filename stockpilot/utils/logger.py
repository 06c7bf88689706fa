"""Logging configuration for stockpilot."""

import logging
import sys

_FORMAT = "%(asctime)s | %(name)-20s | %(levelname)-7s | %(message)s"


def setup_logger(name: str = "stockpilot", level: str | None = None) -> logging.Logger:
    """Create and configure a logger.

    When *level* is omitted the ``app.log_level`` setting is used, so every
    module logger follows ``configs/settings.yaml``.
    """
    if level is None:
        from stockpilot.config import SETTINGS

        level = SETTINGS.get("app", {}).get("log_level", "INFO")

    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        fmt = logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
        handler.setFormatter(fmt)
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    return logger
