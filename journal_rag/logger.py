"""Pipeline logging setup."""

from __future__ import annotations

import logging
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _default_level() -> int:
    if os.getenv("DEBUG_RAG", "false").lower() == "true":
        return logging.DEBUG
    return logging.INFO


def setup_logger(name: str = "journal_rag", level: Optional[int] = None) -> logging.Logger:
    """Attach a single stdout handler to ``name`` and stop propagation.

    ``DEBUG_RAG=true`` selects DEBUG when no explicit level is passed.
    Calling it again replaces the handler instead of adding a second one.
    """
    level = _default_level() if level is None else level

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))

    logger = logging.getLogger(name)
    logger.handlers = [handler]
    logger.setLevel(level)
    logger.propagate = False
    return logger


LOGGER: logging.Logger = setup_logger()

__all__ = ["LOGGER", "setup_logger"]
