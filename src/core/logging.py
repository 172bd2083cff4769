"""
Logging for the authorization pipeline.

All module loggers hang off the ``src`` package logger, which owns the
single stdout handler.  Decisions are logged as ``message  key=value``
pairs.
"""
from __future__ import annotations

import logging
import sys

from src.core.config import get_settings

_ROOT_LOGGER = "src"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def _configure_root() -> logging.Logger:
    root = logging.getLogger(_ROOT_LOGGER)
    if root.handlers:
        return root
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    root.addHandler(handler)

    level = getattr(logging, get_settings().log_level.upper(), logging.INFO)
    root.setLevel(level)
    # SQLAlchemy echoes statements and parameters at INFO
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if level <= logging.DEBUG else logging.WARNING
    )
    return root


def get_logger(name: str) -> logging.Logger:
    """Logger for *name*, routed through the package handler."""
    root = _configure_root()
    if name == _ROOT_LOGGER or name.startswith(_ROOT_LOGGER + "."):
        return logging.getLogger(name)
    return root.getChild(name)
