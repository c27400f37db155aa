"""Lightweight logging helpers with UTC timestamps."""

from __future__ import annotations

import logging
import os
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
_HANDLER_NAME = "signal-trader-root-handler"
_FILE_HANDLER_NAME = "signal-trader-file-handler"


def _resolve_level(level: str | int | None) -> int:
    if level is None:
        env_level = os.getenv("LOG_LEVEL", "INFO").upper()
        return getattr(logging, env_level, logging.INFO)
    if isinstance(level, str):
        return getattr(logging, level.upper(), logging.INFO)
    return int(level)


def _formatter() -> logging.Formatter:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    formatter.converter = time.gmtime  # Force UTC timestamps
    return formatter


def setup_logging(level: str | int | None = None) -> logging.Logger:
    """Configure a single root handler if one has not been attached."""
    root = logging.getLogger()
    resolved_level = _resolve_level(level)

    has_handler = any(getattr(h, "name", "") == _HANDLER_NAME for h in root.handlers)
    if not has_handler:
        handler = logging.StreamHandler()
        handler.name = _HANDLER_NAME
        handler.setFormatter(_formatter())
        root.addHandler(handler)

    root.setLevel(resolved_level)
    for handler in root.handlers:
        if getattr(handler, "name", "") in (_HANDLER_NAME, _FILE_HANDLER_NAME):
            handler.setLevel(resolved_level)

    return root


def add_file_logging(log_dir: Path, filename: str = "engine.log") -> Path:
    """Mirror console output into a size-rotated file under log_dir."""
    root = setup_logging()
    path = Path(log_dir) / filename
    if any(getattr(h, "name", "") == _FILE_HANDLER_NAME for h in root.handlers):
        return path
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=5_000_000, backupCount=5)
    handler.name = _FILE_HANDLER_NAME
    handler.setFormatter(_formatter())
    handler.setLevel(root.level)
    root.addHandler(handler)
    return path


def get_logger(name: str) -> logging.Logger:
    """Return a logger configured with the shared format."""
    setup_logging()
    return logging.getLogger(name)
