"""Logging setup shared by the CLI entry points and the web server."""

from __future__ import annotations

import logging
import os
from logging import Logger
from pathlib import Path
from typing import Iterable, List, Mapping, Optional


DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_LEVEL_ENV_VAR = "COURSE_RELAY_LOG_LEVEL"


def resolve_log_level(environ: Optional[Mapping[str, str]] = None, default: int = logging.INFO) -> int:
    """Return the level named by ``COURSE_RELAY_LOG_LEVEL`` or *default*."""

    source = os.environ if environ is None else environ
    raw = (source.get(LOG_LEVEL_ENV_VAR) or "").strip().upper()
    if not raw:
        return default
    level = logging.getLevelName(raw)
    return level if isinstance(level, int) else default


def configure_logging(level: int = logging.INFO, *, handlers: Iterable[logging.Handler] | None = None) -> Logger:
    """Configure the root logger, attaching a stream handler unless *handlers* are given."""

    logger = logging.getLogger()
    logger.setLevel(level)

    if handlers is None:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        logger.addHandler(stream_handler)
    else:
        for handler in handlers:
            logger.addHandler(handler)

    return logger


def get_log_file_path(storage_root: Path) -> Path:
    """Return the default path for the service log file."""

    return storage_root / "course_relay.log"


def build_service_handlers(storage_root: Path) -> List[logging.Handler]:
    """Return a file handler under *storage_root* plus a console handler."""

    formatter = logging.Formatter(DEFAULT_LOG_FORMAT)
    file_handler = logging.FileHandler(get_log_file_path(storage_root), encoding="utf-8")
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    return [file_handler, stream_handler]


__all__ = [
    "DEFAULT_LOG_FORMAT",
    "LOG_LEVEL_ENV_VAR",
    "build_service_handlers",
    "configure_logging",
    "get_log_file_path",
    "resolve_log_level",
]
