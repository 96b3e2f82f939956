"""
Process logging setup.

Path: clusterctl/core/log.py

init_logging() is called once by the process entry point. It is safe to
call again; the first call wins. Components never configure logging
themselves - they take a logger argument and default to their module
logger, which propagates to the "clusterctl" logger configured here.

Line format:
    [2026-01-01T12:00:00Z] - [INFO] - message
"""

import logging
import os
import threading
import time
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "clusterctl"
LOG_LEVEL_ENV = "CLUSTERCTL_LOG_LEVEL"

_init_lock = threading.Lock()
_initialized = False


class UTCFormatter(logging.Formatter):
    """Formatter emitting RFC3339 UTC timestamps."""

    converter = time.gmtime

    def __init__(self):
        super().__init__(
            fmt="[%(asctime)s] - [%(levelname)s] - %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%SZ",
        )


def parse_level(value: Optional[str]) -> int:
    """Map a level name to a logging level. Unknown values mean INFO."""
    value = (value or "").strip().lower()
    if value == "debug":
        return logging.DEBUG
    if value in ("warn", "warning"):
        return logging.WARNING
    if value == "error":
        return logging.ERROR
    return logging.INFO


def init_logging(
    level: Optional[str] = None,
    log_file: Optional[Path] = None,
    handler: Optional[logging.Handler] = None,
) -> logging.Logger:
    """
    Configure the clusterctl logger hierarchy.

    Args:
        level: Level name. Falls back to $CLUSTERCTL_LOG_LEVEL, then INFO.
        log_file: Optional file receiving the same lines.
        handler: Optional custom handler (default: StreamHandler to stderr).

    Returns:
        The root clusterctl logger.
    """
    global _initialized

    root = logging.getLogger(ROOT_LOGGER)

    with _init_lock:
        if _initialized:
            return root

        lvl = parse_level(level if level is not None else os.environ.get(LOG_LEVEL_ENV))
        formatter = UTCFormatter()

        if handler is None:
            handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)

        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            fh = logging.FileHandler(log_file)
            fh.setFormatter(formatter)
            root.addHandler(fh)

        root.setLevel(lvl)
        root.propagate = False
        _initialized = True

    return root
