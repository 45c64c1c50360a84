"""Process-wide logging setup for the coordinator and executor entry points."""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
_MAX_BYTES = 10 * 1024 * 1024
_BACKUP_COUNT = 5
_LEVEL_ALIASES = {"WARN": "WARNING", "FATAL": "CRITICAL"}


def configure_logging(
    *,
    level: str,
    log_file: Path | None,
    console: bool = True,
    context: str | None = None,
) -> None:
    """Attach file and stderr handlers to the ``memento`` logger tree.

    Safe to call more than once: handlers from a previous call are replaced.
    """

    root = logging.getLogger("memento")
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    normalized = _LEVEL_ALIASES.get(level.upper(), level.upper())
    root.setLevel(getattr(logging, normalized, logging.INFO))
    root.propagate = False

    fmt = LOG_FORMAT if context is None else f"%(asctime)s %(levelname)s [{context}] %(message)s"
    formatter = logging.Formatter(fmt)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file,
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if console:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)
