"""Logging setup for SourceSweep.

Every module logs through a child of the ``sourcesweep`` logger obtained
with :func:`get_logger`; :func:`setup_logging` is called once by the CLI.
"""
from __future__ import annotations

import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# httpx logs every request at INFO; a retirement run makes thousands.
_CHATTY_LOGGERS = ("httpx", "httpcore")


def setup_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> None:
    """Attach a stderr handler (and optionally a file handler) to ``sourcesweep``.

    Safe to call again: only the level changes and a file handler is added
    once per path.
    """
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    root = logging.getLogger("sourcesweep")
    root.setLevel(level)
    root.propagate = False

    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        stream = logging.StreamHandler(sys.stderr)
        stream.setFormatter(formatter)
        root.addHandler(stream)

    if log_file:
        existing = {getattr(h, "baseFilename", None) for h in root.handlers}
        handler = logging.FileHandler(log_file, encoding="utf-8", delay=True)
        if handler.baseFilename in existing:
            handler.close()
        else:
            handler.setFormatter(formatter)
            root.addHandler(handler)

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG if level <= logging.DEBUG else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"sourcesweep.{name}")
