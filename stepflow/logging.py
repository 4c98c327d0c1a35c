"""Logging setup for command-line use.

The library itself only creates module loggers; handlers are installed by
applications, or by :func:`configure_logging` in the CLI.
"""

from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str | int = "INFO") -> None:
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("stepflow").setLevel(level)
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
