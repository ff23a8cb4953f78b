"""Logging for the ``categorizer`` package.

Library modules obtain loggers through :func:`get_logger` and emit one-line
``event key=value`` records (``pass2:retry tx_id=t1 attempt=1 ...``). They never
attach handlers; until an entry point calls :func:`configure_logging` the
package logger only carries a ``NullHandler``.

``configure_logging`` installs a single stderr handler on the ``categorizer``
logger and turns down the per-request INFO chatter of the HTTP and database
clients the engine drives (``httpx``, ``openai``, ``sqlalchemy.engine``).
"""

from __future__ import annotations

import logging
import os
import sys
from typing import IO

_PKG_LOGGER_NAME = "categorizer"
_LEVEL_ENV = "CATEGORIZER_LOG_LEVEL"
_DEFAULT_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
_DEPENDENCY_LOGGERS = ("httpx", "openai", "sqlalchemy.engine")

_configured = False


def _resolve_level(level: int | str | None) -> int:
    """Accept an int, a numeric string, or a level name; fall back to the env."""

    if level is None:
        level = os.getenv(_LEVEL_ENV) or logging.INFO
    if isinstance(level, int):
        return level
    name = level.strip().upper()
    if name.isdigit():
        return int(name)
    return logging.getLevelNamesMapping().get(name, logging.INFO)


def configure_logging(
    level: int | str | None = None,
    *,
    fmt: str | None = None,
    stream: IO[str] | None = None,
    quiet_dependencies: bool = True,
) -> None:
    """Attach the package handler. Later calls are no-ops.

    ``level`` defaults to ``CATEGORIZER_LOG_LEVEL`` (else INFO); ``stream`` to
    the current ``sys.stderr``.
    """

    global _configured
    if _configured:
        return

    resolved = _resolve_level(level)
    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    for h in [h for h in pkg_logger.handlers if isinstance(h, logging.NullHandler)]:
        pkg_logger.removeHandler(h)

    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setLevel(resolved)
    handler.setFormatter(logging.Formatter(fmt or _DEFAULT_FORMAT))
    pkg_logger.addHandler(handler)
    pkg_logger.setLevel(resolved)
    pkg_logger.propagate = False

    if quiet_dependencies:
        for name in _DEPENDENCY_LOGGERS:
            logging.getLogger(name).setLevel(max(resolved, logging.WARNING))

    _configured = True


def get_logger(name: str) -> logging.Logger:
    pkg_logger = logging.getLogger(_PKG_LOGGER_NAME)
    if not _configured and not pkg_logger.handlers:
        pkg_logger.addHandler(logging.NullHandler())
    return logging.getLogger(name)


__all__ = ["configure_logging", "get_logger"]
