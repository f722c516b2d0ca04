"""Process-wide structlog logger.

Configured at import time from ``LOG_LEVEL`` because config loading logs
too. Once Settings exist, the app calls :func:`set_level` with
``[logging].level``.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog


def _level_from(name: str | None, default: int = logging.INFO) -> int:
    level = logging.getLevelName((name or "").upper())
    return level if isinstance(level, int) else default


def _processors() -> list[structlog.types.Processor]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
    ]


def _configure() -> structlog.stdlib.BoundLogger:
    # filter_by_level asks the stdlib logger, so the root level gates everything
    logging.basicConfig(
        level=_level_from(os.environ.get("LOG_LEVEL")),
        format="%(message)s",
        stream=sys.stderr,
    )
    structlog.configure(
        processors=_processors(),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger("wabot")


logger = _configure()


def set_level(level_name: str) -> None:
    """Move the root level; unknown names leave it where it is."""
    root = logging.getLogger()
    root.setLevel(_level_from(level_name, default=root.level))


def _log_uncaught(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Crashed on uncaught exception", exc_info=(exc_type, exc_value, exc_tb))
    sys.exit(1)


sys.excepthook = _log_uncaught
