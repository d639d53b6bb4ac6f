"""Logging configuration for Keelson."""

import logging
import sys
from pathlib import Path
from typing import TextIO

import structlog

from keelson.config import get_config

_log_stream: TextIO | None = None


def _open_log_stream(path: str | None) -> TextIO:
    """Return the stream structlog should print to."""
    global _log_stream
    if not path:
        return sys.stderr
    if _log_stream is not None and not _log_stream.closed:
        _log_stream.close()
    log_path = Path(path).expanduser()
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _log_stream = open(log_path, "a", encoding="utf-8")
    return _log_stream


def configure_logging(level: str | None = None, file: str | None = None) -> None:
    """Configure structured logging for Keelson.

    Args:
        level: Optional level override (e.g. ``DEBUG`` for ``--verbose``)
        file: Optional log file; keeps log lines out of the interactive console
    """
    config = get_config()

    level_name = (level or config.logging.level).upper()
    log_level = getattr(logging, level_name, logging.WARNING)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.logging.format == "console":
        processors.append(structlog.dev.ConsoleRenderer(colors=file is None and config.logging.file is None))
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(
            file=_open_log_stream(file or config.logging.file)
        ),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()


log = get_logger(__name__)
