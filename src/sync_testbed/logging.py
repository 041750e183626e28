"""
Structured logging for sync-testbed.

Provisioning steps log dotted event names (``network.created``,
``database.ready``, ``migration.completed``) with key/value fields.
Output is JSON lines when stderr is not a terminal (CI), coloured console
output otherwise. A session binds its ``run_id`` with :class:`LogContext`
so every line from one environment can be correlated.

Example:
    configure_logging(level="DEBUG")
    logger = get_logger(__name__)
    async with LogContext(run_id="a1b2c3d4e5f6"):
        logger.info("database.ready", port=49153)
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger


def _tag_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service.name", "sync-testbed")
    return event_dict


def configure_logging(level: str = "INFO", json_format: bool | None = None) -> None:
    """Route structlog through the stdlib ``logging`` tree.

    Args:
        level: Minimum level (DEBUG, INFO, WARNING, ERROR)
        json_format: JSON lines if True, console if False, auto-detect if None
    """
    if json_format is None:
        json_format = not sys.stderr.isatty()
    numeric_level = logging.getLevelName(level.upper())

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        _tag_service,
    ]
    if json_format:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=numeric_level)


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


class LogContext:
    """Bind key/values to every log line emitted inside an ``async with``."""

    def __init__(self, **fields: Any):
        self._fields = fields

    async def __aenter__(self) -> LogContext:
        structlog.contextvars.bind_contextvars(**self._fields)
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self._fields)


__all__ = ["LogContext", "configure_logging", "get_logger"]
