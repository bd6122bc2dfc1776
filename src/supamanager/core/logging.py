"""
Structured logging for supamanager.

One structlog processor chain for the whole process: JSON lines when stdout is
not a terminal, coloured console output when it is. ``project_id``,
``backup_id`` and ``operation`` are bound through contextvars, so events from
tasks spawned by the supervisor carry the context of the call that spawned
them (asyncio copies the context on task creation).

Usage:
    >>> from supamanager.core.logging import configure_logging, get_logger, LogContext
    >>> configure_logging(level="INFO", json_format=True)
    >>> logger = get_logger(__name__)
    >>> with LogContext(project_id="p1"):
    ...     logger.info("project.create.accepted", plan="FREE")

Output (JSON format)::

    {"timestamp": "...", "level": "info", "service": "supamanager",
     "project_id": "p1", "event": "project.create.accepted", "plan": "FREE"}
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_SERVICE_NAME = "supamanager"


def _add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("service", _SERVICE_NAME)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "supamanager",
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: DEBUG, INFO, WARNING or ERROR.
        json_format: True for JSON lines, False for console, None to pick
            JSON when stdout is not a tty.
        service: value of the ``service`` key on every event.
    """
    global _SERVICE_NAME
    _SERVICE_NAME = service
    numeric_level = getattr(logging, level.upper())

    if json_format is None:
        json_format = not sys.stdout.isatty()

    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        _add_service,
    ]
    if json_format:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Runtime adapters and the periodic runner log through the stdlib
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
        stream=sys.stdout,
        level=numeric_level,
    )


def get_logger(name: str | None = None) -> Any:
    """Lazy structlog logger; ``name`` is emitted as the ``logger`` key."""
    if name is None:
        return structlog.get_logger()
    return structlog.get_logger(logger=name)


class LogContext:
    """Bind logging context for a block; ``None`` values are skipped.

    Example:
        async with LogContext(project_id="p1", operation="pause_project"):
            logger.info("project.pause.started")
    """

    def __init__(self, **kwargs: Any):
        self._context = {k: v for k, v in kwargs.items() if v is not None}
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__(*args)


__all__ = ["configure_logging", "get_logger", "LogContext"]
