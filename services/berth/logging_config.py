"""
Logging setup for the Berth control plane.

structlog renders JSON lines in production and coloured console output in
development. Stdlib loggers (uvicorn, SQLAlchemy, httpx) are routed through
the same processor chain so every line has the same shape.

Stack workers bind their (server_id, stack_name) into contextvars when they
start; each worker runs in its own asyncio task, so every line it logs
carries the stack it belongs to without passing it around.
"""

import logging
import sys
from datetime import UTC, datetime
from typing import Any

import structlog
from structlog.types import EventDict, Processor

APP_NAME = "berth-api"

# Libraries that log every request or connection at INFO
_QUIET_LOGGERS = (
    "httpx",
    "httpcore",
    "asyncio",
    "uvicorn.access",
    "sqlalchemy.engine",
    "alembic.runtime.migration",
)


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["app"] = APP_NAME
    return event_dict


def level_first(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Put level, timestamp and event ahead of the bound fields in JSON output."""
    head: EventDict = {}
    for key in ("level", "timestamp", "event"):
        if key in event_dict:
            head[key] = event_dict.pop(key)
    head.update(event_dict)
    return head


def utc_timestamper(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """ISO8601 UTC with millisecond precision, e.g. 2024-05-01T12:00:00.123Z."""
    now = datetime.now(UTC)
    event_dict["timestamp"] = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"
    return event_dict


def configure_logging(json_logs: bool = True, log_level: str = "INFO") -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        utc_timestamper,
        structlog.processors.StackInfoRenderer(),
        add_app_context,
    ]

    final_processors: list[Processor] = [structlog.stdlib.ProcessorFormatter.remove_processors_meta]
    if json_logs:
        final_processors += [level_first, structlog.processors.JSONRenderer()]
    else:
        final_processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=[*shared_processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared_processors,
            processors=final_processors,
        )
    )
    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_stack_context(server_id: int, stack_name: str) -> None:
    """Tag every subsequent log line in the current task with its stack.

    Drops anything inherited from the spawning task (a worker started from a
    request handler would otherwise keep that request's request_id).
    """
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(server_id=server_id, stack_name=stack_name)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
