"""Optional newline-JSON mirror of operation lifecycle events.

When operation_logs.log_to_file is enabled, every header creation and every
finalization is appended to {log_dir}/operations.jsonl. Rotation is by size
with a bounded number of backups. Write failures are logged and dropped.
"""

import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Any

from berth.config import settings
from berth.db.models import OperationLog, utc_now
from berth.logging_config import get_logger

logger = get_logger(__name__)

FILE_NAME = "operations.jsonl"

# Plain stdlib logger: lines must be the bare JSON entry, not structlog output.
_file_logger: logging.Logger | None = None
_handler: RotatingFileHandler | None = None


def init_operation_file_logger() -> None:
    """Open the mirror file if enabled. Call during API lifespan startup."""
    global _file_logger, _handler  # noqa: PLW0603

    cfg = settings.operation_logs
    if not cfg.log_to_file:
        return

    try:
        os.makedirs(cfg.log_dir, exist_ok=True)
        handler = RotatingFileHandler(
            os.path.join(cfg.log_dir, FILE_NAME),
            maxBytes=cfg.max_size_mb * 1024 * 1024,
            backupCount=cfg.backup_count,
            encoding="utf-8",
        )
    except OSError as e:
        logger.error("Failed to open operation log file", log_dir=cfg.log_dir, error=str(e))
        return

    handler.setFormatter(logging.Formatter("%(message)s"))
    file_logger = logging.getLogger("berth.operations.file")
    file_logger.handlers.clear()
    file_logger.addHandler(handler)
    file_logger.setLevel(logging.INFO)
    file_logger.propagate = False

    _file_logger, _handler = file_logger, handler
    logger.info("Operation file logging enabled", path=handler.baseFilename)


def close_operation_file_logger() -> None:
    global _file_logger, _handler  # noqa: PLW0603
    if _handler is not None and _file_logger is not None:
        _file_logger.removeHandler(_handler)
        _handler.close()
    _file_logger = None
    _handler = None


def _write(entry: dict[str, Any]) -> None:
    if _file_logger is None:
        return
    try:
        _file_logger.info(json.dumps(entry, separators=(",", ":")))
    except (OSError, TypeError, ValueError) as e:
        logger.error("Failed to write operation log entry", error=str(e))


def _base_entry(log: OperationLog, status: str) -> dict[str, Any]:
    return {
        "timestamp": utc_now().strftime("%Y-%m-%dT%H:%M:%SZ"),
        "log_id": log.id,
        "user_id": log.user_id,
        "server_id": log.server_id,
        "stack_name": log.stack_name,
        "operation_id": log.operation_id,
        "command": log.command,
        "status": status,
    }


def log_operation_created(log: OperationLog) -> None:
    entry = _base_entry(log, "started")
    if log.options:
        entry["options"] = json.dumps(log.options)
    if log.services:
        entry["services"] = json.dumps(log.services)
    _write(entry)


def log_operation_finalized(log: OperationLog) -> None:
    if log.success is None:
        status = "unknown"
    else:
        status = "success" if log.success else "failed"
    entry = _base_entry(log, status)
    if log.exit_code is not None:
        entry["exit_code"] = log.exit_code
    if log.duration_ms is not None:
        entry["duration_ms"] = log.duration_ms
    _write(entry)
