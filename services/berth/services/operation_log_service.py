"""Operation log store.

One header row per issued operation plus an append-only, densely numbered
stream of output messages. Headers are created when a stack worker starts
an operation (or skips it), messages are appended only by that worker, and
the header is finalized exactly once: by the worker, or by the stale
reaper when the worker's heartbeat stops.

Status machine:
    queued → running → completed | failed
    queued → cancelled              (batch dependency failed or timed out)
    queued → failed                 (stale reaper)
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from berth.config import settings
from berth.db.models import OperationLog, OperationLogMessage, utc_now
from berth.logging_config import get_logger
from berth.services import operation_file_logger
from berth.services.summary_parser import failure_summary, generate_summary

logger = get_logger(__name__)

MESSAGE_TYPES = frozenset({"stdout", "stderr", "progress", "complete", "error"})
TERMINAL_STATUSES = frozenset({"completed", "failed", "cancelled"})

VALID_TRANSITIONS: dict[str, set[str]] = {
    "queued": {"running", "cancelled", "failed"},
    "running": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
    "cancelled": set(),
}

# Exit code used in summaries when the agent never reported one
UNKNOWN_EXIT_CODE = -1


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATUSES


async def create_header(
    db: AsyncSession,
    *,
    user_id: int | None,
    server_id: int,
    stack_name: str,
    operation_id: str,
    command: str,
    options: list[str] | None = None,
    services: list[str] | None = None,
    queued_at: datetime | None = None,
    start_time: datetime | None = None,
    status: str = "running",
    batch_id: str | None = None,
    order: int = 0,
    depends_on: str | None = None,
    webhook_id: int | None = None,
) -> OperationLog:
    """Insert the header row for an operation. Returns it with its primary key."""
    start = start_time or utc_now()
    if queued_at is not None and start < queued_at:
        start = queued_at

    log = OperationLog(
        user_id=user_id,
        server_id=server_id,
        stack_name=stack_name,
        operation_id=operation_id,
        command=command,
        options=list(options or []),
        services=list(services or []),
        status=status,
        queued_at=queued_at,
        start_time=start,
        batch_id=batch_id,
        order=order,
        depends_on=depends_on,
        webhook_id=webhook_id,
    )
    db.add(log)
    await db.flush()

    logger.info(
        "Operation log created",
        log_id=log.id,
        operation_id=operation_id,
        command=command,
        status=status,
    )
    operation_file_logger.log_operation_created(log)
    return log


async def append_message(
    db: AsyncSession,
    log_id: int,
    message_type: str,
    data: str,
    timestamp: datetime | None = None,
) -> OperationLogMessage:
    """Append one message with the next sequence number.

    Also advances the header's last_message_at (the heartbeat) to
    max(current, timestamp).
    """
    if message_type not in MESSAGE_TYPES:
        raise ValueError(f"Unknown message type '{message_type}'")
    ts = timestamp or utc_now()

    result = await db.execute(
        select(func.coalesce(func.max(OperationLogMessage.sequence_number), 0)).where(
            OperationLogMessage.operation_log_id == log_id
        )
    )
    next_seq = int(result.scalar_one()) + 1

    message = OperationLogMessage(
        operation_log_id=log_id,
        sequence_number=next_seq,
        message_type=message_type,
        message_data=data,
        timestamp=ts,
    )
    db.add(message)
    await db.execute(
        update(OperationLog)
        .where(OperationLog.id == log_id)
        .values(
            last_message_at=func.greatest(func.coalesce(OperationLog.last_message_at, ts), ts)
        )
    )
    await db.flush()
    return message


async def finalize(
    db: AsyncSession,
    log_id: int,
    *,
    success: bool,
    exit_code: int | None,
    end_time: datetime | None = None,
    status: str | None = None,
) -> OperationLog | None:
    """Close an operation: status, end_time, duration and summary.

    Returns None (and writes nothing) if the header is missing or already
    terminal, so a worker finishing after the reaper cannot overwrite the
    reaper's verdict.
    """
    log = await db.get(OperationLog, log_id, populate_existing=True, with_for_update=True)
    if log is None or is_terminal(log.status):
        return None

    end = end_time or utc_now()
    new_status = status or ("completed" if success else "failed")
    if new_status not in VALID_TRANSITIONS[log.status]:
        raise ValueError(f"Invalid operation transition: {log.status} -> {new_status}")

    log.status = new_status
    log.end_time = end
    log.success = success
    log.exit_code = exit_code
    log.duration_ms = max(0, int((end - log.start_time).total_seconds() * 1000))

    code = exit_code if exit_code is not None else UNKNOWN_EXIT_CODE
    if success and settings.operation_logs.detailed_summaries:
        lines = await db.execute(
            select(OperationLogMessage.message_data)
            .where(
                OperationLogMessage.operation_log_id == log_id,
                OperationLogMessage.message_type.in_(("stdout", "stderr", "progress")),
            )
            .order_by(OperationLogMessage.sequence_number)
        )
        log.summary = generate_summary(
            log.command, True, code, lines.scalars().all(), detailed=True
        )
    else:
        log.summary = generate_summary(log.command, success, code)

    await db.flush()

    logger.info(
        "Operation log finalized",
        log_id=log_id,
        operation_id=log.operation_id,
        status=new_status,
        exit_code=exit_code,
        duration_ms=log.duration_ms,
    )
    operation_file_logger.log_operation_finalized(log)
    return log


async def record_skipped(
    db: AsyncSession,
    *,
    user_id: int,
    server_id: int,
    stack_name: str,
    operation_id: str,
    command: str,
    options: list[str],
    services: list[str],
    queued_at: datetime,
    reason: str,
    batch_id: str | None = None,
    order: int = 0,
    depends_on: str | None = None,
    webhook_id: int | None = None,
) -> OperationLog:
    """Write a terminal 'cancelled' header for an operation that never ran."""
    now = utc_now()
    log = await create_header(
        db,
        user_id=user_id,
        server_id=server_id,
        stack_name=stack_name,
        operation_id=operation_id,
        command=command,
        options=options,
        services=services,
        queued_at=queued_at,
        start_time=now,
        status="queued",
        batch_id=batch_id,
        order=order,
        depends_on=depends_on,
        webhook_id=webhook_id,
    )
    await append_message(db, log.id, "error", reason, now)
    log.status = "cancelled"
    log.end_time = now
    log.success = False
    log.duration_ms = 0
    log.summary = failure_summary(command, UNKNOWN_EXIT_CODE)
    await db.flush()

    logger.info("Operation cancelled", operation_id=operation_id, reason=reason)
    operation_file_logger.log_operation_finalized(log)
    return log


# --- Reads ---


async def get_by_operation_id(db: AsyncSession, operation_id: str) -> OperationLog | None:
    result = await db.execute(select(OperationLog).where(OperationLog.operation_id == operation_id))
    return result.unique().scalar_one_or_none()


async def list_messages(
    db: AsyncSession, log_id: int, after_sequence: int = 0
) -> list[OperationLogMessage]:
    """Messages in stream order, optionally only those after a sequence number."""
    result = await db.execute(
        select(OperationLogMessage)
        .where(
            OperationLogMessage.operation_log_id == log_id,
            OperationLogMessage.sequence_number > after_sequence,
        )
        .order_by(OperationLogMessage.sequence_number, OperationLogMessage.timestamp)
    )
    return list(result.scalars().all())


async def has_complete_message(db: AsyncSession, log_id: int) -> bool:
    result = await db.execute(
        select(OperationLogMessage.id)
        .where(
            OperationLogMessage.operation_log_id == log_id,
            OperationLogMessage.message_type == "complete",
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def get_details(
    db: AsyncSession,
    *,
    log_id: int | None = None,
    operation_id: str | None = None,
    user_id: int | None = None,
) -> tuple[OperationLog, list[OperationLogMessage]] | None:
    """Header plus all messages. user_id restricts to that user's own logs."""
    stmt = select(OperationLog)
    if log_id is not None:
        stmt = stmt.where(OperationLog.id == log_id)
    elif operation_id is not None:
        stmt = stmt.where(OperationLog.operation_id == operation_id)
    else:
        raise ValueError("log_id or operation_id is required")
    if user_id is not None:
        stmt = stmt.where(OperationLog.user_id == user_id)

    log = (await db.execute(stmt)).unique().scalar_one_or_none()
    if log is None:
        return None
    return log, await list_messages(db, log.id)


@dataclass
class OperationLogFilters:
    user_id: int | None = None
    server_id: int | None = None
    stack_name: str | None = None
    command: str | None = None
    status: str | None = None  # complete | incomplete | failed | success
    days_back: int | None = None
    search: str | None = None


STATUS_FILTERS = frozenset({"complete", "incomplete", "failed", "success"})


def _apply_filters(stmt, filters: OperationLogFilters):
    if filters.user_id is not None:
        stmt = stmt.where(OperationLog.user_id == filters.user_id)
    if filters.server_id is not None:
        stmt = stmt.where(OperationLog.server_id == filters.server_id)
    if filters.stack_name:
        stmt = stmt.where(OperationLog.stack_name.ilike(f"%{filters.stack_name}%"))
    if filters.command:
        stmt = stmt.where(OperationLog.command == filters.command)
    if filters.search:
        like = f"%{filters.search}%"
        stmt = stmt.where(
            or_(
                OperationLog.stack_name.ilike(like),
                OperationLog.command.ilike(like),
                OperationLog.operation_id.ilike(like),
            )
        )
    if filters.days_back:
        stmt = stmt.where(OperationLog.created_at >= utc_now() - timedelta(days=filters.days_back))

    match filters.status:
        case "complete":
            stmt = stmt.where(OperationLog.end_time.is_not(None))
        case "incomplete":
            stmt = stmt.where(OperationLog.end_time.is_(None))
        case "failed":
            stmt = stmt.where(OperationLog.end_time.is_not(None), OperationLog.success.is_(False))
        case "success":
            stmt = stmt.where(OperationLog.end_time.is_not(None), OperationLog.success.is_(True))
    return stmt


async def list_logs(
    db: AsyncSession, filters: OperationLogFilters, page: int, page_size: int
) -> tuple[list[dict[str, Any]], int]:
    """Paginated headers, newest first. Returns (rows, total)."""
    total = (
        await db.execute(_apply_filters(select(func.count(OperationLog.id)), filters))
    ).scalar_one()

    result = await db.execute(
        _apply_filters(select(OperationLog), filters)
        .order_by(OperationLog.created_at.desc(), OperationLog.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    logs = list(result.unique().scalars().all())
    if not logs:
        return [], total

    counts = await db.execute(
        select(
            OperationLogMessage.operation_log_id,
            func.count(OperationLogMessage.id),
            func.max(OperationLogMessage.timestamp),
        )
        .where(OperationLogMessage.operation_log_id.in_([log.id for log in logs]))
        .group_by(OperationLogMessage.operation_log_id)
    )
    stats = {log_id: (count, last) for log_id, count, last in counts.all()}

    rows = []
    for log in logs:
        count, last = stats.get(log.id, (0, None))
        row = log_to_dict(log)
        row["message_count"] = count
        row["partial_duration_ms"] = (
            int((last - log.start_time).total_seconds() * 1000)
            if log.end_time is None and last is not None
            else None
        )
        rows.append(row)
    return rows, total


async def running_operations(db: AsyncSession, user_id: int | None = None) -> list[OperationLog]:
    """Non-terminal operations with a heartbeat inside the stale threshold.

    The heartbeat is last_message_at, or start_time before the first message.
    """
    cutoff = utc_now() - timedelta(seconds=settings.queue.stale_threshold_seconds)
    stmt = (
        select(OperationLog)
        .where(
            OperationLog.status.not_in(TERMINAL_STATUSES),
            OperationLog.end_time.is_(None),
            or_(
                OperationLog.last_message_at > cutoff,
                (OperationLog.last_message_at.is_(None)) & (OperationLog.start_time > cutoff),
            ),
        )
        .order_by(OperationLog.start_time.desc())
    )
    if user_id is not None:
        stmt = stmt.where(OperationLog.user_id == user_id)
    return list((await db.execute(stmt)).unique().scalars().all())


async def stale_operations(db: AsyncSession, cutoff: datetime) -> list[OperationLog]:
    """Non-terminal operations whose heartbeat is older than cutoff."""
    stmt = select(OperationLog).where(
        OperationLog.status.not_in(TERMINAL_STATUSES),
        or_(
            OperationLog.last_message_at < cutoff,
            (OperationLog.last_message_at.is_(None)) & (OperationLog.start_time < cutoff),
        ),
    )
    return list((await db.execute(stmt)).unique().scalars().all())


async def get_stats(db: AsyncSession, user_id: int | None = None) -> dict[str, int]:
    async def _count(*conditions) -> int:
        stmt = select(func.count(OperationLog.id)).where(*conditions)
        if user_id is not None:
            stmt = stmt.where(OperationLog.user_id == user_id)
        return (await db.execute(stmt)).scalar_one()

    finished = OperationLog.end_time.is_not(None)
    return {
        "total_operations": await _count(),
        "incomplete_operations": await _count(OperationLog.end_time.is_(None)),
        "failed_operations": await _count(finished, OperationLog.success.is_(False)),
        "successful_operations": await _count(finished, OperationLog.success.is_(True)),
        "recent_operations": await _count(
            OperationLog.created_at > utc_now() - timedelta(hours=24)
        ),
    }


# --- Serialization ---


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def log_to_dict(log: OperationLog) -> dict[str, Any]:
    return {
        "id": log.id,
        "operation_id": log.operation_id,
        "user_id": log.user_id,
        "user_name": log.user.username if log.user else None,
        "server_id": log.server_id,
        "server_name": log.server.name if log.server else None,
        "stack_name": log.stack_name,
        "command": log.command,
        "options": log.options,
        "services": log.services,
        "status": log.status,
        "queued_at": _iso(log.queued_at),
        "start_time": _iso(log.start_time),
        "end_time": _iso(log.end_time),
        "last_message_at": _iso(log.last_message_at),
        "success": log.success,
        "exit_code": log.exit_code,
        "duration_ms": log.duration_ms,
        "summary": log.summary,
        "batch_id": log.batch_id,
        "order": log.order,
        "depends_on": log.depends_on,
        "webhook_id": log.webhook_id,
        "is_incomplete": log.end_time is None,
        "created_at": _iso(log.created_at),
    }


def message_to_dict(message: OperationLogMessage) -> dict[str, Any]:
    return {
        "id": message.id,
        "sequence_number": message.sequence_number,
        "message_type": message.message_type,
        "message_data": message.message_data,
        "timestamp": _iso(message.timestamp),
    }
