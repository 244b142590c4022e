"""Stale operation reaper.

Periodically promotes operations whose heartbeat (last message, or start
time before the first message) is older than the stale threshold to
'failed', with a synthesized error message explaining why. Also repairs
queue rows left 'running' after their log header already ended (a crash
between the two finalize writes).
"""

import asyncio
from datetime import timedelta

from sqlalchemy import select

from berth.config import settings
from berth.db.models import OperationLog, QueuedOperation, utc_now
from berth.db.session import get_db_session
from berth.logging_config import get_logger
from berth.services import operation_log_service
from berth.services.queue_worker import get_worker_pool, next_batch_member

logger = get_logger(__name__)

REASON_AFTER_RESTART = "no heartbeat after restart"
REASON_SILENT = "no heartbeat for 5 minutes"


def _owned_in_process(operation_id: str) -> bool:
    try:
        return get_worker_pool().owns(operation_id)
    except RuntimeError:
        return False


async def _reap_operation(log: OperationLog) -> str | None:
    """Fail one stale operation. Returns the final queue status, or None if already ended."""
    reason = REASON_SILENT if _owned_in_process(log.operation_id) else REASON_AFTER_RESTART

    async with get_db_session() as db:
        # Lock the header so a worker finishing concurrently waits for this
        # verdict; a header that ended first gets no reaper message.
        header = await db.get(
            OperationLog, log.id, populate_existing=True, with_for_update=True
        )
        if header is None or operation_log_service.is_terminal(header.status):
            return None
        await operation_log_service.append_message(db, log.id, "error", reason)
        finalized = await operation_log_service.finalize(
            db, log.id, success=False, exit_code=None, status="failed"
        )
    if finalized is None:
        return None

    async with get_db_session() as db:
        result = await db.execute(
            select(QueuedOperation).where(QueuedOperation.operation_id == log.operation_id)
        )
        row = result.unique().scalar_one_or_none()
        if row is not None and row.status not in operation_log_service.TERMINAL_STATUSES:
            row.status = "failed"
            row.completed_at = utc_now()

    logger.warning(
        "Stale operation marked failed",
        operation_id=log.operation_id,
        reason=reason,
        server_id=log.server_id,
        stack_name=log.stack_name,
    )

    if log.batch_id:
        peer = await next_batch_member(log.batch_id, log.order)
        if peer is not None:
            try:
                get_worker_pool().submit_nowait(peer.server_id, peer.stack_name, peer.id)
            except RuntimeError:
                logger.warning(
                    "Worker pool unavailable, batch peer left queued",
                    operation_id=peer.operation_id,
                )
    return "failed"


async def _repair_queue_rows() -> int:
    """Bring 'running' queue rows in line with a terminal (or missing) header."""
    repaired = 0
    async with get_db_session() as db:
        result = await db.execute(
            select(QueuedOperation, OperationLog.status)
            .outerjoin(OperationLog, OperationLog.operation_id == QueuedOperation.operation_id)
            .where(QueuedOperation.status == "running")
        )
        for row, header_status in result.unique().all():
            if _owned_in_process(row.operation_id):
                continue
            if header_status is None or operation_log_service.is_terminal(header_status):
                row.status = header_status or "failed"
                row.completed_at = utc_now()
                repaired += 1
    return repaired


async def reap_once() -> int:
    """Run one sweep. Returns the number of operations promoted to failed."""
    cutoff = utc_now() - timedelta(seconds=settings.queue.stale_threshold_seconds)
    async with get_db_session() as db:
        stale = await operation_log_service.stale_operations(db, cutoff)

    reaped = 0
    for log in stale:
        try:
            if await _reap_operation(log) is not None:
                reaped += 1
        except Exception as e:
            logger.error("Failed to reap operation", operation_id=log.operation_id, error=str(e))

    repaired = await _repair_queue_rows()
    if reaped or repaired:
        logger.info("Reaper sweep finished", reaped=reaped, repaired_queue_rows=repaired)
    return reaped


async def run_reaper() -> None:
    """Main reaper loop, runs as an async background task."""
    interval = settings.queue.reaper_interval_seconds
    logger.info("Stale reaper started", interval_seconds=interval)

    while True:
        try:
            await reap_once()
        except Exception as e:
            logger.error("Reaper sweep failed", error=str(e), exc_info=e)

        try:
            await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Stale reaper stopping")
            return
