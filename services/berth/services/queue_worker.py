"""Per-stack worker pool.

One StackWorker per (server_id, stack_name), created lazily on first
submission. Each worker owns a bounded FIFO of queued-operation ids and a
single task that drains it one operation at a time, so operations on the
same stack never overlap while different stacks run in parallel.

Worker loop per queued operation:
1. Skip rows that are no longer 'queued' (already handled, or replayed twice).
2. Wait for the batch dependency, if any; cancel on failure or timeout.
3. Mark the queue row running and create the operation log header.
4. Relay the agent operation (operation_service.start_and_execute).
5. Finalize the log header, then the queue row.
6. Hand the next batch member (if any) back to this worker.

Queued rows survive restarts: replay() resubmits them at startup, and rows
stuck 'running' are left to the stale reaper.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select

from berth.config import settings
from berth.db.models import OperationLog, QueuedOperation, Server, utc_now
from berth.db.session import get_db_session
from berth.logging_config import bind_stack_context, get_logger
from berth.services import operation_log_service, operation_service
from berth.services.operation_service import OperationRequest

logger = get_logger(__name__)

StackKey = tuple[int, str]


@dataclass
class _Job:
    """Snapshot of a queue row, detached from any DB session."""

    id: int
    operation_id: str
    user_id: int
    server: Server
    stack_name: str
    command: str
    options: list[str]
    services: list[str]
    queued_at: datetime
    batch_id: str | None
    order: int
    depends_on: str | None
    webhook_id: int | None

    @classmethod
    def from_row(cls, row: QueuedOperation) -> "_Job":
        return cls(
            id=row.id,
            operation_id=row.operation_id,
            user_id=row.user_id,
            server=row.server,
            stack_name=row.stack_name,
            command=row.command,
            options=list(row.options or []),
            services=list(row.services or []),
            queued_at=row.queued_at,
            batch_id=row.batch_id,
            order=row.order,
            depends_on=row.depends_on,
            webhook_id=row.webhook_id,
        )


async def queue_row_status(operation_id: str) -> str | None:
    async with get_db_session() as db:
        result = await db.execute(
            select(QueuedOperation.status).where(QueuedOperation.operation_id == operation_id)
        )
        return result.scalar_one_or_none()


async def next_batch_member(batch_id: str, order: int) -> QueuedOperation | None:
    """The queued peer that follows `order` in a batch, if it is still waiting."""
    async with get_db_session() as db:
        result = await db.execute(
            select(QueuedOperation).where(
                QueuedOperation.batch_id == batch_id,
                QueuedOperation.order == order + 1,
                QueuedOperation.status == "queued",
            )
        )
        return result.unique().scalar_one_or_none()


class StackWorker:
    def __init__(self, pool: "WorkerPool", key: StackKey) -> None:
        self.pool = pool
        self.key = key
        self.queue: asyncio.Queue[int] = asyncio.Queue(maxsize=pool.buffer_size)
        self.current_operation_id: str | None = None
        self.task: asyncio.Task | None = None

    def start(self) -> None:
        server_id, stack_name = self.key
        self.task = asyncio.create_task(self._run(), name=f"stack-worker:{server_id}:{stack_name}")

    async def _run(self) -> None:
        server_id, stack_name = self.key
        bind_stack_context(server_id, stack_name)
        logger.info("Stack worker started")
        try:
            while True:
                queued_id = await self.queue.get()
                try:
                    await self._process(queued_id)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error(
                        "Stack worker failed to process operation",
                        queued_id=queued_id,
                        error=str(e),
                        exc_info=e,
                    )
                finally:
                    self.queue.task_done()
        except asyncio.CancelledError:
            logger.info("Stack worker stopping")
            raise

    async def _process(self, queued_id: int) -> None:
        async with get_db_session() as db:
            row = await db.get(QueuedOperation, queued_id)
            if row is None or row.status != "queued":
                logger.debug("Skipping non-queued operation", queued_id=queued_id)
                return
            job = _Job.from_row(row)

        if job.depends_on:
            outcome = await self._wait_for_dependency(job.depends_on)
            if outcome != "completed":
                await self._skip(job, f"Skipped: dependency {job.depends_on} {outcome}")
                await self._advance_batch(job)
                return

        log_id = await self._mark_running(job)
        success, exit_code = await self._execute(job, log_id)
        await self._finish(job, log_id, success, exit_code)
        await self._advance_batch(job)

    async def _wait_for_dependency(self, depends_on: str) -> str:
        """Poll the dependency until it is terminal. Returns its status, or 'timed out'."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + settings.queue.dependency_timeout_seconds
        while True:
            status = await queue_row_status(depends_on)
            if status is None:
                return "missing"
            if status in operation_log_service.TERMINAL_STATUSES:
                return status
            if loop.time() >= deadline:
                return "timed out"
            await asyncio.sleep(settings.queue.dependency_poll_interval_seconds)

    async def _skip(self, job: _Job, reason: str) -> None:
        async with get_db_session() as db:
            row = await db.get(QueuedOperation, job.id)
            if row is not None:
                row.status = "cancelled"
                row.completed_at = utc_now()
            await operation_log_service.record_skipped(
                db,
                user_id=job.user_id,
                server_id=job.server.id,
                stack_name=job.stack_name,
                operation_id=job.operation_id,
                command=job.command,
                options=job.options,
                services=job.services,
                queued_at=job.queued_at,
                reason=reason,
                batch_id=job.batch_id,
                order=job.order,
                depends_on=job.depends_on,
                webhook_id=job.webhook_id,
            )

    async def _mark_running(self, job: _Job) -> int:
        now = utc_now()
        async with get_db_session() as db:
            row = await db.get(QueuedOperation, job.id)
            if row is not None:
                row.status = "running"
                row.started_at = now
            log = await operation_log_service.create_header(
                db,
                user_id=job.user_id,
                server_id=job.server.id,
                stack_name=job.stack_name,
                operation_id=job.operation_id,
                command=job.command,
                options=job.options,
                services=job.services,
                queued_at=job.queued_at,
                start_time=now,
                batch_id=job.batch_id,
                order=job.order,
                depends_on=job.depends_on,
                webhook_id=job.webhook_id,
            )
            log_id = log.id

        logger.info(
            "Operation running",
            operation_id=job.operation_id,
            server_id=job.server.id,
            stack_name=job.stack_name,
            command=job.command,
        )
        return log_id

    async def _execute(self, job: _Job, log_id: int) -> tuple[bool, int | None]:
        request = OperationRequest(job.command, job.options, job.services)
        self.current_operation_id = job.operation_id
        try:
            async with asyncio.timeout(settings.queue.operation_timeout_seconds):
                result = await operation_service.start_and_execute(
                    job.server, job.stack_name, request, log_id, job.operation_id
                )
            return result.success, result.exit_code
        except TimeoutError:
            timeout = settings.queue.operation_timeout_seconds
            logger.warning("Operation timed out", operation_id=job.operation_id, timeout=timeout)
            await operation_service.record_failure(
                log_id, job.operation_id, f"Operation timed out after {timeout:g}s"
            )
            return False, None
        except asyncio.CancelledError:
            # Shutdown: record the abort before letting cancellation through
            await operation_service.record_failure(log_id, job.operation_id, "Operation cancelled")
            await self._finish(job, log_id, False, None)
            raise
        except Exception as e:
            logger.error("Operation failed", operation_id=job.operation_id, error=str(e))
            await operation_service.record_failure(log_id, job.operation_id, str(e))
            return False, None
        finally:
            self.current_operation_id = None

    async def _finish(self, job: _Job, log_id: int, success: bool, exit_code: int | None) -> None:
        """Finalize the log header first, then the queue row.

        If the reaper already ended the header, the queue row follows the
        header's verdict.
        """
        async with get_db_session() as db:
            log = await operation_log_service.finalize(
                db, log_id, success=success, exit_code=exit_code
            )
            final_status = log.status if log is not None else None

        async with get_db_session() as db:
            if final_status is None:
                header = await db.get(OperationLog, log_id)
                final_status = header.status if header is not None else "failed"
            row = await db.get(QueuedOperation, job.id)
            if row is not None:
                row.status = final_status
                row.completed_at = utc_now()

        logger.info(
            "Operation finished",
            operation_id=job.operation_id,
            status=final_status,
            exit_code=exit_code,
        )

    async def _advance_batch(self, job: _Job) -> None:
        """Hand the next batch member to this worker.

        It runs if this member completed, and cancels itself otherwise.
        """
        if not job.batch_id:
            return
        peer = await next_batch_member(job.batch_id, job.order)
        if peer is not None:
            self.pool.submit_nowait(peer.server_id, peer.stack_name, peer.id)


class WorkerPool:
    """Registry of stack workers.

    Lookup and creation happen without an await in between, so the
    registry is consistent without a lock on the single event loop.
    """

    def __init__(self, buffer_size: int = 100) -> None:
        self.buffer_size = buffer_size
        self.workers: dict[StackKey, StackWorker] = {}
        self._intake_locks: dict[StackKey, asyncio.Lock] = {}
        self._pending_puts: set[asyncio.Task] = set()

    def worker_for(self, server_id: int, stack_name: str) -> StackWorker:
        """Get or lazily create the worker for a stack."""
        key = (server_id, stack_name)
        worker = self.workers.get(key)
        if worker is None:
            worker = StackWorker(self, key)
            self.workers[key] = worker
            worker.start()
        return worker

    def intake_lock(self, server_id: int, stack_name: str) -> asyncio.Lock:
        """Held by intake across stamping, committing and submitting a row.

        Rows then reach the FIFO in queued_at order even when their commits
        finish out of order.
        """
        return self._intake_locks.setdefault((server_id, stack_name), asyncio.Lock())

    async def submit(self, server_id: int, stack_name: str, queued_id: int) -> None:
        """Enqueue a queue row id. Waits for space when the worker FIFO is full."""
        worker = self.worker_for(server_id, stack_name)
        await worker.queue.put(queued_id)
        logger.debug(
            "Operation submitted to worker",
            server_id=server_id,
            stack_name=stack_name,
            queued_id=queued_id,
        )

    def submit_nowait(self, server_id: int, stack_name: str, queued_id: int) -> None:
        """Enqueue without waiting. Used from inside workers, which must not block on themselves."""
        worker = self.worker_for(server_id, stack_name)
        try:
            worker.queue.put_nowait(queued_id)
        except asyncio.QueueFull:
            task = asyncio.create_task(worker.queue.put(queued_id))
            self._pending_puts.add(task)
            task.add_done_callback(self._pending_puts.discard)

    def owns(self, operation_id: str) -> bool:
        """Whether an in-process worker is currently executing the operation."""
        return any(w.current_operation_id == operation_id for w in self.workers.values())

    async def replay(self) -> int:
        """Resubmit every queued row, oldest first. Returns the number submitted.

        Batch members whose dependency has not finished yet are left for the
        batch progression step.
        """
        async with get_db_session() as db:
            result = await db.execute(
                select(QueuedOperation)
                .where(QueuedOperation.status == "queued")
                .order_by(QueuedOperation.queued_at, QueuedOperation.order, QueuedOperation.id)
            )
            rows = list(result.unique().scalars().all())

            dep_ids = [r.depends_on for r in rows if r.depends_on]
            dep_status: dict[str, str] = {}
            if dep_ids:
                deps = await db.execute(
                    select(QueuedOperation.operation_id, QueuedOperation.status).where(
                        QueuedOperation.operation_id.in_(dep_ids)
                    )
                )
                dep_status = {op_id: status for op_id, status in deps.all()}

        submitted = 0
        for row in rows:
            if row.depends_on and dep_status.get(row.depends_on) not in (
                operation_log_service.TERMINAL_STATUSES
            ):
                continue
            await self.submit(row.server_id, row.stack_name, row.id)
            submitted += 1

        logger.info("Replayed queued operations", count=submitted)
        return submitted

    async def close(self) -> None:
        tasks = [w.task for w in self.workers.values() if w.task is not None]
        tasks.extend(self._pending_puts)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.workers.clear()
        self._intake_locks.clear()


# Module-level pool reference, initialized in lifespan
_pool: WorkerPool | None = None


def init_worker_pool() -> WorkerPool:
    global _pool  # noqa: PLW0603
    _pool = WorkerPool(buffer_size=settings.queue.worker_buffer_size)
    logger.info("Worker pool initialized", buffer_size=_pool.buffer_size)
    return _pool


def get_worker_pool() -> WorkerPool:
    """Return the worker pool. Raises if not initialized."""
    if _pool is None:
        raise RuntimeError("Worker pool not initialized: call init_worker_pool() first")
    return _pool


async def close_worker_pool() -> None:
    global _pool  # noqa: PLW0603
    if _pool is not None:
        logger.info("Stopping stack workers", count=len(_pool.workers))
        await _pool.close()
        _pool = None
