"""Queue intake.

Validates the caller, persists queue rows and hands them to the stack
worker pool. Rows are committed before submission so that the worker's own
session sees them, and the whole stamp-commit-submit step runs under the
stack's intake lock so the FIFO order matches queued_at order.
"""

import uuid
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from berth.auth.permissions import required_permission_for_command
from berth.auth.principals import Principal
from berth.config import settings
from berth.db.models import QueuedOperation, utc_now
from berth.errors import OperationForbiddenError
from berth.logging_config import get_logger
from berth.services import rbac_service, security_audit_service, server_service
from berth.services.operation_service import OperationRequest
from berth.services.queue_worker import get_worker_pool
from berth.services.security_audit_service import Actor

logger = get_logger(__name__)


def generate_operation_id() -> str:
    return "op_" + uuid.uuid4().hex[:8]


def generate_batch_id() -> str:
    return "batch_" + uuid.uuid4().hex[:8]


def estimated_start_time(position: int) -> str:
    """Rough start estimate for a row at a 1-based queue position."""
    delay = settings.queue.estimated_seconds_per_operation * max(position - 1, 0)
    return (utc_now() + timedelta(seconds=delay)).isoformat()


async def _authorize(
    db: AsyncSession,
    principal: Principal,
    actor: Actor,
    server_id: int,
    stack_name: str,
    command: str,
    webhook_id: int | None,
) -> None:
    permission = required_permission_for_command(command)
    if await rbac_service.effective_allow(db, principal, server_id, stack_name, permission):
        return

    logger.warning(
        "Operation permission denied",
        user_id=principal.user_id,
        server_id=server_id,
        stack_name=stack_name,
        command=command,
        required_permission=permission,
    )
    await security_audit_service.record_authorization_denied(
        actor,
        server_id,
        stack_name,
        permission,
        metadata={"command": command, "credential": principal.kind, "webhook_id": webhook_id},
    )
    raise OperationForbiddenError(
        f"Insufficient permissions for operation '{command}' on stack '{stack_name}'",
        permission=permission,
    )


async def queue_position(db: AsyncSession, row: QueuedOperation) -> int:
    """Number of queued rows on the same stack queued no later than this one."""
    result = await db.execute(
        select(func.count(QueuedOperation.id)).where(
            QueuedOperation.server_id == row.server_id,
            QueuedOperation.stack_name == row.stack_name,
            QueuedOperation.status == "queued",
            QueuedOperation.queued_at <= row.queued_at,
        )
    )
    return result.scalar_one()


def _new_row(
    principal: Principal,
    server_id: int,
    stack_name: str,
    request: OperationRequest,
    webhook_id: int | None,
    **extra: Any,
) -> QueuedOperation:
    return QueuedOperation(
        operation_id=generate_operation_id(),
        user_id=principal.user_id,
        server_id=server_id,
        stack_name=stack_name,
        command=request.command,
        options=list(request.options),
        services=list(request.services),
        status="queued",
        webhook_id=webhook_id,
        queued_at=utc_now(),
        **extra,
    )


async def enqueue_one(
    db: AsyncSession,
    principal: Principal,
    actor: Actor,
    server_id: int,
    stack_name: str,
    request: OperationRequest,
    webhook_id: int | None = None,
) -> dict[str, Any]:
    """Authorize, persist and submit a single operation.

    Returns {operation_id, status, position_in_queue, estimated_start_time}.
    """
    await server_service.get_visible_server(db, principal, server_id)
    await _authorize(db, principal, actor, server_id, stack_name, request.command, webhook_id)

    pool = get_worker_pool()
    async with pool.intake_lock(server_id, stack_name):
        row = _new_row(principal, server_id, stack_name, request, webhook_id, order=0)
        db.add(row)
        await db.commit()

        position = await queue_position(db, row)
        await pool.submit(server_id, stack_name, row.id)

    logger.info(
        "Operation queued",
        operation_id=row.operation_id,
        user_id=principal.user_id,
        server_id=server_id,
        stack_name=stack_name,
        command=request.command,
        position=position,
    )
    return {
        "operation_id": row.operation_id,
        "status": row.status,
        "position_in_queue": position,
        "estimated_start_time": estimated_start_time(position),
    }


async def enqueue_batch(
    db: AsyncSession,
    principal: Principal,
    actor: Actor,
    server_id: int,
    stack_name: str,
    requests: list[OperationRequest],
    webhook_id: int | None = None,
) -> dict[str, Any]:
    """Authorize every item, then persist a dependency-chained batch.

    Only the first member is submitted; the worker hands each following
    member over once its predecessor ends.
    """
    if not requests:
        raise ValueError("No operations provided")

    await server_service.get_visible_server(db, principal, server_id)
    for request in requests:
        await _authorize(db, principal, actor, server_id, stack_name, request.command, webhook_id)

    batch_id = generate_batch_id()
    rows: list[QueuedOperation] = []
    pool = get_worker_pool()
    async with pool.intake_lock(server_id, stack_name):
        for order, request in enumerate(requests):
            rows.append(
                _new_row(
                    principal,
                    server_id,
                    stack_name,
                    request,
                    webhook_id,
                    batch_id=batch_id,
                    order=order,
                    depends_on=rows[-1].operation_id if rows else None,
                )
            )
        db.add_all(rows)
        await db.commit()

        first_position = await queue_position(db, rows[0])
        await pool.submit(server_id, stack_name, rows[0].id)

    logger.info(
        "Batch queued",
        batch_id=batch_id,
        user_id=principal.user_id,
        server_id=server_id,
        stack_name=stack_name,
        operation_count=len(rows),
    )
    return {
        "batch_id": batch_id,
        "operations": [
            {
                "operation_id": row.operation_id,
                "command": row.command,
                "order": row.order,
                "depends_on": row.depends_on,
                "status": row.status,
                "position_in_queue": first_position + row.order,
            }
            for row in rows
        ],
        "estimated_start_time": estimated_start_time(first_position),
    }


async def list_stack_queue(db: AsyncSession, server_id: int, stack_name: str) -> list[dict[str, Any]]:
    """Queued and running rows for a stack, in dispatch order, with positions."""
    result = await db.execute(
        select(QueuedOperation)
        .where(
            QueuedOperation.server_id == server_id,
            QueuedOperation.stack_name == stack_name,
            QueuedOperation.status.in_(("queued", "running")),
        )
        .order_by(QueuedOperation.queued_at, QueuedOperation.order, QueuedOperation.id)
    )
    items = []
    position = 0
    for row in result.unique().scalars().all():
        data = queued_to_dict(row)
        if row.status == "queued":
            position += 1
            data["position_in_queue"] = position
            data["estimated_start_time"] = estimated_start_time(position)
        items.append(data)
    return items


def queued_to_dict(row: QueuedOperation) -> dict[str, Any]:
    return {
        "id": row.id,
        "operation_id": row.operation_id,
        "batch_id": row.batch_id,
        "user_name": row.user.username if row.user else "",
        "server_name": row.server.name if row.server else "",
        "stack_name": row.stack_name,
        "command": row.command,
        "options": list(row.options or []),
        "services": list(row.services or []),
        "status": row.status,
        "order": row.order,
        "depends_on": row.depends_on,
        "webhook_name": row.webhook.name if row.webhook else None,
        "queued_at": row.queued_at.isoformat(),
        "priority": row.priority,
        "position_in_queue": 0,
        "estimated_start_time": None,
    }
