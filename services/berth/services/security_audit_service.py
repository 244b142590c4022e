"""Security audit trail.

One append-only row per authentication event, authorization decision or
sensitive mutation. Writes happen in their own short-lived session so that
an audit failure never rolls back (or blocks) the request that caused it;
failures are logged and swallowed.
"""

from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from berth.db.models import SecurityAuditLog, utc_now
from berth.db.session import get_db_session
from berth.logging_config import get_logger

logger = get_logger(__name__)

# --- Event catalogue: event_type -> (category, severity) ---

EVENT_TYPES: dict[str, tuple[str, str]] = {
    "auth.login.success": ("auth", "low"),
    "auth.login.failure": ("auth", "high"),
    "auth.logout": ("auth", "low"),
    "auth.token.refreshed": ("auth", "low"),
    "auth.sessions.revoked_all": ("auth", "medium"),
    "user.role.assigned": ("user_mgmt", "high"),
    "rbac.role.created": ("rbac", "high"),
    "rbac.role.updated": ("rbac", "high"),
    "rbac.role.deleted": ("rbac", "critical"),
    "rbac.permission.added": ("rbac", "high"),
    "rbac.permission.removed": ("rbac", "high"),
    "authorization_denied": ("rbac", "medium"),
    "server.created": ("server", "high"),
    "server.updated": ("server", "high"),
    "server.deleted": ("server", "critical"),
    "server.connection.test_success": ("server", "low"),
    "server.connection.test_failure": ("server", "medium"),
    "api.auth.failed": ("api", "high"),
    "api_key.created": ("api_key", "medium"),
    "api_key.revoked": ("api_key", "medium"),
    "api_key.scope.added": ("api_key", "medium"),
    "api_key.scope.removed": ("api_key", "medium"),
    "stack.operation.queued": ("stack", "low"),
    "webhook.created": ("webhook", "medium"),
    "webhook.updated": ("webhook", "medium"),
    "webhook.deleted": ("webhook", "high"),
    "webhook.api_key_regenerated": ("webhook", "high"),
    "webhook.triggered": ("webhook", "low"),
    "webhook.trigger_failed": ("webhook", "medium"),
    "webhook.authorization_failed": ("webhook", "high"),
}


def event_category(event_type: str) -> str:
    return EVENT_TYPES.get(event_type, ("unknown", "medium"))[0]


def event_severity(event_type: str) -> str:
    return EVENT_TYPES.get(event_type, ("unknown", "medium"))[1]


@dataclass
class Actor:
    """Who performed the audited action, and from where."""

    user_id: int | None = None
    username: str = ""
    ip: str = ""
    user_agent: str = ""


async def record(
    event_type: str,
    *,
    actor: Actor,
    success: bool = True,
    target_type: str | None = None,
    target_id: int | None = None,
    target_name: str = "",
    failure_reason: str = "",
    metadata: dict[str, Any] | None = None,
    server_id: int | None = None,
    stack_name: str = "",
    session_id: str = "",
) -> None:
    """Append an audit row. Never raises."""
    entry = SecurityAuditLog(
        event_type=event_type,
        event_category=event_category(event_type),
        severity=event_severity(event_type),
        actor_user_id=actor.user_id,
        actor_username=actor.username,
        actor_ip=actor.ip,
        actor_user_agent=actor.user_agent,
        target_type=target_type,
        target_id=target_id,
        target_name=target_name,
        success=success,
        failure_reason=failure_reason,
        metadata_json=metadata or {},
        server_id=server_id,
        stack_name=stack_name,
        session_id=session_id,
    )
    try:
        async with get_db_session() as db:
            db.add(entry)
    except Exception as e:
        logger.error("Failed to write security audit log", event_type=event_type, error=str(e))
        return

    logger.info(
        "Security event",
        event_type=event_type,
        actor_user_id=actor.user_id,
        success=success,
        target_type=target_type,
        target_name=target_name or None,
    )


async def record_authorization_denied(
    actor: Actor,
    server_id: int,
    stack_name: str,
    permission: str,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Audit a denied stack permission check."""
    await record(
        "authorization_denied",
        actor=actor,
        success=False,
        target_type="stack",
        target_name=stack_name,
        failure_reason="permission denied",
        metadata={
            **(metadata or {}),
            "resource": f"server:{server_id}/stack:{stack_name}",
            "permission": permission,
        },
        server_id=server_id,
        stack_name=stack_name,
    )


# --- Admin queries ---


@dataclass
class AuditLogFilters:
    event_type: str | None = None
    category: str | None = None
    severity: str | None = None
    actor_user_id: int | None = None
    server_id: int | None = None
    success: bool | None = None
    days_back: int | None = None


def _apply_filters(stmt, filters: AuditLogFilters):
    if filters.event_type:
        stmt = stmt.where(SecurityAuditLog.event_type == filters.event_type)
    if filters.category:
        stmt = stmt.where(SecurityAuditLog.event_category == filters.category)
    if filters.severity:
        stmt = stmt.where(SecurityAuditLog.severity == filters.severity)
    if filters.actor_user_id is not None:
        stmt = stmt.where(SecurityAuditLog.actor_user_id == filters.actor_user_id)
    if filters.server_id is not None:
        stmt = stmt.where(SecurityAuditLog.server_id == filters.server_id)
    if filters.success is not None:
        stmt = stmt.where(SecurityAuditLog.success.is_(filters.success))
    if filters.days_back:
        stmt = stmt.where(
            SecurityAuditLog.created_at >= utc_now() - timedelta(days=filters.days_back)
        )
    return stmt


async def list_logs(
    db: AsyncSession, filters: AuditLogFilters, page: int, page_size: int
) -> tuple[list[SecurityAuditLog], int]:
    """Newest first. Returns (rows, total)."""
    total = (
        await db.execute(_apply_filters(select(func.count(SecurityAuditLog.id)), filters))
    ).scalar_one()
    result = await db.execute(
        _apply_filters(select(SecurityAuditLog), filters)
        .order_by(SecurityAuditLog.created_at.desc(), SecurityAuditLog.id.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return list(result.scalars().all()), total


async def get_log(db: AsyncSession, log_id: int) -> SecurityAuditLog | None:
    return await db.get(SecurityAuditLog, log_id)


async def get_stats(db: AsyncSession) -> dict[str, Any]:
    """Totals by category and severity, failures, recent counts and top event types."""
    now = utc_now()

    async def _count(*conditions) -> int:
        stmt = select(func.count(SecurityAuditLog.id))
        if conditions:
            stmt = stmt.where(*conditions)
        return (await db.execute(stmt)).scalar_one()

    by_category = await db.execute(
        select(SecurityAuditLog.event_category, func.count(SecurityAuditLog.id)).group_by(
            SecurityAuditLog.event_category
        )
    )
    by_severity = await db.execute(
        select(SecurityAuditLog.severity, func.count(SecurityAuditLog.id)).group_by(
            SecurityAuditLog.severity
        )
    )
    count_col = func.count(SecurityAuditLog.id)
    top = await db.execute(
        select(SecurityAuditLog.event_type, count_col)
        .group_by(SecurityAuditLog.event_type)
        .order_by(count_col.desc())
        .limit(10)
    )

    return {
        "total_events": await _count(),
        "events_by_category": {k: v for k, v in by_category.all()},
        "events_by_severity": {k: v for k, v in by_severity.all()},
        "failed_events": await _count(SecurityAuditLog.success.is_(False)),
        "last_24_hours": await _count(SecurityAuditLog.created_at >= now - timedelta(hours=24)),
        "last_7_days": await _count(SecurityAuditLog.created_at >= now - timedelta(days=7)),
        "top_event_types": [{"event_type": k, "count": v} for k, v in top.all()],
    }


def log_to_dict(entry: SecurityAuditLog) -> dict[str, Any]:
    return {
        "id": entry.id,
        "event_type": entry.event_type,
        "event_category": entry.event_category,
        "severity": entry.severity,
        "actor_user_id": entry.actor_user_id,
        "actor_username": entry.actor_username,
        "actor_ip": entry.actor_ip,
        "actor_user_agent": entry.actor_user_agent,
        "target_type": entry.target_type,
        "target_id": entry.target_id,
        "target_name": entry.target_name,
        "success": entry.success,
        "failure_reason": entry.failure_reason,
        "metadata": entry.metadata_json,
        "server_id": entry.server_id,
        "stack_name": entry.stack_name,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }
