"""Webhook credentials and the trigger path.

A webhook is a named credential of a user that can enqueue operations on
stacks matching its stack_pattern, on the servers listed in its server
scopes (no scopes means every server the owner can access). Keys are
'wh_' + 64 hex characters, stored as bcrypt hashes and shown once.

Trigger steps:
1. bcrypt-verify the key (off the event loop)
2. reject inactive or expired webhooks
3. match the stack against the webhook pattern
4. check the server against the webhook server scopes
5. effective_allow as a webhook principal (stacks.manage)
6. confirm the stack exists on the agent
7. bump trigger counters in the background
8. enqueue the operation (or batch)
"""

import asyncio
import json
import secrets
from collections.abc import AsyncIterator
from datetime import datetime
from typing import Any

import bcrypt
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from berth.auth.patterns import matches
from berth.auth.permissions import STACKS_MANAGE
from berth.auth.principals import WebhookPrincipal
from berth.config import settings
from berth.db.models import OperationLog, Server, User, Webhook, WebhookServerScope, utc_now
from berth.db.session import get_db_session
from berth.errors import BerthError, NotFoundError, OperationForbiddenError
from berth.logging_config import get_logger
from berth.services import (
    agent_client,
    operation_log_service,
    queue_service,
    rbac_service,
    security_audit_service,
    server_service,
)
from berth.services.operation_service import OperationRequest
from berth.services.security_audit_service import Actor

logger = get_logger(__name__)

WEBHOOK_KEY_PREFIX = "wh_"

# Keeps background counter updates referenced until they finish
_background_tasks: set[asyncio.Task] = set()


class WebhookAuthError(BerthError):
    """Unknown webhook, wrong key, or an inactive/expired webhook."""


# --- Keys ---


def generate_webhook_key() -> str:
    return WEBHOOK_KEY_PREFIX + secrets.token_hex(32)


def hash_webhook_key(api_key: str) -> str:
    return bcrypt.hashpw(api_key.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_webhook_key(api_key: str, key_hash: str) -> bool:
    try:
        return bcrypt.checkpw(api_key.encode("utf-8"), key_hash.encode("utf-8"))
    except ValueError:
        return False


async def verify_webhook_key_async(api_key: str, key_hash: str) -> bool:
    """bcrypt is deliberately slow, so verification runs in a worker thread."""
    return await asyncio.to_thread(verify_webhook_key, api_key, key_hash)


# --- CRUD ---


async def _check_servers_exist(db: AsyncSession, server_ids: list[int]) -> list[int]:
    unique_ids = sorted(set(server_ids))
    if not unique_ids:
        return []
    result = await db.execute(select(Server.id).where(Server.id.in_(unique_ids)))
    found = set(result.scalars().all())
    missing = [sid for sid in unique_ids if sid not in found]
    if missing:
        raise ValueError(f"Unknown server ids: {missing}")
    return unique_ids


async def create_webhook(
    db: AsyncSession,
    *,
    user_id: int,
    name: str,
    stack_pattern: str,
    description: str = "",
    server_ids: list[int] | None = None,
    expires_at: datetime | None = None,
) -> tuple[Webhook, str]:
    """Create a webhook with its server scopes. Returns (webhook, plaintext key)."""
    if not name.strip():
        raise ValueError("Webhook name is required")
    if not stack_pattern.strip():
        raise ValueError("Stack pattern is required")
    if expires_at is not None and expires_at <= utc_now():
        raise ValueError("Expiry must be in the future")

    scoped = await _check_servers_exist(db, server_ids or [])
    api_key = generate_webhook_key()
    key_hash = await asyncio.to_thread(hash_webhook_key, api_key)

    webhook = Webhook(
        user_id=user_id,
        name=name.strip(),
        description=description,
        stack_pattern=stack_pattern.strip(),
        api_key_hash=key_hash,
        is_active=True,
        expires_at=expires_at,
        server_scopes=[WebhookServerScope(server_id=sid) for sid in scoped],
    )
    db.add(webhook)
    await db.flush()

    logger.info("Webhook created", webhook_id=webhook.id, user_id=user_id, name=webhook.name)
    return webhook, api_key


async def list_user_webhooks(db: AsyncSession, user_id: int) -> list[Webhook]:
    result = await db.execute(
        select(Webhook).where(Webhook.user_id == user_id).order_by(Webhook.created_at.desc())
    )
    return list(result.scalars().all())


async def list_all_webhooks(db: AsyncSession) -> list[Webhook]:
    result = await db.execute(select(Webhook).order_by(Webhook.created_at.desc()))
    return list(result.scalars().all())


async def get_webhook(db: AsyncSession, webhook_id: int) -> Webhook | None:
    return await db.get(Webhook, webhook_id)


async def get_user_webhook(db: AsyncSession, user_id: int, webhook_id: int) -> Webhook:
    webhook = await db.get(Webhook, webhook_id)
    if webhook is None or webhook.user_id != user_id:
        raise NotFoundError("Webhook not found")
    return webhook


async def update_webhook(db: AsyncSession, webhook: Webhook, changes: dict[str, Any]) -> Webhook:
    """Apply a partial update. server_ids, when given, replaces the server scopes."""
    if "name" in changes and not (changes["name"] or "").strip():
        raise ValueError("Webhook name is required")
    if "stack_pattern" in changes and not (changes["stack_pattern"] or "").strip():
        raise ValueError("Stack pattern is required")

    for attr in ("name", "description", "stack_pattern", "is_active", "expires_at"):
        if attr in changes and changes[attr] is not None:
            setattr(webhook, attr, changes[attr])

    if changes.get("server_ids") is not None:
        scoped = await _check_servers_exist(db, changes["server_ids"])
        # Old rows must be gone before re-inserting the same (webhook, server) pairs
        webhook.server_scopes.clear()
        await db.flush()
        webhook.server_scopes.extend(WebhookServerScope(server_id=sid) for sid in scoped)

    await db.flush()
    logger.info("Webhook updated", webhook_id=webhook.id, fields=sorted(changes))
    return webhook


async def delete_webhook(db: AsyncSession, webhook: Webhook) -> None:
    await db.delete(webhook)
    await db.flush()
    logger.info("Webhook deleted", webhook_id=webhook.id, user_id=webhook.user_id)


async def regenerate_key(db: AsyncSession, webhook: Webhook) -> str:
    """Replace the key hash. The previous plaintext stops working immediately."""
    api_key = generate_webhook_key()
    webhook.api_key_hash = await asyncio.to_thread(hash_webhook_key, api_key)
    await db.flush()
    logger.info("Webhook key regenerated", webhook_id=webhook.id)
    return api_key


def principal_for(webhook: Webhook) -> WebhookPrincipal:
    return WebhookPrincipal(
        user_id=webhook.user_id,
        webhook_id=webhook.id,
        stack_pattern=webhook.stack_pattern,
        server_ids=frozenset(scope.server_id for scope in webhook.server_scopes),
    )


def webhook_to_dict(webhook: Webhook, owner_name: str | None = None) -> dict[str, Any]:
    data = {
        "id": webhook.id,
        "user_id": webhook.user_id,
        "name": webhook.name,
        "description": webhook.description,
        "stack_pattern": webhook.stack_pattern,
        "server_scopes": sorted(scope.server_id for scope in webhook.server_scopes),
        "is_active": webhook.is_active,
        "last_triggered": webhook.last_triggered.isoformat() if webhook.last_triggered else None,
        "trigger_count": webhook.trigger_count,
        "expires_at": webhook.expires_at.isoformat() if webhook.expires_at else None,
        "created_at": webhook.created_at.isoformat() if webhook.created_at else None,
        "updated_at": webhook.updated_at.isoformat() if webhook.updated_at else None,
    }
    if owner_name is not None:
        data["user_name"] = owner_name
    return data


# --- Trigger ---


async def authenticate(db: AsyncSession, webhook_id: int, api_key: str) -> Webhook:
    """Load a webhook and verify its key, activity and expiry."""
    webhook = await db.get(Webhook, webhook_id)
    if webhook is None:
        raise WebhookAuthError("Invalid webhook or API key")
    if not await verify_webhook_key_async(api_key, webhook.api_key_hash):
        raise WebhookAuthError("Invalid webhook or API key")
    if not webhook.is_active:
        raise WebhookAuthError("Webhook is inactive")
    if webhook.expires_at is not None and webhook.expires_at <= utc_now():
        raise WebhookAuthError("Webhook has expired")
    return webhook


async def record_trigger(webhook_id: int) -> None:
    """Bump last_triggered and trigger_count. Failures are logged only."""
    try:
        async with get_db_session() as db:
            await db.execute(
                update(Webhook)
                .where(Webhook.id == webhook_id)
                .values(last_triggered=utc_now(), trigger_count=Webhook.trigger_count + 1)
            )
    except Exception as e:
        logger.error("Failed to update webhook usage", webhook_id=webhook_id, error=str(e))


def _schedule_usage_update(webhook_id: int) -> None:
    task = asyncio.create_task(record_trigger(webhook_id), name=f"webhook-usage:{webhook_id}")
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


async def trigger(
    db: AsyncSession,
    *,
    webhook_id: int,
    api_key: str,
    server_id: int,
    stack_name: str,
    requests: list[OperationRequest],
    batch: bool = False,
    ip: str = "",
    user_agent: str = "",
) -> dict[str, Any]:
    """Run the trigger checks and enqueue. Returns the intake response."""
    try:
        webhook = await authenticate(db, webhook_id, api_key)
    except WebhookAuthError as e:
        await security_audit_service.record(
            "webhook.authorization_failed",
            actor=Actor(ip=ip, user_agent=user_agent),
            success=False,
            target_type="webhook",
            target_id=webhook_id,
            failure_reason=str(e),
        )
        raise

    owner = webhook.user_id
    owner_name = await _owner_name(db, owner)
    actor = Actor(user_id=owner, username=owner_name, ip=ip, user_agent=user_agent)
    audit_meta = {
        "commands": [r.command for r in requests],
        "stack_name": stack_name,
        "server_id": server_id,
    }

    async def fail(reason: str) -> None:
        await security_audit_service.record(
            "webhook.trigger_failed",
            actor=actor,
            success=False,
            target_type="webhook",
            target_id=webhook.id,
            target_name=webhook.name,
            failure_reason=reason,
            metadata=audit_meta,
            server_id=server_id,
            stack_name=stack_name,
        )

    if not matches(stack_name, webhook.stack_pattern):
        reason = f"Stack name '{stack_name}' does not match webhook pattern '{webhook.stack_pattern}'"
        await fail(reason)
        raise OperationForbiddenError(reason, permission=STACKS_MANAGE)

    principal = principal_for(webhook)
    if not rbac_service.credential_allows_server(principal, server_id):
        await fail("server not in webhook scope")
        raise OperationForbiddenError("Server not found or access denied")

    try:
        server = await server_service.get_visible_server(db, principal, server_id)
    except NotFoundError:
        await fail("server not found or access denied")
        raise OperationForbiddenError("Server not found or access denied") from None

    if not await rbac_service.effective_allow(db, principal, server_id, stack_name, STACKS_MANAGE):
        await fail("insufficient permissions")
        raise OperationForbiddenError(
            "Insufficient permissions for this stack", permission=STACKS_MANAGE
        )

    try:
        await agent_client.get_stack(server, stack_name)
    except agent_client.AgentError as e:
        if e.status_code == 404:
            await fail("stack not found on server")
            raise NotFoundError("Stack not found on server") from None
        raise

    _schedule_usage_update(webhook.id)

    try:
        if batch:
            response = await queue_service.enqueue_batch(
                db, principal, actor, server_id, stack_name, requests, webhook_id=webhook.id
            )
        else:
            response = await queue_service.enqueue_one(
                db, principal, actor, server_id, stack_name, requests[0], webhook_id=webhook.id
            )
    except Exception as e:
        await fail(str(e))
        raise

    await security_audit_service.record(
        "webhook.triggered",
        actor=actor,
        target_type="webhook",
        target_id=webhook.id,
        target_name=webhook.name,
        metadata={
            **audit_meta,
            "operation_id": response.get("operation_id"),
            "batch_id": response.get("batch_id"),
        },
        server_id=server_id,
        stack_name=stack_name,
    )
    logger.info(
        "Webhook triggered",
        webhook_id=webhook.id,
        server_id=server_id,
        stack_name=stack_name,
        operation_id=response.get("operation_id"),
        batch_id=response.get("batch_id"),
    )
    return response


async def _owner_name(db: AsyncSession, user_id: int) -> str:
    user = await db.get(User, user_id)
    return user.username if user is not None else ""


async def wait_for_completion(
    operation_id: str, timeout_seconds: float | None = None
) -> OperationLog | None:
    """Poll the operation log until the header is terminal. None on timeout."""
    timeout_seconds = timeout_seconds or settings.queue.operation_timeout_seconds
    try:
        async with asyncio.timeout(timeout_seconds):
            while True:
                await asyncio.sleep(settings.webhooks.wait_poll_interval_seconds)
                async with get_db_session() as db:
                    log = await operation_log_service.get_by_operation_id(db, operation_id)
                if log is not None and operation_log_service.is_terminal(log.status):
                    return log
    except TimeoutError:
        logger.info("Webhook wait timed out", operation_id=operation_id)
        return None


# --- Log streaming ---


async def open_operation_stream(operation_id: str, api_key: str) -> OperationLog:
    """Resolve a webhook-created operation for streaming.

    Waits for the header to appear (the worker may not have started it
    yet), then checks the key against the webhook that created it.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.webhooks.stream_lookup_timeout_seconds
    while True:
        async with get_db_session() as db:
            log = await operation_log_service.get_by_operation_id(db, operation_id)
            webhook = await db.get(Webhook, log.webhook_id) if log and log.webhook_id else None
        if log is not None:
            break
        if loop.time() >= deadline:
            raise NotFoundError("Operation not found")
        await asyncio.sleep(settings.webhooks.stream_poll_interval_seconds)

    if log.webhook_id is None:
        raise OperationForbiddenError("This operation was not triggered by a webhook")
    if webhook is None or not await verify_webhook_key_async(api_key, webhook.api_key_hash):
        raise WebhookAuthError("Invalid API key")
    return log


def format_sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


async def operation_events(log_id: int) -> AsyncIterator[str]:
    """Persisted messages as SSE frames, ending with a complete frame once terminal.

    Stored complete messages are skipped; the closing frame is built from
    the header so it is always the last one sent.
    """
    last_sequence = 0
    loop = asyncio.get_running_loop()
    deadline = loop.time() + settings.webhooks.stream_max_duration_seconds

    while loop.time() < deadline:
        async with get_db_session() as db:
            # Header first: a header read as terminal guarantees the messages
            # read after it include the final lines.
            header = await db.get(OperationLog, log_id, populate_existing=True)
            messages = await operation_log_service.list_messages(db, log_id, last_sequence)

        for message in messages:
            last_sequence = message.sequence_number
            if message.message_type == "complete":
                continue
            yield format_sse(
                {
                    "type": message.message_type,
                    "data": message.message_data,
                    "timestamp": message.timestamp.isoformat(),
                }
            )

        if header is None:
            return
        if operation_log_service.is_terminal(header.status):
            yield format_sse(
                {
                    "type": "complete",
                    "success": bool(header.success),
                    "exitCode": (
                        header.exit_code
                        if header.exit_code is not None
                        else operation_log_service.UNKNOWN_EXIT_CODE
                    ),
                    "timestamp": utc_now().isoformat(),
                }
            )
            return

        await asyncio.sleep(settings.webhooks.stream_poll_interval_seconds)
