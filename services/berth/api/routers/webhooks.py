"""Webhook endpoints.

Management is session-only. The trigger endpoint takes no Authorization
header: the webhook key travels in the request body and is bcrypt-verified.

Endpoints:
    POST   /api/v1/webhooks                          - create webhook (key shown once)
    GET    /api/v1/webhooks                          - list own webhooks
    GET    /api/v1/webhooks/{webhook_id}             - show webhook
    PUT    /api/v1/webhooks/{webhook_id}             - update (server_ids replaces scopes)
    DELETE /api/v1/webhooks/{webhook_id}             - delete
    POST   /api/v1/webhooks/{webhook_id}/regenerate-key - new key, old key invalid
    POST   /api/v1/webhooks/{webhook_id}/trigger     - queue operation(s) (?wait=true)
    GET    /api/v1/admin/webhooks                    - every webhook (admin)
    GET    /api/v1/admin/webhooks/{webhook_id}       - show any webhook (admin)
    DELETE /api/v1/admin/webhooks/{webhook_id}       - delete any webhook (admin)
"""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from berth.api.dependencies import request_actor, require_admin, require_session
from berth.api.routers.operations import OperationBody, build_requests
from berth.auth.principals import AuthenticatedUser
from berth.db.models import User, Webhook
from berth.db.session import get_db
from berth.errors import NotFoundError
from berth.logging_config import get_logger
from berth.services import security_audit_service, webhook_service

router = APIRouter(tags=["webhooks"])
logger = get_logger(__name__)


class CreateWebhookRequest(BaseModel):
    name: str
    description: str = ""
    stack_pattern: str = "*"
    server_ids: list[int] = Field(default_factory=list)
    expires_at: datetime | None = None


class UpdateWebhookRequest(BaseModel):
    name: str | None = None
    description: str | None = None
    stack_pattern: str | None = None
    is_active: bool | None = None
    expires_at: datetime | None = None
    server_ids: list[int] | None = None


class TriggerRequest(BaseModel):
    api_key: str
    server_id: int
    stack_name: str
    command: str | None = None
    options: list[str] = Field(default_factory=list)
    services: list[str] = Field(default_factory=list)
    operations: list[OperationBody] | None = None


async def _owner_names(db: AsyncSession, webhooks: list[Webhook]) -> dict[int, str]:
    user_ids = {w.user_id for w in webhooks}
    if not user_ids:
        return {}
    result = await db.execute(select(User.id, User.username).where(User.id.in_(user_ids)))
    return dict(result.all())


async def _audit(
    event_type: str, request: Request, user: AuthenticatedUser, webhook: Webhook, **extra: Any
) -> None:
    await security_audit_service.record(
        event_type,
        actor=request_actor(request, user),
        target_type="webhook",
        target_id=webhook.id,
        target_name=webhook.name,
        **extra,
    )


# --- Owner management ---


@router.post("/webhooks")
async def create_webhook(
    body: CreateWebhookRequest,
    request: Request,
    user: AuthenticatedUser = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    try:
        webhook, api_key = await webhook_service.create_webhook(
            db,
            user_id=user.user_id,
            name=body.name,
            stack_pattern=body.stack_pattern,
            description=body.description,
            server_ids=body.server_ids,
            expires_at=body.expires_at,
        )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await _audit(
        "webhook.created",
        request,
        user,
        webhook,
        metadata={"stack_pattern": webhook.stack_pattern, "server_ids": body.server_ids},
    )
    data = webhook_service.webhook_to_dict(webhook, owner_name=user.username)
    # The plaintext key is only included at creation time
    data["api_key"] = api_key
    return JSONResponse(status_code=status.HTTP_201_CREATED, content={"data": data})


@router.get("/webhooks")
async def list_webhooks(
    user: AuthenticatedUser = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    webhooks = await webhook_service.list_user_webhooks(db, user.user_id)
    return JSONResponse(
        content={
            "data": [
                webhook_service.webhook_to_dict(w, owner_name=user.username) for w in webhooks
            ]
        }
    )


@router.get("/webhooks/{webhook_id}")
async def show_webhook(
    webhook_id: int,
    user: AuthenticatedUser = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    webhook = await webhook_service.get_user_webhook(db, user.user_id, webhook_id)
    return JSONResponse(
        content={"data": webhook_service.webhook_to_dict(webhook, owner_name=user.username)}
    )


@router.put("/webhooks/{webhook_id}")
async def update_webhook(
    webhook_id: int,
    body: UpdateWebhookRequest,
    request: Request,
    user: AuthenticatedUser = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    webhook = await webhook_service.get_user_webhook(db, user.user_id, webhook_id)
    changes = body.model_dump(exclude_unset=True)
    try:
        webhook = await webhook_service.update_webhook(db, webhook, changes)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    await _audit("webhook.updated", request, user, webhook, metadata={"fields": sorted(changes)})
    return JSONResponse(
        content={"data": webhook_service.webhook_to_dict(webhook, owner_name=user.username)}
    )


@router.delete("/webhooks/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_webhook(
    webhook_id: int,
    request: Request,
    user: AuthenticatedUser = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> Response:
    webhook = await webhook_service.get_user_webhook(db, user.user_id, webhook_id)
    await webhook_service.delete_webhook(db, webhook)
    await _audit("webhook.deleted", request, user, webhook)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/webhooks/{webhook_id}/regenerate-key")
async def regenerate_webhook_key(
    webhook_id: int,
    request: Request,
    user: AuthenticatedUser = Depends(require_session),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    webhook = await webhook_service.get_user_webhook(db, user.user_id, webhook_id)
    api_key = await webhook_service.regenerate_key(db, webhook)
    await _audit("webhook.api_key_regenerated", request, user, webhook)
    return JSONResponse(content={"data": {"id": webhook.id, "api_key": api_key}})


# --- Trigger ---


@router.post("/webhooks/{webhook_id}/trigger")
async def trigger_webhook(
    webhook_id: int,
    body: TriggerRequest,
    request: Request,
    wait: bool = Query(False),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    """Queue an operation (command) or a dependent chain (operations).

    With wait=true the response is held until the operation (or the last
    batch member) finishes; 408 if it does not finish within the
    operation timeout.
    """
    batch = body.operations is not None
    if batch:
        if not body.operations:
            raise HTTPException(status_code=400, detail="No operations provided")
        requests = build_requests(body.operations)
    elif body.command:
        requests = build_requests(
            [OperationBody(command=body.command, options=body.options, services=body.services)]
        )
    else:
        raise HTTPException(status_code=400, detail="Either command or operations is required")

    actor = request_actor(request)
    result = await webhook_service.trigger(
        db,
        webhook_id=webhook_id,
        api_key=body.api_key,
        server_id=body.server_id,
        stack_name=body.stack_name,
        requests=requests,
        batch=batch,
        ip=actor.ip,
        user_agent=actor.user_agent,
    )

    if not wait:
        return JSONResponse(status_code=status.HTTP_200_OK, content=result)

    operation_id = (
        result["operations"][-1]["operation_id"] if batch else result["operation_id"]
    )
    log = await webhook_service.wait_for_completion(operation_id)
    if log is None:
        raise HTTPException(
            status_code=status.HTTP_408_REQUEST_TIMEOUT,
            detail=f"Operation {operation_id} did not finish in time",
        )
    return JSONResponse(
        content={
            **({"batch_id": result["batch_id"]} if batch else {}),
            "operation_id": log.operation_id,
            "status": log.status,
            "success": bool(log.success),
            "exit_code": log.exit_code,
            "duration_ms": log.duration_ms,
        }
    )


# --- Admin views ---


@router.get("/admin/webhooks")
async def admin_list_webhooks(
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    webhooks = await webhook_service.list_all_webhooks(db)
    names = await _owner_names(db, webhooks)
    return JSONResponse(
        content={
            "data": [
                webhook_service.webhook_to_dict(w, owner_name=names.get(w.user_id, ""))
                for w in webhooks
            ]
        }
    )


@router.get("/admin/webhooks/{webhook_id}")
async def admin_show_webhook(
    webhook_id: int,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    webhook = await webhook_service.get_webhook(db, webhook_id)
    if webhook is None:
        raise NotFoundError("Webhook not found")
    names = await _owner_names(db, [webhook])
    return JSONResponse(
        content={
            "data": webhook_service.webhook_to_dict(
                webhook, owner_name=names.get(webhook.user_id, "")
            )
        }
    )


@router.delete("/admin/webhooks/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
async def admin_delete_webhook(
    webhook_id: int,
    request: Request,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> Response:
    webhook = await webhook_service.get_webhook(db, webhook_id)
    if webhook is None:
        raise NotFoundError("Webhook not found")
    await webhook_service.delete_webhook(db, webhook)
    await _audit("webhook.deleted", request, user, webhook, metadata={"owner_id": webhook.user_id})
    return Response(status_code=status.HTTP_204_NO_CONTENT)
