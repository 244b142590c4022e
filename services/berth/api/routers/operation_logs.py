"""Operation log read endpoints.

Admins see every log; everyone else only ever sees their own.

Endpoints:
    GET /api/v1/operation-logs                   - paginated headers
    GET /api/v1/operation-logs/stats             - totals
    GET /api/v1/operation-logs/{log_id}          - header + messages
    GET /api/v1/operation-logs/by-operation/{operation_id} - same, by operation id
    GET /api/v1/running-operations               - live, non-stale operations
"""

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from berth.api.dependencies import get_current_user
from berth.auth.principals import AuthenticatedUser
from berth.db.session import get_db
from berth.logging_config import get_logger
from berth.services import operation_log_service
from berth.services.operation_log_service import OperationLogFilters

router = APIRouter(tags=["operation-logs"])
logger = get_logger(__name__)

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100


def _owner_filter(user: AuthenticatedUser) -> int | None:
    return None if user.is_admin else user.user_id


def _details_json(details) -> dict:  # type: ignore[no-untyped-def]
    log, messages = details
    data = operation_log_service.log_to_dict(log)
    data["messages"] = [operation_log_service.message_to_dict(m) for m in messages]
    data["message_count"] = len(messages)
    return data


@router.get("/operation-logs")
async def list_operation_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1),
    search: str | None = Query(None),
    server_id: int | None = Query(None),
    stack_name: str | None = Query(None),
    command: str | None = Query(None),
    status_filter: str | None = Query(None, alias="status"),
    days_back: int | None = Query(None, ge=1),
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    if status_filter and status_filter not in operation_log_service.STATUS_FILTERS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"status must be one of {sorted(operation_log_service.STATUS_FILTERS)}",
        )
    page_size = min(page_size, MAX_PAGE_SIZE)

    filters = OperationLogFilters(
        user_id=_owner_filter(user),
        server_id=server_id,
        stack_name=stack_name,
        command=command,
        status=status_filter,
        days_back=days_back,
        search=search,
    )
    rows, total = await operation_log_service.list_logs(db, filters, page, page_size)
    return JSONResponse(
        content={
            "data": rows,
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total": total,
                "total_pages": (total + page_size - 1) // page_size,
            },
        }
    )


@router.get("/operation-logs/stats")
async def operation_log_stats(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    stats = await operation_log_service.get_stats(db, user_id=_owner_filter(user))
    return JSONResponse(content=stats)


@router.get("/operation-logs/by-operation/{operation_id}")
async def show_operation_log_by_operation(
    operation_id: str,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    details = await operation_log_service.get_details(
        db, operation_id=operation_id, user_id=_owner_filter(user)
    )
    if details is None:
        raise HTTPException(status_code=404, detail="Operation log not found")
    return JSONResponse(content={"data": _details_json(details)})


@router.get("/operation-logs/{log_id}")
async def show_operation_log(
    log_id: int,
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    details = await operation_log_service.get_details(
        db, log_id=log_id, user_id=_owner_filter(user)
    )
    if details is None:
        raise HTTPException(status_code=404, detail="Operation log not found")
    return JSONResponse(content={"data": _details_json(details)})


@router.get("/running-operations")
async def list_running_operations(
    user: AuthenticatedUser = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    logs = await operation_log_service.running_operations(db, user_id=_owner_filter(user))
    return JSONResponse(content={"data": [operation_log_service.log_to_dict(log) for log in logs]})
