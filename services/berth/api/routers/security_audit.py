"""Security audit log queries (admin only).

Endpoints:
    GET /api/v1/admin/security-audit-logs             - paginated, filtered list
    GET /api/v1/admin/security-audit-logs/stats       - aggregate counts
    GET /api/v1/admin/security-audit-logs/{log_id}    - show entry
"""

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from berth.api.dependencies import require_admin
from berth.auth.principals import AuthenticatedUser
from berth.db.session import get_db
from berth.services import security_audit_service
from berth.services.security_audit_service import AuditLogFilters

router = APIRouter(prefix="/admin/security-audit-logs", tags=["security-audit"])

MAX_PAGE_SIZE = 100


@router.get("")
async def list_audit_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1),
    event_type: str | None = Query(None),
    category: str | None = Query(None),
    severity: str | None = Query(None),
    actor_user_id: int | None = Query(None),
    server_id: int | None = Query(None),
    success: bool | None = Query(None),
    days_back: int | None = Query(None, ge=1),
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    page_size = min(page_size, MAX_PAGE_SIZE)
    filters = AuditLogFilters(
        event_type=event_type,
        category=category,
        severity=severity,
        actor_user_id=actor_user_id,
        server_id=server_id,
        success=success,
        days_back=days_back,
    )
    entries, total = await security_audit_service.list_logs(db, filters, page, page_size)
    return JSONResponse(
        content={
            "data": [security_audit_service.log_to_dict(e) for e in entries],
            "pagination": {
                "page": page,
                "page_size": page_size,
                "total": total,
                "total_pages": (total + page_size - 1) // page_size,
            },
        }
    )


@router.get("/stats")
async def audit_log_stats(
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    return JSONResponse(content=await security_audit_service.get_stats(db))


@router.get("/{log_id}")
async def show_audit_log(
    log_id: int,
    user: AuthenticatedUser = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> JSONResponse:
    entry = await security_audit_service.get_log(db, log_id)
    if entry is None:
        raise HTTPException(status_code=404, detail="Audit log entry not found")
    return JSONResponse(content={"data": security_audit_service.log_to_dict(entry)})
