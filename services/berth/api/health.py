"""
Liveness and readiness probes.

/ready fails when the database, Redis or the stack worker pool is
unavailable. Encryption is reported but never fails readiness: without a
key only agent access stops working.
"""

from fastapi import APIRouter, Response, status

from berth.db.session import get_db_health
from berth.logging_config import get_logger
from berth.redis.client import get_redis_health
from berth.services.encryption_service import is_encryption_available
from berth.services.queue_worker import get_worker_pool

router = APIRouter(tags=["health"])
logger = get_logger(__name__)


def _worker_pool_state() -> tuple[str, int]:
    try:
        pool = get_worker_pool()
    except RuntimeError:
        return "unhealthy", 0
    return "healthy", len(pool.workers)


@router.get("/health", status_code=status.HTTP_200_OK)
async def health() -> dict[str, str]:
    return {"status": "healthy"}


@router.get("/ready", status_code=status.HTTP_200_OK)
async def ready(response: Response) -> dict:
    checks = {
        "database": "healthy" if await get_db_health() else "unhealthy",
        "redis": "healthy" if await get_redis_health() else "unhealthy",
    }
    checks["worker_pool"], active_workers = _worker_pool_state()

    body = {
        "checks": checks,
        "encryption": "enabled" if is_encryption_available() else "disabled",
        "active_stack_workers": active_workers,
    }
    if any(v != "healthy" for v in checks.values()):
        logger.warning("Readiness check failed", checks=checks)
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return {"status": "not ready", **body}
    return {"status": "ready", **body}
