"""
FastAPI application factory for the Berth API server.

Uses lifespan handler for startup/shutdown with async resource management.
"""

import asyncio
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from berth.config import settings
from berth.db.session import close_db, init_db
from berth.errors import ConflictError, NotFoundError, OperationForbiddenError
from berth.logging_config import configure_logging, get_logger
from berth.redis.client import close_redis, init_redis
from berth.services.agent_client import AgentError, AgentProtocolError, AgentUnavailableError
from berth.services.encryption_service import init_encryption
from berth.services.operation_file_logger import (
    close_operation_file_logger,
    init_operation_file_logger,
)
from berth.services.queue_worker import close_worker_pool, init_worker_pool
from berth.services.webhook_service import WebhookAuthError

from .health import router as health_router

logger = get_logger(__name__)

VERSION = "0.1.0"


async def _replay_queue() -> None:
    """Hand queued rows left over from a previous process to fresh workers."""
    from berth.services.queue_worker import get_worker_pool

    try:
        await get_worker_pool().replay()
    except Exception as e:
        logger.error("Queue replay failed", error=str(e), exc_info=e)


async def _stop_task(task: asyncio.Task | None, name: str) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    logger.info("Background task stopped", task=name)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Application lifespan handler for startup and shutdown."""
    # Startup
    configure_logging(json_logs=settings.json_logs, log_level=settings.log_level)
    logger.info("Starting Berth API server", version=VERSION)

    await init_db()
    logger.info("Database initialized")

    await init_redis()
    logger.info("Redis initialized")

    init_encryption()
    logger.info("Encryption initialized")

    init_operation_file_logger()

    init_worker_pool()
    replay_task = asyncio.create_task(_replay_queue())

    from berth.services.stale_reaper import run_reaper

    reaper_task = asyncio.create_task(run_reaper())
    logger.info("Stale reaper started")

    yield

    # Shutdown
    logger.info("Shutting down Berth API server")
    await _stop_task(reaper_task, "Stale reaper")
    await _stop_task(replay_task, "Queue replay")
    await close_worker_pool()
    close_operation_file_logger()
    await close_redis()
    await close_db()


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def register_exception_handlers(app: FastAPI) -> None:
    """Translate service-layer exceptions into status codes."""

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        return _error(status.HTTP_404_NOT_FOUND, str(exc))

    @app.exception_handler(OperationForbiddenError)
    async def forbidden_handler(request: Request, exc: OperationForbiddenError) -> JSONResponse:
        return _error(status.HTTP_403_FORBIDDEN, str(exc))

    @app.exception_handler(ConflictError)
    async def conflict_handler(request: Request, exc: ConflictError) -> JSONResponse:
        return _error(status.HTTP_409_CONFLICT, str(exc))

    @app.exception_handler(WebhookAuthError)
    async def webhook_auth_handler(request: Request, exc: WebhookAuthError) -> JSONResponse:
        return _error(status.HTTP_401_UNAUTHORIZED, str(exc))

    @app.exception_handler(AgentUnavailableError)
    async def agent_unavailable_handler(
        request: Request, exc: AgentUnavailableError
    ) -> JSONResponse:
        logger.warning("Agent unavailable", path=str(request.url.path), error=str(exc))
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Agent unavailable")

    @app.exception_handler(AgentError)
    async def agent_error_handler(request: Request, exc: AgentError) -> JSONResponse:
        logger.warning(
            "Agent returned an error",
            path=str(request.url.path),
            agent_status=exc.status_code,
            error=exc.message,
        )
        return _error(status.HTTP_502_BAD_GATEWAY, exc.message)

    @app.exception_handler(AgentProtocolError)
    async def agent_protocol_handler(request: Request, exc: AgentProtocolError) -> JSONResponse:
        logger.warning("Unexpected agent response", path=str(request.url.path), error=str(exc))
        return _error(status.HTTP_502_BAD_GATEWAY, "Unexpected response from agent")

    # Global exception handler
    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled errors."""
        logger.error("Unhandled exception", exc_info=exc, path=str(request.url.path))
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def create_application() -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Berth API",
        description="Berth - control plane for compose stacks on remote agents",
        version=VERSION,
        lifespan=lifespan,
        docs_url=f"{settings.api_prefix}/docs",
        redoc_url=f"{settings.api_prefix}/redoc",
        openapi_url=f"{settings.api_prefix}/openapi.json",
    )

    # CORS middleware
    if settings.cors.allow_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors.allow_origins,
            allow_credentials=settings.cors.allow_credentials,
            allow_methods=settings.cors.allow_methods,
            allow_headers=settings.cors.allow_headers,
        )

    # Request ID middleware
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):  # type: ignore[no-untyped-def]
        """Ensure every request has a request ID for logging correlation."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        structlog.contextvars.bind_contextvars(request_id=request_id)

        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        structlog.contextvars.unbind_contextvars("request_id")

        return response

    register_exception_handlers(app)

    # Health endpoints (no prefix)
    app.include_router(health_router)

    from berth.api.routers.auth import router as auth_router

    app.include_router(auth_router, prefix=settings.api_prefix)

    # Servers and stacks
    from berth.api.routers.servers import router as servers_router

    app.include_router(servers_router, prefix=settings.api_prefix)

    # Queued operations and webhook log streaming
    from berth.api.routers.operations import router as operations_router

    app.include_router(operations_router, prefix=settings.api_prefix)

    from berth.api.routers.operation_logs import router as operation_logs_router

    app.include_router(operation_logs_router, prefix=settings.api_prefix)

    from berth.api.routers.api_keys import router as api_keys_router

    app.include_router(api_keys_router, prefix=settings.api_prefix)

    from berth.api.routers.webhooks import router as webhooks_router

    app.include_router(webhooks_router, prefix=settings.api_prefix)

    # Admin surface
    from berth.api.routers.admin_servers import router as admin_servers_router

    app.include_router(admin_servers_router, prefix=settings.api_prefix)

    from berth.api.routers.roles import router as roles_router

    app.include_router(roles_router, prefix=settings.api_prefix)

    from berth.api.routers.security_audit import router as security_audit_router

    app.include_router(security_audit_router, prefix=settings.api_prefix)

    # WebSocket operation streams
    from berth.api.routers.ws import router as ws_router

    app.include_router(ws_router)

    return app


# Application instance
app = create_application()
