"""
FastAPI application entry point.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dialler import __version__
from dialler.calls.router import agents_router, callbacks_router, calls_router, queue_router
from dialler.calls.service import CallService
from dialler.calls.user_context import HttpUserContextProvider
from dialler.config import get_settings
from dialler.shared.database import get_database_manager
from dialler.shared.exceptions import (
    AppError,
    ConflictError,
    DependencyError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from dialler.shared.logging import get_logger, setup_logging
from dialler.shared.middleware import CorrelationIdMiddleware
from dialler.telephony.webhooks.router import router as telephony_webhooks_router

logger = get_logger(__name__)

_ERROR_STATUS: list[tuple[type[AppError], int, str]] = [
    (ValidationError, status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR"),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN, "FORBIDDEN"),
    (NotFoundError, status.HTTP_404_NOT_FOUND, "NOT_FOUND"),
    (ConflictError, status.HTTP_409_CONFLICT, "CONFLICT"),
    (DependencyError, status.HTTP_503_SERVICE_UNAVAILABLE, "DEPENDENCY_UNAVAILABLE"),
]


async def _stale_sweep_supervisor() -> None:
    """Periodically fail calls the telephony provider never picked up."""
    settings = get_settings()
    db_manager = get_database_manager()
    provider = HttpUserContextProvider.from_settings(settings)

    logger.info(
        "Stale call sweeper starting",
        extra={
            "interval_seconds": settings.stale_sweep_interval_seconds,
            "timeout_minutes": settings.stale_call_timeout_minutes,
        },
    )

    while True:
        try:
            async with db_manager.session() as session:
                service = CallService(session=session, user_context_provider=provider, settings=settings)
                await service.expire_stale_sessions()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Stale call sweep failed")

        await asyncio.sleep(settings.stale_sweep_interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager."""
    setup_logging()
    settings = get_settings()

    logger.info("Application starting", extra={"env": settings.app_env})

    sweeper_task: asyncio.Task[None] | None = None
    if settings.stale_sweep_enabled:
        sweeper_task = asyncio.create_task(_stale_sweep_supervisor())
        app.state.sweeper_task = sweeper_task
        logger.info("Stale call sweeper enabled; background task created")

    yield

    logger.info("Shutting down application")

    if sweeper_task is not None:
        sweeper_task.cancel()
        try:
            await sweeper_task
        except asyncio.CancelledError:
            pass
        logger.info("Stale call sweeper stopped")

    await get_database_manager().close()
    logger.info("Application shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Dialler API",
        description="Call centre dialler: lead scoring, call queue and call outcomes",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    # Map domain exceptions to HTTP responses
    @app.exception_handler(AppError)
    async def _app_error(request: Request, exc: AppError) -> JSONResponse:
        for error_cls, status_code, code in _ERROR_STATUS:
            if isinstance(exc, error_cls):
                break
        else:
            status_code, code = status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR"

        if status_code >= 500:
            logger.error(
                "Request failed",
                extra={"path": request.url.path, "error_code": code, "error": exc.message},
            )
        return JSONResponse(
            status_code=status_code,
            content={
                "detail": {
                    "code": code,
                    "message": exc.message,
                    **({"details": exc.details} if exc.details else {}),
                }
            },
        )

    # Request validation (FastAPI/Pydantic) -> consistent 422 payload
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"])
            errors.append(
                {
                    "field": field,
                    "message": error["msg"],
                    "type": error["type"],
                }
            )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "detail": {
                    "code": "VALIDATION_ERROR",
                    "message": "Request validation failed",
                    "errors": errors,
                }
            },
        )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(CorrelationIdMiddleware)

    # Include routers
    app.include_router(calls_router)
    app.include_router(queue_router)
    app.include_router(callbacks_router)
    app.include_router(agents_router)
    app.include_router(telephony_webhooks_router)

    @app.get("/health")
    async def health_check() -> dict[str, str]:
        return {"status": "healthy"}

    return app


app = create_app()
