"""
FastAPI application for the WeddingBell notification service.

Wires the service container into an HTTP API (``/api/v1``), the real-time
socket endpoint (``/api/v1/ws/connect``) and a ``/health`` probe, and owns
the startup and shutdown sequence:

Startup: validate settings, connect storage and Redis, start the pub/sub
bus and cache invalidation listeners, load rules and stored templates, then
start the priority dispatcher lanes and the presence heartbeat.

Shutdown: the same in reverse; in-flight jobs settle before connections
close.
"""

import traceback
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from weddingbell.app.api.middleware.logging import RequestContextMiddleware
from weddingbell.app.api.routes import notifications, preferences, rules, templates, websocket
from weddingbell.app.core.container import ServiceContainer
from weddingbell.app.core.exceptions import (
    BaseCustomException,
    ConfigurationError,
    ErrorCode,
    get_exception_response_data,
)
from weddingbell.app.models.domain.notification import format_datetime, utc_now
from weddingbell.app.utils.logging import get_logger, initialize_logging_from_settings
from weddingbell.config.settings import Settings, get_settings

logger = get_logger(__name__)


def _validate_settings(settings: Settings) -> None:
    errors = settings.validate_configuration()
    if errors:
        logger.error("Configuration validation failed", errors=errors)
        raise ConfigurationError(
            "Invalid configuration: " + "; ".join(msg for msgs in errors.values() for msg in msgs),
            error_code=ErrorCode.CONFIG_VALIDATION_FAILED
        )


def create_application(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
    run_workers: bool = True
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Settings to use; loaded from the environment when omitted
        container: Prebuilt service container; built from settings when omitted
        run_workers: Start dispatcher lanes and the presence heartbeat

    Returns:
        FastAPI: Configured application instance
    """
    settings = settings or (container.settings if container is not None else get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("=== WeddingBell notification service starting up ===")
        _validate_settings(settings)

        app.state.container = app.state.container or ServiceContainer(settings)
        await app.state.container.start(run_workers=run_workers)
        logger.info("=== WeddingBell notification service ready ===")

        try:
            yield
        finally:
            logger.info("=== WeddingBell notification service shutting down ===")
            await app.state.container.stop()
            logger.info("=== Shutdown completed ===")

    app = FastAPI(
        title="WeddingBell Notifications API",
        description="Real-time, push, email and SMS notifications for wedding planning",
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan
    )
    app.state.settings = settings
    app.state.container = container

    configure_middleware(app, settings)
    configure_routes(app, settings)
    configure_exception_handlers(app, settings)
    return app


def configure_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure application middleware stack."""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    # Added last so it runs first
    app.add_middleware(RequestContextMiddleware)


def configure_routes(app: FastAPI, settings: Settings) -> None:
    """Configure application routes."""

    @app.get("/health", tags=["system"])
    async def health_check():
        container: Optional[ServiceContainer] = app.state.container
        if container is None:
            return JSONResponse(status_code=503, content={"status": "starting"})

        components = await container.health()
        dispatcher_healthy = container.dispatcher.is_healthy
        return JSONResponse(
            status_code=200 if dispatcher_healthy else 503,
            content={
                "status": "healthy" if dispatcher_healthy else "degraded",
                "version": settings.app_version,
                "timestamp": format_datetime(utc_now()),
                "components": components,
            }
        )

    prefix = settings.api_prefix
    app.include_router(notifications.router, prefix=f"{prefix}/notifications", tags=["notifications"])
    app.include_router(preferences.router, prefix=f"{prefix}/preferences", tags=["preferences"])
    app.include_router(templates.router, prefix=f"{prefix}/templates", tags=["templates"])
    app.include_router(rules.router, prefix=f"{prefix}/rules", tags=["rules"])
    app.include_router(websocket.router, prefix=f"{prefix}/ws", tags=["websocket"])


def configure_exception_handlers(app: FastAPI, settings: Settings) -> None:
    """Configure global exception handlers."""

    @app.exception_handler(BaseCustomException)
    async def custom_exception_handler(request: Request, exc: BaseCustomException):
        log = logger.error if exc.http_status_code >= 500 else logger.warning
        log(
            f"Custom exception: {exc.error_code.value}",
            error_code=exc.error_code.value,
            message=exc.message,
            path=request.url.path,
            method=request.method,
            correlation_id=exc.correlation_id
        )
        return JSONResponse(status_code=exc.http_status_code, content=get_exception_response_data(exc))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        logger.warning(
            "Request validation failed",
            path=request.url.path,
            method=request.method,
            errors=exc.errors()
        )
        return JSONResponse(
            status_code=422,
            content={
                "success": False,
                "error": {
                    "code": ErrorCode.NOTIFICATION_VALIDATION_FAILED.value,
                    "message": "Request validation failed",
                    "details": jsonable_errors(exc),
                }
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        logger.warning(
            f"HTTP exception: {exc.status_code}",
            path=request.url.path,
            method=request.method,
            detail=exc.detail
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "success": False,
                "error": {"code": f"HTTP_{exc.status_code}", "message": exc.detail, "details": {}}
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        logger.error(
            "Unexpected exception occurred",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            traceback=traceback.format_exc()
        )
        # Don't expose internal error details in production
        error_detail = str(exc) if settings.debug else "Internal server error"
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": {"code": "INTERNAL_SERVER_ERROR", "message": error_detail, "details": {}}
            }
        )


def jsonable_errors(exc: RequestValidationError):
    """Validation errors without the non-serializable ``ctx``/``input`` values."""
    return [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]


def create_app() -> FastAPI:
    """Application factory for ``uvicorn --factory weddingbell.main:create_app``."""
    settings = get_settings()
    initialize_logging_from_settings(settings)
    return create_application(settings)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("weddingbell.main:create_app", factory=True, host="0.0.0.0", port=8000)
