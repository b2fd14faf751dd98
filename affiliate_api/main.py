"""
FastAPI application factory with middleware, CORS, request tracing and
error mapping.
"""

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from affiliate_api import __version__
from affiliate_api.config import Settings, get_settings
from affiliate_api.core.executor import QueryTimeoutError
from affiliate_api.dependencies import ServiceContainer, build_container
from affiliate_api.models.reports import ReportValidationError
from affiliate_api.routers import admin, me, reports, system
from affiliate_api.services.metrics_store import WriteConflictError
from affiliate_api.services.referrals import InvalidReferralCodeError, ReferralCodeTakenError
from affiliate_api.storage.base import StoreConflictError, StoreError
from affiliate_api.utils.logging import configure_logging, get_logger

logger = get_logger(__name__)


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def _register_exception_handlers(app: FastAPI) -> None:
    """Map domain errors onto HTTP responses."""

    @app.exception_handler(ReportValidationError)
    async def validation_error_handler(request: Request, exc: ReportValidationError) -> JSONResponse:
        logger.warning("request_validation_failed", path=request.url.path, error=str(exc))
        return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc))

    @app.exception_handler(InvalidReferralCodeError)
    async def invalid_referral_code_handler(request: Request, exc: InvalidReferralCodeError) -> JSONResponse:
        return _error_response(status.HTTP_400_BAD_REQUEST, str(exc))

    @app.exception_handler(ReferralCodeTakenError)
    async def referral_code_taken_handler(request: Request, exc: ReferralCodeTakenError) -> JSONResponse:
        return _error_response(status.HTTP_409_CONFLICT, str(exc))

    @app.exception_handler(QueryTimeoutError)
    async def timeout_error_handler(request: Request, exc: QueryTimeoutError) -> JSONResponse:
        return _error_response(status.HTTP_504_GATEWAY_TIMEOUT, str(exc))

    @app.exception_handler(WriteConflictError)
    async def write_conflict_handler(request: Request, exc: WriteConflictError) -> JSONResponse:
        return _error_response(status.HTTP_409_CONFLICT, str(exc))

    @app.exception_handler(StoreConflictError)
    async def store_conflict_handler(request: Request, exc: StoreConflictError) -> JSONResponse:
        return _error_response(status.HTTP_409_CONFLICT, str(exc))

    @app.exception_handler(StoreError)
    async def store_error_handler(request: Request, exc: StoreError) -> JSONResponse:
        logger.error("store_request_failed", path=request.url.path, error=str(exc), code=exc.code)
        return _error_response(status.HTTP_502_BAD_GATEWAY, "Report store unavailable")


def create_app(
    settings: Optional[Settings] = None,
    container: Optional[ServiceContainer] = None,
) -> FastAPI:
    """
    Application factory.
    Creates and configures FastAPI application instance.

    Args:
        settings: Settings override (default: environment)
        container: Pre-built collaborators (tests inject fakes here)
    """
    settings = settings or get_settings()
    configure_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan manager.
        Builds collaborators on startup, stops background tasks on shutdown.
        """
        app.state.container = container or build_container(settings)
        logger.info(
            "application_startup",
            version=app.version,
            store_backend=settings.store_backend,
            timezone=settings.report_timezone,
            dev_mode=settings.dev_mode,
        )
        if settings.start_background_tasks:
            app.state.container.start_background_tasks()

        yield

        await app.state.container.shutdown()
        logger.info("application_shutdown")

    app = FastAPI(
        title="Affiliate Reports API",
        description="Affiliate dashboard reports over a remote store",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    # Request tracing middleware
    @app.middleware("http")
    async def request_tracing_middleware(request: Request, call_next):
        """Add request ID and timing to all requests."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))

        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        logger.info(
            "request_started",
            method=request.method,
            path=request.url.path,
            client=request.client.host if request.client else None,
        )

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                method=request.method,
                path=request.url.path,
                error=str(e),
                exc_info=True,
            )
            return JSONResponse(
                status_code=500,
                content={
                    "success": False,
                    "error": "Internal server error",
                    "request_id": request_id,
                },
                headers={"X-Request-ID": request_id},
            )

        response.headers["X-Request-ID"] = request_id
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
        )
        return response

    _register_exception_handlers(app)

    # Health check endpoint
    @app.get("/health", tags=["System"])
    async def health_check():
        """Health check endpoint for load balancers and monitoring."""
        return {
            "status": "healthy",
            "version": app.version,
            "store_backend": settings.store_backend,
        }

    app.include_router(reports.router, prefix="/api/v1/me/reports", tags=["Reports"])
    app.include_router(me.router, prefix="/api/v1/me", tags=["Account"])
    app.include_router(admin.router, prefix="/api/v1/admin", tags=["Admin"])
    app.include_router(system.router, prefix="/api/v1/system", tags=["System"])

    logger.info("application_configured", routers_count=4)

    return app


if __name__ == "__main__":
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "affiliate_api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.api_reload,
        log_level=settings.log_level.lower(),
    )
