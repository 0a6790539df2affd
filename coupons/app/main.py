from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coupons.app.api.audit import router as audit_router
from coupons.app.api.coupons import router as coupons_router
from coupons.app.core.config import settings
from coupons.app.core.logging import get_logger, setup_logging
from coupons.app.db import models  # noqa: F401 - import to register models
from coupons.app.db.async_session import close_async_engine, get_pool_status
from coupons.app.db.init_db import init_database, verify_connection
from coupons.app.exceptions import (
    CouponCodeConflictError,
    CouponNotFoundError,
    InternalCommitError,
    InvalidCouponTermsError,
    PolicyViolationError,
    StoreUnavailableError,
)
from coupons.app.middleware.request_id import RequestIdMiddleware, get_request_id
from coupons.app.services.audit_batcher import get_audit_batcher, reset_audit_batcher
from coupons.app.services.grant_store import reset_grant_store

# Seconds a client should wait before retrying after a 503
RETRY_AFTER_SECONDS = 1


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan context manager.

        Creates the schema and starts the validation log batcher on startup;
        drains the batcher and closes the database on shutdown.
        """
        if not await verify_connection():
            logger.error("Database connection failed!")
            raise RuntimeError("Cannot connect to database")

        await init_database()

        batcher = get_audit_batcher()
        batcher.start()

        logger.info(
            "Application startup complete",
            extra={
                "debug_mode": settings.debug,
                "audit_batch_size": batcher.batch_size,
                "audit_flush_interval": batcher.flush_interval,
            },
        )

        yield

        # Drain validation logs before the engine goes away
        await batcher.shutdown()
        reset_audit_batcher()
        reset_grant_store()
        await close_async_engine()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Coupon Service",
        description="Coupon issuance and redemption with batched validation logging",
        version="1.0.0",
        lifespan=lifespan,
    )

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "Retry-After"],
        max_age=600,
    )
    app.add_middleware(RequestIdMiddleware)

    app.include_router(coupons_router)
    app.include_router(audit_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with database status and validation log backlog."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}

        if await verify_connection():
            health_status["components"]["database"] = {
                "status": "ok",
                "pool": await get_pool_status(),
            }
        else:
            health_status["status"] = "degraded"
            health_status["components"]["database"] = {"status": "error"}

        batcher = get_audit_batcher()
        failing = batcher.consecutive_failures >= batcher.failure_alert_threshold
        if failing:
            health_status["status"] = "degraded"
        health_status["components"]["validation_logs"] = {
            "status": "error" if failing else "ok",
            "state": batcher.state.value,
            "queue_size": batcher.size(),
            "consecutive_failures": batcher.consecutive_failures,
        }
        health_status["validation_log_queue_size"] = batcher.size()

        return health_status

    @app.exception_handler(PolicyViolationError)
    async def policy_violation_handler(request: Request, exc: PolicyViolationError) -> JSONResponse:
        """Denials are business information: reason code and message go back verbatim."""
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "permitted": False,
                "reason_code": exc.reason_code,
                "message": exc.message,
            },
        )

    @app.exception_handler(CouponNotFoundError)
    async def not_found_handler(request: Request, exc: CouponNotFoundError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "permitted": False,
                "reason_code": "not_found",
                "message": exc.message,
            },
        )

    @app.exception_handler(CouponCodeConflictError)
    async def code_conflict_handler(request: Request, exc: CouponCodeConflictError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "code_conflict", "message": exc.message},
        )

    @app.exception_handler(InvalidCouponTermsError)
    async def invalid_terms_handler(request: Request, exc: InvalidCouponTermsError) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": "invalid_terms", "message": exc.message},
        )

    @app.exception_handler(StoreUnavailableError)
    async def store_unavailable_handler(request: Request, exc: StoreUnavailableError) -> JSONResponse:
        """Retryable; the store failure itself is only logged."""
        request_id = get_request_id(request)
        logger.error(
            f"Store unavailable during {exc.operation} [request_id={request_id}]",
            extra={"request_id": request_id, "path": request.url.path},
        )
        return JSONResponse(
            status_code=exc.status_code,
            headers={"Retry-After": str(RETRY_AFTER_SECONDS)},
            content={
                "error": "store_unavailable",
                "message": "Service temporarily unavailable, please retry",
                "request_id": request_id,
            },
        )

    @app.exception_handler(InternalCommitError)
    async def internal_commit_handler(request: Request, exc: InternalCommitError) -> JSONResponse:
        request_id = get_request_id(request)
        return JSONResponse(
            status_code=exc.status_code,
            content={
                "permitted": False,
                "reason_code": "internal_error",
                "message": "Internal server error",
                "request_id": request_id,
            },
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        Full details are logged server-side; the client gets a generic
        message, or the exception message in debug mode (never a traceback).
        """
        request_id = get_request_id(request)

        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
                "exception_message": str(exc),
            },
        )

        if settings.debug:
            return JSONResponse(
                status_code=500,
                content={
                    "error": "internal_error",
                    "message": str(exc),
                    "exception_type": type(exc).__name__,
                    "request_id": request_id,
                },
            )

        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": "Internal server error",
                "request_id": request_id,
            },
        )

    return app


# Create the application instance
app = create_app()
