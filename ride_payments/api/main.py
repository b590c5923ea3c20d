"""
Main FastAPI application.

Internal payment API for the ride-booking marketplace:
- Service-to-service API key authentication
- Domain error to HTTP status mapping
- Request ID tracking
- Structured logging
- Prometheus metrics
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ride_payments.config import get_settings
from ride_payments.core.errors import (
    ConsistencyConflict,
    IntentNotFound,
    PaymentValidationError,
    PolicyViolation,
)
from ride_payments.database.connection import close_db, init_db
from ride_payments.integrations.provider import ProviderTerminalError, ProviderTransientError
from ride_payments.monitoring.logging import setup_logging

from .routes import (
    admin_router,
    cancellation_router,
    earnings_router,
    monitoring_router,
    payment_router,
    ride_router,
    worker_router,
)

setup_logging("api")
logger = structlog.get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    logger.info(
        "application_startup",
        app_name=settings.app_name,
        env=settings.app_env,
        test_mode=settings.is_test_mode,
    )

    try:
        await init_db()
        logger.info("database_initialized")
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    try:
        await close_db()
        logger.info("database_connections_closed")
    except Exception as e:
        logger.error("database_shutdown_error", error=str(e))


app = FastAPI(
    title="Ride Payments",
    description=(
        "Payment lifecycle for ride bookings: authorize at booking, capture after the "
        "ride, policy-driven cancellations, refunds and driver earnings."
    ),
    version="0.1.0",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url="/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_request_id_middleware(request: Request, call_next: Any) -> Response:
    """
    Add request ID to all requests for tracing.

    An incoming ``X-Request-ID`` is kept so calls can be traced across services.
    """
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    start_time = time.time()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    logger.info(
        "request_started",
        client_host=request.client.host if request.client else None,
    )

    try:
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id

        logger.info(
            "request_completed",
            status_code=response.status_code,
            duration_seconds=time.time() - start_time,
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.time() - start_time,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


def _error_response(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": error, "message": str(exc)})


@app.exception_handler(IntentNotFound)
async def intent_not_found_handler(request: Request, exc: IntentNotFound) -> JSONResponse:
    return _error_response(status.HTTP_404_NOT_FOUND, "not_found", exc)


@app.exception_handler(PaymentValidationError)
async def validation_error_handler(request: Request, exc: PaymentValidationError) -> JSONResponse:
    return _error_response(status.HTTP_400_BAD_REQUEST, "invalid_request", exc)


@app.exception_handler(PolicyViolation)
async def policy_violation_handler(request: Request, exc: PolicyViolation) -> JSONResponse:
    return _error_response(status.HTTP_422_UNPROCESSABLE_ENTITY, "policy_violation", exc)


@app.exception_handler(ConsistencyConflict)
async def conflict_handler(request: Request, exc: ConsistencyConflict) -> JSONResponse:
    logger.warning("request_conflict", error=str(exc), path=request.url.path)
    return _error_response(status.HTTP_409_CONFLICT, "conflict", exc)


@app.exception_handler(ProviderTransientError)
async def provider_unavailable_handler(
    request: Request, exc: ProviderTransientError
) -> JSONResponse:
    logger.warning("provider_unavailable", error=str(exc), path=request.url.path)
    return _error_response(status.HTTP_503_SERVICE_UNAVAILABLE, "provider_unavailable", exc)


@app.exception_handler(ProviderTerminalError)
async def provider_declined_handler(request: Request, exc: ProviderTerminalError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content={"error": "payment_declined", "message": str(exc), "code": exc.code},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Global exception handler for unhandled exceptions.
    """
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        path=request.url.path,
    )

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred. Please try again later.",
        },
    )


app.include_router(payment_router)
app.include_router(ride_router)
app.include_router(cancellation_router)
app.include_router(worker_router)
app.include_router(admin_router)
app.include_router(earnings_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> dict[str, Any]:
    """Root endpoint with API information."""
    return {
        "service": settings.app_name,
        "version": "0.1.0",
        "status": "operational",
        "environment": settings.app_env,
        "test_mode": settings.is_test_mode,
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "ride_payments.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )
