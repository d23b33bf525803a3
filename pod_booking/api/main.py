"""
Main FastAPI application.

Every error leaves the API as ``{"error": code, "message": ..., "context": {...}}``:
domain errors with the status from ERROR_STATUS_CODES, request validation
errors as 422 and anything unexpected as 500. The VNPay IPN endpoint is the
exception; it always answers 200 with an RspCode body.
"""
import time
import uuid
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from fastapi import FastAPI, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pod_booking.config import get_settings
from pod_booking.core.locking import close_lock_manager
from pod_booking.database.connection import close_db, init_db
from pod_booking.domain.errors import PodBookingError
from pod_booking.monitoring.logging import setup_logging
from pod_booking.monitoring.metrics import metrics

from .routes import (
    booking_router,
    cluster_router,
    incident_router,
    monitoring_router,
    payment_router,
    pod_router,
    vnpay_router,
)

setup_logging()
logger = structlog.get_logger(__name__)

settings = get_settings()

REQUEST_ID_HEADER = "X-Request-ID"

ERROR_STATUS_CODES: Dict[str, int] = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "pod_unavailable": status.HTTP_409_CONFLICT,
    "time_slot_conflict": status.HTTP_409_CONFLICT,
    "duplicate_code": status.HTTP_409_CONFLICT,
    "invalid_signature": status.HTTP_400_BAD_REQUEST,
    "amount_mismatch": status.HTTP_400_BAD_REQUEST,
    "validation_error": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "lock_timeout": status.HTTP_503_SERVICE_UNAVAILABLE,
}


def _error_body(
    code: str, message: str, context: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    return {"error": code, "message": message, "context": context or {}}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, Any]:
    """Create tables on startup; release the lock backend and the pool on shutdown."""
    logger.info(
        "application_startup",
        env=settings.app_env,
        sandbox=settings.is_sandbox,
        lock_backend=settings.lock_backend,
    )

    try:
        await init_db()
    except Exception as e:
        logger.error("database_initialization_failed", error=str(e))
        raise

    yield

    logger.info("application_shutdown")
    try:
        await close_lock_manager()
        await close_db()
    except Exception as e:
        logger.error("shutdown_error", error=str(e))


app = FastAPI(
    title="Pod Booking Service",
    description=(
        "Booking and payment service for coworking pods: pod state machine, "
        "overlap-free reservations, VNPay payment reconciliation and incident handling."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.get_allowed_origins_list(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=[REQUEST_ID_HEADER],
)


def _route_template(request: Request) -> str:
    # Label by template (/pods/{pod_id}) so ids do not explode metric cardinality
    route = request.scope.get("route")
    return getattr(route, "path", "unmatched")


@app.middleware("http")
async def request_context_middleware(request: Request, call_next: Any) -> Response:
    """Bind a request id to the log context, time the request and count it."""
    request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
    user_id = request.headers.get("X-User-Id")
    started = time.perf_counter()

    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )
    if user_id:
        structlog.contextvars.bind_contextvars(user_id=user_id)

    try:
        response = await call_next(request)
        duration = time.perf_counter() - started
        response.headers[REQUEST_ID_HEADER] = request_id
        metrics.record_http_request(
            request.method, _route_template(request), response.status_code, duration
        )
        logger.info(
            "request_completed", status_code=response.status_code, duration_seconds=duration
        )
        return response

    except Exception as e:
        logger.error(
            "request_failed",
            error=str(e),
            duration_seconds=time.perf_counter() - started,
        )
        raise

    finally:
        structlog.contextvars.clear_contextvars()


@app.exception_handler(PodBookingError)
async def domain_exception_handler(request: Request, exc: PodBookingError) -> JSONResponse:
    status_code = ERROR_STATUS_CODES.get(exc.code)
    if status_code is None:
        logger.error("unmapped_domain_error", error=exc.code, message=exc.message)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(
                "internal_error", "An unexpected error occurred. Please try again later."
            ),
        )
    logger.info("domain_error", error=exc.code, message=exc.message, status_code=status_code)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    errors = jsonable_encoder(exc.errors())
    logger.info("request_validation_failed", errors=len(errors))
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content=_error_body("validation_error", "Request validation failed", {"errors": errors}),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last resort: log the failure, hide the details."""
    logger.error(
        "unhandled_exception",
        error=str(exc),
        error_type=type(exc).__name__,
        exc_info=exc,
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(
            "internal_error", "An unexpected error occurred. Please try again later."
        ),
    )


app.include_router(cluster_router)
app.include_router(pod_router)
app.include_router(booking_router)
app.include_router(payment_router)
app.include_router(vnpay_router)
app.include_router(incident_router)
app.include_router(monitoring_router)


@app.get("/", tags=["root"])
async def root() -> Dict[str, Any]:
    return {
        "service": settings.app_name,
        "version": app.version,
        "environment": settings.app_env,
        "gateway": "vnpay-sandbox" if settings.is_sandbox else "vnpay",
        "docs": "/docs",
        "health": "/health",
        "metrics": "/metrics",
    }


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        "pod_booking.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=settings.api_workers if not settings.debug else 1,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
