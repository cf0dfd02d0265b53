"""Entitlement Gate API - FastAPI application entry point."""

import logging
import os
import time
import uuid

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from gate_api import __version__
from gate_api.access.gate import AccessDeniedError
from gate_api.context import access_decision_var, event_id_var, request_id_var
from gate_api.routers import access, admin, health, webhooks
from gate_api.schemas import ProblemDetail
from gate_api.utils import configure_json_logging

logger = logging.getLogger(__name__)

PROBLEM_BASE = "https://gate.invalid/problems"


def _instance() -> str:
    """Opaque problem instance built from the current request id."""
    request_id = request_id_var.get()
    return f"urn:gate:trace:{request_id}" if request_id else f"urn:gate:trace:{uuid.uuid4()}"


def _get_title_for_status(status_code: int) -> str:
    """Get human-readable title for HTTP status code."""
    titles = {
        400: "Bad Request",
        401: "Unauthorized",
        403: "Forbidden",
        404: "Not Found",
        405: "Method Not Allowed",
        409: "Conflict",
        429: "Too Many Requests",
        500: "Internal Server Error",
        502: "Bad Gateway",
        503: "Service Unavailable",
    }
    return titles.get(status_code, f"HTTP {status_code}")


# ============================================================================
# RFC 9457 Exception Handlers
# ============================================================================


async def access_denied_handler(request: Request, exc: AccessDeniedError) -> JSONResponse:
    """Gate denials: problem document plus stable ``ok``/``reason`` members."""
    problem = ProblemDetail(
        type=f"{PROBLEM_BASE}/access-denied",
        title=_get_title_for_status(exc.status_code),
        status=exc.status_code,
        detail="A valid license is required for this endpoint.",
        instance=_instance(),
    )
    content = problem.model_dump(exclude_none=True)
    content["ok"] = False
    content["reason"] = exc.reason
    return JSONResponse(
        status_code=exc.status_code,
        content=content,
        media_type="application/problem+json",
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle HTTP exceptions with RFC 9457 Problem Details format.

    Preserves dict detail fields for structured error responses.
    """
    detail_value = exc.detail if exc.detail is not None else _get_title_for_status(exc.status_code)

    problem = ProblemDetail(
        type=f"{PROBLEM_BASE}/http-{exc.status_code}",
        title=_get_title_for_status(exc.status_code),
        status=exc.status_code,
        detail=detail_value,
        instance=_instance(),
    )

    headers = dict(exc.headers or {})
    if exc.status_code in (429, 503):
        headers.setdefault("Retry-After", "60")

    return JSONResponse(
        status_code=exc.status_code,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers=headers,
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handle request validation errors (422) with RFC 9457 Problem Details format."""
    first_error = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(loc) for loc in first_error.get("loc", []))
    msg = first_error.get("msg", "Validation error")

    problem = ProblemDetail(
        type=f"{PROBLEM_BASE}/validation-error",
        title="Request Validation Failed",
        status=422,
        detail=f"Invalid field '{field}': {msg}",
        instance=_instance(),
    )
    return JSONResponse(
        status_code=422,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions with RFC 9457 Problem Details format."""
    problem = ProblemDetail(
        type=f"{PROBLEM_BASE}/internal-error",
        title="Internal Server Error",
        status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="An unexpected error occurred. Please try again later.",
        instance=_instance(),
    )

    logger.error(f"Unhandled exception: {type(exc).__name__}", exc_info=True)

    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=problem.model_dump(exclude_none=True),
        media_type="application/problem+json",
        headers={"Retry-After": "60"},
    )


# ============================================================================
# Application Factory
# ============================================================================


def create_app() -> FastAPI:
    """Create the FastAPI application.

    Factory pattern for test isolation: every call returns a fresh app with
    its own middleware stack and dependency_overrides.
    """
    # Set GATE_JSON_LOGS=false to disable (defaults to true for production)
    if os.getenv("GATE_JSON_LOGS", "true").lower() != "false":
        configure_json_logging(log_level=os.getenv("LOG_LEVEL", "INFO"))

    new_app = FastAPI(
        title="Entitlement Gate API",
        description="Signed webhook ingestion, entitlement ledger, and license access decisions.",
        version=__version__,
        docs_url="/api-docs",
        redoc_url=None,
    )

    cors_origins = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_origins:
        allowed_origins = [origin.strip() for origin in cors_origins.split(",") if origin.strip()]
    else:
        allowed_origins = [
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ]

    new_app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=False,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-License-Key", "X-Request-ID"],
        expose_headers=["X-Request-ID", "Retry-After"],
    )

    new_app.add_exception_handler(AccessDeniedError, access_denied_handler)
    new_app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    new_app.add_exception_handler(RequestValidationError, validation_exception_handler)
    new_app.add_exception_handler(Exception, general_exception_handler)

    new_app.include_router(health.router, tags=["health"])
    new_app.include_router(webhooks.router)
    new_app.include_router(access.router)
    new_app.include_router(admin.router)

    # Completion logging middleware (registered first → innermost)
    @new_app.middleware("http")
    async def completion_logging_mw(request: Request, call_next):
        """Log every HTTP request completion (status 500 when the handler raised)."""
        event_id_var.set("")
        access_decision_var.set("")

        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        finally:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.info(
                "http.request.completed",
                extra={
                    "event": "http.request.completed",
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": status_code,
                    "duration_ms": round(duration_ms, 2),
                },
            )
            event_id_var.set("")
            access_decision_var.set("")

    # Request ID middleware (registered last → outermost, sets context first)
    @new_app.middleware("http")
    async def request_id_mw(request: Request, call_next):
        """Accept X-Request-ID from the caller or generate one; echo it back."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_var.set(request_id)
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    return new_app


app = create_app()
