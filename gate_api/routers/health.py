"""Health check endpoints."""

import logging

from fastapi import APIRouter, Response, status
from pydantic import BaseModel
from sqlalchemy import text

from gate_api import __version__
from gate_api.db.redis_client import RedisClient
from gate_api.db.session import get_engine

router = APIRouter()
logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    version: str
    services: dict[str, str]


def check_database() -> str:
    """Check database connectivity.

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return "up"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return f"down: {str(e)[:50]}"


def check_redis() -> str:
    """Check Redis connectivity (validation cache; optional dependency).

    Returns:
        str: "up" if healthy, error message otherwise
    """
    try:
        RedisClient.get_client().ping()
        return "up"
    except Exception as e:
        logger.warning(f"Redis health check failed: {e}")
        return f"down: {str(e)[:50]}"


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """
    Liveness endpoint.

    Always returns 200 OK (use /readyz for dependency checks).
    """
    return HealthResponse(
        status="healthy",
        version=__version__,
        services={"api": "up"},
    )


@router.get("/readyz", response_model=HealthResponse)
async def readiness_check(response: Response) -> HealthResponse:
    """
    Readiness endpoint.

    Returns 503 when the database is down. Redis only backs the validation
    cache, so a Redis outage is reported but does not fail readiness.
    """
    services = {
        "api": "up",
        "database": check_database(),
        "redis": check_redis(),
    }

    if services["database"] != "up":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(status="not_ready", version=__version__, services=services)

    return HealthResponse(status="ready", version=__version__, services=services)
