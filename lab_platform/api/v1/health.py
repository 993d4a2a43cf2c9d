"""Health Check Endpoint"""

from typing import Any, Dict

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse, Response

from lab_platform.core.config import settings
from lab_platform.core.database import (
    check_db_connection,
    check_mongodb_connection,
    check_redis_connection
)
from lab_platform.core.monitoring import get_metrics, get_metrics_content_type

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
async def health_check() -> JSONResponse:
    """
    Health check endpoint that verifies the configured dependencies.

    MongoDB and Redis are only checked when the deployment uses them.

    Returns:
        200 OK if all services are healthy
        503 Service Unavailable if any service is unhealthy
    """
    checks: Dict[str, bool] = {"database": await check_db_connection()}
    if settings.MONGODB_URL:
        checks["mongodb"] = await check_mongodb_connection()
    if settings.LOCK_BACKEND == "redis":
        checks["redis"] = await check_redis_connection()

    all_healthy = all(checks.values())

    response_data: Dict[str, Any] = {
        "status": "healthy" if all_healthy else "unhealthy",
        "services": checks
    }

    return JSONResponse(
        status_code=status.HTTP_200_OK if all_healthy else status.HTTP_503_SERVICE_UNAVAILABLE,
        content=response_data
    )


@router.get("/metrics")
async def metrics() -> Response:
    """Prometheus metrics endpoint"""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
