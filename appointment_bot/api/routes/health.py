"""
Health Check Endpoints

Health, readiness and liveness probes.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from appointment_bot.config import settings
from appointment_bot.infra.database import check_db_health
from appointment_bot.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Set application start time. Called once on startup."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def get_uptime_seconds() -> Optional[float]:
    """Get application uptime in seconds."""
    if _start_time is None:
        return None
    return (datetime.now(timezone.utc) - _start_time).total_seconds()


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: datetime
    version: str
    environment: str
    timezone: str


class ReadyResponse(BaseModel):
    """Readiness check response with dependency status."""
    status: str
    timestamp: datetime
    checks: dict[str, str]


class LiveResponse(BaseModel):
    """Liveness check response."""
    status: str
    timestamp: datetime
    uptime_seconds: Optional[float] = None


@router.get(
    "",
    response_model=HealthResponse,
    status_code=status.HTTP_200_OK,
    summary="Basic health check",
)
async def health() -> HealthResponse:
    """Always returns 200 if the application is running."""
    return HealthResponse(
        status="healthy",
        timestamp=datetime.now(timezone.utc),
        version="1.0.0",
        environment=settings.app_env,
        timezone=settings.timezone,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness probe",
    responses={
        200: {"description": "All dependencies are ready"},
        503: {"description": "One or more dependencies are unavailable"},
    },
)
async def ready() -> ReadyResponse:
    """
    Readiness probe.

    Checks:
    - Reminder ledger database (skipped when DATABASE_URL is empty)
    - Redis (sessions fall back to memory, so a failure only degrades)
    - Calendar and messaging credentials are configured
    """
    checks: dict[str, str] = {}
    all_ok = True

    if settings.database_url:
        db_ok = await check_db_health()
        checks["database"] = "ok" if db_ok else "failed"
        if not db_ok:
            all_ok = False
            logger.warning("Readiness check: Database unhealthy")
    else:
        checks["database"] = "disabled"

    redis_ok = await check_redis_health()
    checks["redis"] = "ok" if redis_ok else "degraded"
    if not redis_ok:
        logger.warning("Readiness check: Redis unavailable, sessions in memory")

    calendar_ok = bool(settings.google_client_id and settings.google_refresh_token)
    messaging_ok = bool(settings.zapi_instance_id and settings.zapi_token)
    checks["calendar"] = "configured" if calendar_ok else "missing_credentials"
    checks["messaging"] = "configured" if messaging_ok else "missing_credentials"
    all_ok = all_ok and calendar_ok and messaging_ok

    response = ReadyResponse(
        status="ready" if all_ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
    )

    if not all_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )

    return response


@router.get(
    "/live",
    response_model=LiveResponse,
    status_code=status.HTTP_200_OK,
    summary="Liveness probe",
)
async def live() -> LiveResponse:
    """Always returns 200 if the process is running."""
    return LiveResponse(
        status="alive",
        timestamp=datetime.now(timezone.utc),
        uptime_seconds=get_uptime_seconds(),
    )
