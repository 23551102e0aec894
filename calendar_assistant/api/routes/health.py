"""
Health Check Endpoints

/health answers as long as the process is up. /health/ready checks the
credential database (required) and Redis (optional, conversations fall
back to process memory) and reports which calendar providers have OAuth
app credentials configured.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from calendar_assistant.config import settings
from calendar_assistant.infra.database import check_db_health
from calendar_assistant.infra.redis import check_redis_health

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])

VERSION = "0.1.0"

_start_time: Optional[datetime] = None


def set_start_time() -> None:
    """Record process start; called from the app lifespan."""
    global _start_time
    _start_time = datetime.now(timezone.utc)


def configured_providers() -> list[str]:
    """Providers whose OAuth client id and secret are both set, in preference order."""
    credentials = {
        "google": (settings.google_client_id, settings.google_client_secret),
        "microsoft": (settings.microsoft_client_id, settings.microsoft_client_secret),
    }
    return [
        name for name in settings.provider_order_list
        if name in credentials and all(credentials[name])
    ]


class HealthResponse(BaseModel):
    status: str
    timestamp: datetime
    version: str
    environment: str
    uptime_seconds: Optional[float] = None


class ReadyResponse(BaseModel):
    status: str
    timestamp: datetime
    checks: dict[str, str]
    conversation_store: str
    providers: list[str]


@router.get("", response_model=HealthResponse, summary="Liveness check")
async def health() -> HealthResponse:
    now = datetime.now(timezone.utc)
    return HealthResponse(
        status="healthy",
        timestamp=now,
        version=VERSION,
        environment=settings.app_env,
        uptime_seconds=(now - _start_time).total_seconds() if _start_time else None,
    )


@router.get(
    "/ready",
    response_model=ReadyResponse,
    summary="Readiness check",
    responses={503: {"description": "Credential database unavailable"}},
)
async def ready():
    db_result, redis_result = await asyncio.gather(
        check_db_health(),
        check_redis_health(),
        return_exceptions=True,
    )

    if isinstance(db_result, Exception):
        logger.error(f"Database check raised: {db_result}")
    if isinstance(redis_result, Exception):
        logger.error(f"Redis check raised: {redis_result}")

    db_ok = db_result is True
    redis_ok = redis_result is True

    checks = {
        "database": "ok" if db_ok else "failed",
        "redis": "ok" if redis_ok else "degraded",
    }
    if not db_ok:
        logger.warning("Not ready: credential database unreachable")

    response = ReadyResponse(
        status="ready" if db_ok else "not_ready",
        timestamp=datetime.now(timezone.utc),
        checks=checks,
        conversation_store="redis" if redis_ok else "memory",
        providers=configured_providers(),
    )

    if not db_ok:
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=response.model_dump(mode="json"),
        )
    return response
