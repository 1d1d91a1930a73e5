"""Liveness and readiness endpoints."""

from __future__ import annotations

import logging
from typing import Any, Callable

from fastapi import APIRouter, HTTPException, status
from sqlalchemy import text

from app.core.config import get_settings
from app.db.session import engine
from app.utils.redis_client import create_redis_client

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["health"])

SERVICE_NAME = "school-import-api"


@router.get("/live", summary="Liveness check")
async def live() -> dict[str, str]:
    """Indicates the API process is running."""
    return {"status": "ok", "service": SERVICE_NAME}


def _ping_database() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1")).fetchone()


def _ping_redis(url: str) -> Callable[[], None]:
    def ping() -> None:
        client = create_redis_client(url, decode_responses=True, socket_connect_timeout=2)
        try:
            client.ping()
        finally:
            client.close()

    return ping


def _run_check(name: str, check: Callable[[], None]) -> dict[str, str]:
    try:
        check()
    except Exception as e:
        logger.error(f"{name} health check failed: {e}", exc_info=True)
        return {"status": "unhealthy", "message": f"{name} connection failed: {str(e)}"}
    return {"status": "healthy", "message": f"{name} connection successful"}


@router.get("/ready", summary="Readiness check")
async def ready() -> dict[str, Any]:
    """Check the database, Redis (progress snapshots) and the Celery broker.

    The broker is reported but does not fail readiness; workers run separately.
    """
    settings = get_settings()
    checks = {
        "database": _run_check("Database", _ping_database),
        "redis": _run_check("Redis", _ping_redis(settings.redis_url)),
        "celery_broker": _run_check(
            "Celery broker", _ping_redis(settings.celery_broker_url or settings.redis_url)
        ),
    }
    healthy = all(checks[name]["status"] == "healthy" for name in ("database", "redis"))
    payload = {
        "status": "ok" if healthy else "unhealthy",
        "service": SERVICE_NAME,
        "checks": checks,
    }
    if not healthy:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=payload)
    return payload
