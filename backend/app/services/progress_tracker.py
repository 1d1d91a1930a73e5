"""Shared helpers for publishing import progress snapshots to Redis."""

from __future__ import annotations

import json
from datetime import timedelta
from typing import Any

from redis.exceptions import RedisError

from app.core.config import get_settings
from app.utils.redis_client import create_redis_client

settings = get_settings()
redis_client = create_redis_client(settings.redis_url, decode_responses=True)
PROGRESS_PREFIX = "imports:progress:"
PROGRESS_TTL = timedelta(hours=settings.progress_ttl_hours)


def _key(job_id: str) -> str:
    return f"{PROGRESS_PREFIX}{job_id}"


def build_snapshot(
    total: int, processed: int = 0, successful: int = 0, failed: int = 0
) -> dict[str, int]:
    return {
        "total_records": total,
        "processed": processed,
        "successful": successful,
        "failed": failed,
        "percentage": round(processed / total * 100) if total else 0,
    }


def publish_progress(
    job_id: str,
    snapshot: dict[str, int],
    *,
    status: str | None = None,
    message: str | None = None,
) -> None:
    """Persist the latest coarse progress so watchers can poll it cheaply."""
    payload: dict[str, Any] = {
        "job_id": job_id,
        "status": status,
        "message": message
        or f"Processed {snapshot['processed']}/{snapshot['total_records']} records",
        **snapshot,
    }
    try:
        redis_client.set(
            _key(job_id),
            json.dumps(payload),
            ex=int(PROGRESS_TTL.total_seconds()),
        )
    except RedisError:
        # Redis availability should not break ingestion.
        pass


def fetch_progress(job_id: str) -> dict[str, Any]:
    """Return the latest snapshot, or an empty dict when none is cached."""
    try:
        raw = redis_client.get(_key(job_id))
    except RedisError:
        return {}
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}
