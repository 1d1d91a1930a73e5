"""Redis client construction shared by progress snapshots and health checks."""

from __future__ import annotations

import ssl
from typing import Any

from redis import Redis


def normalize_redis_url(url: str) -> str:
    """Upstash endpoints only accept TLS, even when configured as redis://."""
    if ".upstash.io" in url and url.startswith("redis://"):
        return url.replace("redis://", "rediss://", 1)
    return url


def create_redis_client(url: str, **kwargs: Any) -> Redis:
    """Build a client from a URL; TLS connections skip certificate verification.

    Extra keyword arguments (decode_responses, socket_connect_timeout, ...) are
    passed to ``Redis.from_url``.
    """
    url = normalize_redis_url(url)
    client = Redis.from_url(url, **kwargs)
    if url.startswith("rediss://"):
        client.connection_pool.connection_kwargs["ssl_cert_reqs"] = ssl.CERT_NONE
    return client
