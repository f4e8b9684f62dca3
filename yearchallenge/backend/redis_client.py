"""Redis connection helper."""

from __future__ import annotations

import redis


def connect_redis(url: str) -> redis.Redis:
    """Create a Redis client with a bounded connection pool."""
    return redis.Redis.from_url(
        url,
        encoding="utf-8",
        decode_responses=True,
        max_connections=50,
        socket_timeout=2.0,
    )
