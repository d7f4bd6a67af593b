"""Redis client for the student read-model cache.

One client per process: the cache stage deletes keys through it and the ops
API's readiness probe pings it.
"""

import redis.asyncio as redis

from fulfillment.core.config import get_settings

_client: redis.Redis | None = None


def create_redis(url: str | None = None) -> redis.Redis:
    settings = get_settings()
    return redis.from_url(
        url or settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
    )


async def init_redis(url: str | None = None) -> redis.Redis:
    """Create the process-wide client and check that it answers PING."""
    global _client

    if _client is None:
        client = create_redis(url)
        await client.ping()
        _client = client
    return _client


async def close_redis() -> None:
    global _client

    if _client is not None:
        await _client.aclose()
        _client = None


def get_redis() -> redis.Redis:
    """Return the shared client.

    Raises RuntimeError if init_redis() has not been called.
    """
    if _client is None:
        raise RuntimeError("Redis not initialized. Call init_redis() first.")
    return _client
