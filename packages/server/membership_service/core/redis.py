"""Redis client used by the event notifier, one per process."""

from __future__ import annotations

import redis.asyncio as redis
import structlog

from membership_service.core.config import get_settings

log = structlog.get_logger()

_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    """Return the shared client, creating it on first use.

    The pool connects lazily, so this never waits on Redis. Socket timeouts
    bound how long a post-commit publish can stall the caller.
    """
    global _client
    if _client is None:
        settings = get_settings()
        _client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.redis_socket_timeout_seconds,
            socket_connect_timeout=settings.redis_socket_timeout_seconds,
        )
        log.debug("redis.client_created")
    return _client


async def close_redis() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
        log.debug("redis.client_closed")
