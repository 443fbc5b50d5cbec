"""Redis client factory shared by the rate limiter and the assignment store."""

from __future__ import annotations

from typing import Final

import redis.asyncio as aioredis

_SOCKET_TIMEOUT_SECONDS: Final[float] = 5.0


def create_redis_client(
    url: str,
    *,
    socket_timeout: float = _SOCKET_TIMEOUT_SECONDS,
) -> aioredis.Redis:
    """Build a lazily-connecting asyncio client; the first command opens the socket."""

    return aioredis.Redis.from_url(
        url,
        decode_responses=True,
        socket_timeout=socket_timeout,
        socket_connect_timeout=socket_timeout,
    )


__all__ = ["create_redis_client"]
