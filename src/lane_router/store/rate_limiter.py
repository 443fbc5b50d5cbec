"""
lane-router - distributed sliding-window rate limiter.

File: src/lane_router/store/rate_limiter.py
Last updated: 2026-10-18

Purpose
- Answer "may one more job start on lane L right now?" for every dispatcher or
  worker replica sharing one Redis, with a rolling one-minute budget per lane.

What should be included in this file
- ``SlidingWindowRateLimiter`` with ``permit``, ``state``, ``reset``,
  ``health_check`` and ``close``.
- The Lua script that prunes, counts and conditionally records in one step.

Functional requirements
- A denied check never records an entry.
- Entries older than the window are never counted.
- Store failures fail open: the job is admitted and a warning is logged.
"""

from __future__ import annotations

import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Final

import structlog
from redis.exceptions import RedisError

from lane_router.constants import RATE_WINDOW_MS
from lane_router.observability.metrics import RATE_LIMITER_FAIL_OPEN, MetricsRegistry

_STORE_ERRORS: Final[tuple[type[BaseException], ...]] = (RedisError, OSError, TimeoutError)

# KEYS[1] lane key
# ARGV now_ms, window_ms, capacity, member, ttl_ms
_PERMIT_SCRIPT: Final[str] = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local capacity = tonumber(ARGV[3])
redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. (now - window))
local count = redis.call('ZCARD', key)
if count < capacity then
    redis.call('ZADD', key, now, ARGV[4])
    redis.call('PEXPIRE', key, tonumber(ARGV[5]))
    return {1, count + 1}
end
return {0, count}
"""


def _default_token() -> str:
    return secrets.token_hex(8)


@dataclass(frozen=True, slots=True)
class RateLimitState:
    """Point-in-time view of one lane's window."""

    lane: str
    count: int
    limit: int
    window_start_ms: int
    window_ms: int
    degraded: bool = False

    @property
    def allowed(self) -> bool:
        return self.degraded or self.count < self.limit

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)


class SlidingWindowRateLimiter:
    """Per-lane rolling budget stored as a Redis sorted set of admission timestamps."""

    def __init__(
        self,
        client: Any,
        *,
        key_prefix: str,
        window_ms: int = RATE_WINDOW_MS,
        key_ttl_seconds: int = 120,
        clock: Callable[[], float] = time.time,
        token_factory: Callable[[], str] = _default_token,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        if not key_prefix:
            raise ValueError("key_prefix must not be empty")
        if window_ms <= 0:
            raise ValueError("window_ms must be > 0")
        if key_ttl_seconds <= 0:
            raise ValueError("key_ttl_seconds must be > 0")
        self._client = client
        self._key_prefix = key_prefix
        self._window_ms = window_ms
        self._ttl_ms = max(key_ttl_seconds * 1000, window_ms)
        self._clock = clock
        self._token_factory = token_factory
        self._metrics = metrics
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._script = client.register_script(_PERMIT_SCRIPT)

    @property
    def key_prefix(self) -> str:
        return self._key_prefix

    @property
    def window_ms(self) -> int:
        return self._window_ms

    def key_for(self, lane: str) -> str:
        return f"{self._key_prefix}{lane}"

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    async def permit(self, lane: str, capacity_per_minute: int) -> bool:
        """Record one admission for ``lane`` if the window has room; ``True`` when admitted."""

        if capacity_per_minute <= 0:
            return False

        now_ms = self._now_ms()
        member = f"{now_ms}-{self._token_factory()}"
        try:
            result = await self._script(
                keys=[self.key_for(lane)],
                args=[now_ms, self._window_ms, capacity_per_minute, member, self._ttl_ms],
            )
        except _STORE_ERRORS as exc:
            self._fail_open("permit", lane, exc)
            return True

        allowed = int(result[0]) == 1
        self._logger.debug(
            "rate_limit_checked",
            lane=lane,
            allowed=allowed,
            count=int(result[1]),
            limit=capacity_per_minute,
        )
        return allowed

    async def state(self, lane: str, capacity_per_minute: int) -> RateLimitState:
        now_ms = self._now_ms()
        window_start = now_ms - self._window_ms
        key = self.key_for(lane)
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, "-inf", f"({window_start}")
                pipe.zcard(key)
                _, count = await pipe.execute()
        except _STORE_ERRORS as exc:
            self._fail_open("state", lane, exc)
            return RateLimitState(
                lane=lane,
                count=0,
                limit=capacity_per_minute,
                window_start_ms=window_start,
                window_ms=self._window_ms,
                degraded=True,
            )
        return RateLimitState(
            lane=lane,
            count=int(count),
            limit=capacity_per_minute,
            window_start_ms=window_start,
            window_ms=self._window_ms,
        )

    async def reset(self, lane: str) -> int:
        """Delete the lane's window. Store errors propagate to the caller."""

        removed = int(await self._client.delete(self.key_for(lane)))
        self._logger.info("rate_limit_reset", lane=lane, key_prefix=self._key_prefix)
        return removed

    async def health_check(self) -> bool:
        try:
            return bool(await self._client.ping())
        except _STORE_ERRORS as exc:
            self._logger.warning("rate_limiter_unhealthy", error=str(exc))
            return False

    async def close(self) -> None:
        await self._client.aclose()

    def _fail_open(self, operation: str, lane: str, exc: BaseException) -> None:
        if self._metrics is not None:
            self._metrics.inc(RATE_LIMITER_FAIL_OPEN, labels={"lane": lane})
        self._logger.warning(
            "rate_limiter_fail_open",
            operation=operation,
            lane=lane,
            error_type=exc.__class__.__name__,
            error=str(exc),
        )


__all__ = ["RateLimitState", "SlidingWindowRateLimiter"]
