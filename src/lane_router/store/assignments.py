"""Sticky job-to-lane assignments so a redelivered job routes to the same lane."""

from __future__ import annotations

from typing import Any, Final

import structlog
from redis.exceptions import RedisError

_STORE_ERRORS: Final[tuple[type[BaseException], ...]] = (RedisError, OSError, TimeoutError)


class LaneAssignmentStore:
    """``{prefix}assignment:{job_id}`` -> lane, written once with ``SET NX PX``."""

    def __init__(
        self,
        client: Any,
        *,
        key_prefix: str,
        ttl_ms: int,
        logger: Any | None = None,
    ) -> None:
        if ttl_ms <= 0:
            raise ValueError("ttl_ms must be > 0")
        self._client = client
        self._key_prefix = key_prefix
        self._ttl_ms = ttl_ms
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def key_for(self, job_id: str) -> str:
        return f"{self._key_prefix}assignment:{job_id}"

    async def lookup(self, job_id: str) -> str | None:
        """Return the pinned lane, or ``None`` when unpinned or the store is unreachable."""

        try:
            value = await self._client.get(self.key_for(job_id))
        except _STORE_ERRORS as exc:
            self._logger.warning("lane_assignment_unavailable", job_id=job_id, error=str(exc))
            return None
        return _as_text(value)

    async def pin(self, job_id: str, lane: str) -> str:
        """Pin ``lane`` unless another replica already did; return the winning lane."""

        key = self.key_for(job_id)
        try:
            created = await self._client.set(key, lane, nx=True, px=self._ttl_ms)
            if created:
                return lane
            existing = _as_text(await self._client.get(key))
        except _STORE_ERRORS as exc:
            self._logger.warning("lane_assignment_unavailable", job_id=job_id, error=str(exc))
            return lane
        return existing if existing is not None else lane


def _as_text(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        return value.decode("utf-8")
    return str(value)


__all__ = ["LaneAssignmentStore"]
