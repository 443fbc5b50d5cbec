"""Shared fakes for Redis-backed store tests."""

from __future__ import annotations

from typing import Any

from fakeredis import FakeAsyncRedis, FakeServer
from redis.exceptions import ConnectionError as RedisConnectionError


class FakeClock:
    """Wall clock in seconds that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, milliseconds: int) -> None:
        self.now += milliseconds / 1000


def fake_redis(server: FakeServer | None = None) -> FakeAsyncRedis:
    return FakeAsyncRedis(server=server or FakeServer(), decode_responses=True)


class _BrokenPipeline:
    async def __aenter__(self) -> _BrokenPipeline:
        raise RedisConnectionError("redis is down")

    async def __aexit__(self, *exc: object) -> None:
        return None


class BrokenRedis:
    """Client whose every command fails as if the server were unreachable."""

    def __init__(self) -> None:
        self.closed = False

    def register_script(self, script: str) -> Any:
        async def run(*args: object, **kwargs: object) -> Any:
            raise RedisConnectionError("redis is down")

        return run

    def pipeline(self, transaction: bool = True) -> _BrokenPipeline:
        return _BrokenPipeline()

    async def get(self, key: str) -> Any:
        raise RedisConnectionError("redis is down")

    async def set(self, *args: object, **kwargs: object) -> Any:
        raise RedisConnectionError("redis is down")

    async def delete(self, key: str) -> int:
        raise RedisConnectionError("redis is down")

    async def ping(self) -> bool:
        raise RedisConnectionError("redis is down")

    async def aclose(self) -> None:
        self.closed = True
