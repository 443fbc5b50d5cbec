"""Shared fakes and builders for dispatcher and worker tests."""

from __future__ import annotations

import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from fakeredis import FakeAsyncRedis, FakeServer

from lane_router.config.schema import default_config, merge_config
from lane_router.config.settings import RouterSettings


@dataclass(frozen=True, slots=True)
class Published:
    queue: str
    body: bytes
    headers: Mapping[str, Any] | None


@dataclass(slots=True)
class EventLog:
    """Ordered record of publishes and acknowledgements across fakes."""

    events: list[str] = field(default_factory=list)

    def index(self, event: str) -> int:
        return self.events.index(event)


class FakeMessage:
    def __init__(
        self,
        body: bytes | Mapping[str, Any],
        *,
        log: EventLog | None = None,
        redelivered: bool = False,
    ) -> None:
        self.body = body if isinstance(body, bytes) else json.dumps(dict(body)).encode("utf-8")
        self.log = log if log is not None else EventLog()
        self._redelivered = redelivered
        self.acked = False
        self.nacked = False
        self.requeue: bool | None = None

    @property
    def redelivered(self) -> bool | None:
        return self._redelivered

    async def ack(self, multiple: bool = False) -> None:
        self.acked = True
        self.log.events.append("ack")

    async def nack(self, multiple: bool = False, requeue: bool = True) -> None:
        self.nacked = True
        self.requeue = requeue
        self.log.events.append(f"nack:requeue={requeue}")


class FakePublisher:
    def __init__(self, *, log: EventLog | None = None, fail_queues: set[str] | None = None) -> None:
        self.log = log if log is not None else EventLog()
        self.fail_queues = set(fail_queues or ())
        self.published: list[Published] = []
        self.delay_queues: dict[str, tuple[str, int]] = {}

    async def publish(
        self,
        queue: str,
        body: bytes,
        *,
        headers: Mapping[str, Any] | None = None,
    ) -> None:
        if queue in self.fail_queues:
            raise ConnectionError(f"publish to {queue} failed")
        self.published.append(Published(queue, body, dict(headers) if headers else None))
        self.log.events.append(f"publish:{queue}")

    async def ensure_delay_queue(self, name: str, *, lane_queue: str, delay_ms: int) -> None:
        self.delay_queues[name] = (lane_queue, delay_ms)

    def to(self, queue: str) -> list[Published]:
        return [item for item in self.published if item.queue == queue]


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, milliseconds: int) -> None:
        self.now += milliseconds / 1000


def fake_redis(server: FakeServer | None = None) -> FakeAsyncRedis:
    return FakeAsyncRedis(server=server or FakeServer(), decode_responses=True)


def build_settings(**sections: Mapping[str, Any]) -> RouterSettings:
    """Default settings with ``sections`` merged on top (lists replace)."""

    return RouterSettings.from_config(merge_config(default_config(), sections))
