"""In-memory broker double for end-to-end routing tests.

``FakeBroker`` models the parts of RabbitMQ the router relies on: durable queues
reached through the default exchange, manual acknowledgement, requeue on
``nack``, and TTL delay queues that dead-letter back onto their lane queue.
Expiry is driven by the test through :meth:`FakeBroker.expire`.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from kombu.exceptions import OperationalError


@dataclass(slots=True)
class StoredMessage:
    body: bytes
    headers: dict[str, Any] = field(default_factory=dict)
    redelivered: bool = False


class FakeBroker:
    def __init__(self) -> None:
        self.queues: dict[str, deque[StoredMessage]] = {}
        self.arguments: dict[str, dict[str, Any]] = {}
        self.unroutable: list[tuple[str, bytes]] = []
        self.acked: list[bytes] = []
        self.rejected: list[tuple[bytes, bool]] = []
        self.sessions: list[FakeBrokerSession] = []
        self.fail_connects = 0
        self.fail_opens = 0
        self.connect_calls = 0

    def declare(self, name: str, arguments: Mapping[str, Any] | None) -> None:
        wanted = dict(arguments or {})
        existing = self.arguments.get(name)
        if existing is not None and existing != wanted:
            raise OSError(f"PRECONDITION_FAILED - inequivalent arg for queue {name!r}")
        self.arguments[name] = wanted
        self.queues.setdefault(name, deque())

    def put(self, queue: str, body: bytes, headers: Mapping[str, Any] | None = None) -> None:
        if queue not in self.queues:
            # The default exchange silently drops messages for undeclared queues.
            self.unroutable.append((queue, body))
            return
        self.queues[queue].append(StoredMessage(body, dict(headers or {})))

    def expire(self, queue: str) -> int:
        """Expire every message in a TTL queue onto its dead-letter routing key."""

        target = self.arguments[queue]["x-dead-letter-routing-key"]
        moved = 0
        while self.queues[queue]:
            stored = self.queues[queue].popleft()
            self.put(target, stored.body, stored.headers)
            moved += 1
        return moved

    def bodies(self, queue: str) -> list[bytes]:
        return [stored.body for stored in self.queues.get(queue, ())]

    def headers(self, queue: str) -> list[dict[str, Any]]:
        return [stored.headers for stored in self.queues.get(queue, ())]

    def get(self, queue: str) -> FakeDelivery | None:
        """Basic-get style pull for tests that drive handlers directly."""

        if not self.queues.get(queue):
            return None
        return FakeDelivery(self, queue, self.queues[queue].popleft())

    async def connect(self, url: str) -> FakeBrokerSession:
        self.connect_calls += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise OSError(f"connection refused: {url}")
        session = FakeBrokerSession(self)
        self.sessions.append(session)
        return session


class FakeDelivery:
    def __init__(self, broker: FakeBroker, queue: str, stored: StoredMessage) -> None:
        self._broker = broker
        self._queue = queue
        self._stored = stored
        self.body = stored.body
        self.settled = False

    @property
    def redelivered(self) -> bool | None:
        return self._stored.redelivered

    async def ack(self, multiple: bool = False) -> None:
        self._settle()
        self._broker.acked.append(self.body)

    async def nack(self, multiple: bool = False, requeue: bool = True) -> None:
        self._settle()
        self._broker.rejected.append((self.body, requeue))
        if requeue:
            self._stored.redelivered = True
            self._broker.queues[self._queue].appendleft(self._stored)

    def _settle(self) -> None:
        if self.settled:
            raise RuntimeError("delivery already acknowledged")
        self.settled = True


DeliveryCallback = Callable[[FakeDelivery], Awaitable[object]]


class FakeBrokerSession:
    """Same surface as ``BrokerSession``; deliveries are pulled from ``FakeBroker``."""

    def __init__(self, broker: FakeBroker, *, poll_seconds: float = 0.001) -> None:
        self._broker = broker
        self._poll_seconds = poll_seconds
        self._consumers: dict[str, DeliveryCallback] = {}
        self._tasks: set[asyncio.Task[object]] = set()
        self.prefetch_count: int | None = None
        self.pump_error: BaseException | None = None
        self.cancelled: list[str] = []
        self.pump_stopped = False
        self.closed = False

    async def open(self, *, prefetch_count: int) -> None:
        if self._broker.fail_opens > 0:
            self._broker.fail_opens -= 1
            raise OperationalError("connection dropped while opening channel")
        self.prefetch_count = prefetch_count

    async def declare_queue(self, name: str, *, arguments: Mapping[str, Any] | None = None) -> None:
        self._require_open()
        self._broker.declare(name, arguments)

    async def publish(
        self,
        queue: str,
        body: bytes,
        *,
        headers: Mapping[str, Any] | None = None,
        content_type: str,
    ) -> None:
        self._require_open()
        self._broker.put(queue, body, headers)

    async def consume(self, queue: str, callback: DeliveryCallback) -> str:
        self._require_open()
        self._consumers[queue] = callback
        return queue

    async def cancel(self, handle: str) -> None:
        if self._consumers.pop(handle, None) is not None:
            self.cancelled.append(handle)

    async def pump(self) -> None:
        while not self.pump_stopped:
            if self.pump_error is not None:
                raise self.pump_error
            for queue, callback in list(self._consumers.items()):
                if len(self._tasks) >= (self.prefetch_count or 1):
                    break
                delivery = self._broker.get(queue)
                if delivery is not None:
                    task = asyncio.ensure_future(callback(delivery))
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            await asyncio.sleep(self._poll_seconds)

    def consuming(self, queue: str) -> bool:
        return queue in self._consumers

    def stop_pump(self) -> None:
        self.pump_stopped = True

    async def close(self) -> None:
        self.pump_stopped = True
        self.closed = True

    def _require_open(self) -> None:
        if self.prefetch_count is None or self.closed:
            raise RuntimeError("broker session is not open")


__all__ = [
    "FakeBroker",
    "FakeBrokerSession",
    "FakeDelivery",
    "StoredMessage",
]
