"""
lane-router - AMQP session over a kombu connection.

File: src/lane_router/broker/session.py
Last updated: 2026-10-18

Purpose
- Give the asyncio routing core a narrow async view of one blocking kombu connection.

What should be included in this file
- ``open_kombu_connection`` with publisher confirms enabled.
- ``BrokerSession``: declare, publish, consume, cancel, event pump and close.
- ``KombuDelivery``: ``InboundMessage`` adapter whose ack/nack run on the session thread.

Functional requirements
- kombu and py-amqp objects are not thread-safe: every call on the connection, its
  channel, producer, consumers and messages runs on one dedicated worker thread.
- Deliveries are handed back to the event loop as tasks; the pump keeps draining
  events after consumers are cancelled so in-flight handlers can still ack.
"""

from __future__ import annotations

import asyncio
import functools
from collections.abc import Awaitable, Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Final, TypeVar

import kombu
import structlog

T = TypeVar("T")

DRAIN_POLL_SECONDS: Final[float] = 0.1
PERSISTENT_DELIVERY: Final[int] = 2

DeliveryCallback = Callable[["KombuDelivery"], Awaitable[object]]


def open_kombu_connection(url: str, *, connect_timeout: float = 10.0) -> kombu.Connection:
    """Connect once (no internal retries); raises ``kombu.exceptions.OperationalError``."""

    connection = kombu.Connection(
        url,
        connect_timeout=connect_timeout,
        transport_options={"confirm_publish": True},
    )
    try:
        connection.ensure_connection(max_retries=0)
    except BaseException:
        connection.release()
        raise
    return connection


class KombuDelivery:
    """One received message. ``nack`` maps onto ``basic.reject``."""

    __slots__ = ("_message", "_session", "body")

    def __init__(self, message: Any, session: BrokerSession) -> None:
        self._message = message
        self._session = session
        self.body: bytes = bytes(message.body)

    @property
    def redelivered(self) -> bool | None:
        info = self._message.delivery_info or {}
        return info.get("redelivered")

    async def ack(self, multiple: bool = False) -> None:
        await self._session.call(self._message.ack, multiple=multiple)

    async def nack(self, multiple: bool = False, requeue: bool = True) -> None:
        await self._session.call(self._message.reject, requeue=requeue)


class BrokerSession:
    """Single channel on a kombu connection, driven from asyncio."""

    def __init__(
        self,
        connection: kombu.Connection,
        *,
        poll_seconds: float = DRAIN_POLL_SECONDS,
        logger: Any | None = None,
    ) -> None:
        self._connection = connection
        self._poll_seconds = poll_seconds
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="lane-router-amqp")
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._channel: Any | None = None
        self._producer: kombu.Producer | None = None
        self._consumers: dict[str, kombu.Consumer] = {}
        self._tasks: set[asyncio.Task[object]] = set()
        self._pump_stopped = False
        self._closed = False

    async def call(self, fn: Callable[..., T], /, *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` on the session thread."""

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args, **kwargs))

    async def open(self, *, prefetch_count: int) -> None:
        def _open() -> None:
            channel = self._connection.channel()
            channel.basic_qos(0, prefetch_count, False)
            self._channel = channel
            self._producer = kombu.Producer(channel)

        await self.call(_open)

    async def declare_queue(self, name: str, *, arguments: Mapping[str, Any] | None = None) -> None:
        def _declare() -> None:
            queue = kombu.Queue(
                name,
                routing_key=name,
                durable=True,
                queue_arguments=dict(arguments) if arguments else None,
            )
            queue.declare(channel=self._require_channel())

        await self.call(_declare)

    async def publish(
        self,
        queue: str,
        body: bytes,
        *,
        headers: Mapping[str, Any] | None = None,
        content_type: str,
    ) -> None:
        """Publish through the default exchange; returns once the broker confirms."""

        def _publish() -> None:
            if self._producer is None:
                raise RuntimeError("broker session is not open")
            self._producer.publish(
                body,
                routing_key=queue,
                exchange="",
                headers=dict(headers) if headers else None,
                content_type=content_type,
                content_encoding="utf-8",
                delivery_mode=PERSISTENT_DELIVERY,
            )

        await self.call(_publish)

    async def consume(self, queue: str, callback: DeliveryCallback) -> str:
        """Start manual-ack consumption of ``queue``; returns the handle for :meth:`cancel`."""

        loop = asyncio.get_running_loop()

        def on_message(message: Any) -> None:
            # Runs on the session thread inside drain_events.
            loop.call_soon_threadsafe(self._spawn, callback, KombuDelivery(message, self))

        def _start() -> kombu.Consumer:
            consumer = kombu.Consumer(
                self._require_channel(),
                queues=[kombu.Queue(queue, no_declare=True)],
                on_message=on_message,
                no_ack=False,
            )
            consumer.consume()
            return consumer

        self._consumers[queue] = await self.call(_start)
        return queue

    async def cancel(self, handle: str) -> None:
        consumer = self._consumers.pop(handle, None)
        if consumer is not None:
            await self.call(consumer.cancel)

    async def pump(self) -> None:
        """Drain broker events until :meth:`stop_pump`; connection errors propagate."""

        while not self._pump_stopped:
            await self.call(self._drain_once)

    def stop_pump(self) -> None:
        self._pump_stopped = True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._pump_stopped = True
        try:
            await self.call(self._connection.release)
        finally:
            self._executor.shutdown(wait=False)
        self._logger.info("broker_session_closed", pending_tasks=len(self._tasks))

    def _drain_once(self) -> None:
        try:
            self._connection.drain_events(timeout=self._poll_seconds)
        except TimeoutError:
            return

    def _spawn(self, callback: DeliveryCallback, delivery: KombuDelivery) -> None:
        task = asyncio.ensure_future(callback(delivery))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _require_channel(self) -> Any:
        if self._channel is None:
            raise RuntimeError("broker session is not open")
        return self._channel


__all__ = [
    "BrokerSession",
    "DRAIN_POLL_SECONDS",
    "DeliveryCallback",
    "KombuDelivery",
    "open_kombu_connection",
]
