"""Manual-ack queue consumer that drains in-flight handlers on shutdown."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from lane_router.broker.messages import InboundMessage
from lane_router.utils.concurrency import InFlightTracker

MessageHandler = Callable[[InboundMessage], Awaitable[object]]


class QueueConsumer:
    """Feed one queue into ``handler``; each handler owns the ack/nack of its message."""

    def __init__(
        self,
        session: Any,
        queue: str,
        handler: MessageHandler,
        *,
        drain_timeout_seconds: float,
        tracker: InFlightTracker | None = None,
        logger: Any | None = None,
    ) -> None:
        self._session = session
        self._queue = queue
        self._handler = handler
        self._drain_timeout = drain_timeout_seconds
        self._tracker = tracker if tracker is not None else InFlightTracker()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._consumer_tag: str | None = None

    @property
    def queue(self) -> str:
        return self._queue

    @property
    def in_flight(self) -> int:
        return self._tracker.active

    @property
    def running(self) -> bool:
        return self._consumer_tag is not None

    async def start(self) -> None:
        if self._consumer_tag is not None:
            return
        self._consumer_tag = await self._session.consume(self._queue, self._on_message)
        self._logger.info("consumer_started", queue=self._queue)

    async def stop(self) -> bool:
        """Stop new deliveries, then wait for running handlers. ``False`` if the drain timed out."""

        if self._consumer_tag is not None:
            tag, self._consumer_tag = self._consumer_tag, None
            await self._session.cancel(tag)
        drained = await self._tracker.wait_idle(self._drain_timeout)
        if drained:
            self._logger.info("consumer_drained", queue=self._queue)
        else:
            self._logger.warning(
                "consumer_drain_timeout",
                queue=self._queue,
                in_flight=self._tracker.active,
                timeout_seconds=self._drain_timeout,
            )
        return drained

    async def _on_message(self, message: InboundMessage) -> None:
        async with self._tracker.track():
            try:
                await self._handler(message)
            except Exception:
                # Unacked messages are redelivered when the channel closes.
                self._logger.exception("message_handler_crashed", queue=self._queue)


__all__ = ["MessageHandler", "QueueConsumer"]
