"""Narrow message and publisher interfaces the routing core depends on."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Final, Protocol

import structlog

from lane_router.broker.topology import delay_queue_arguments

CONTENT_TYPE_JSON: Final[str] = "application/json"


class InboundMessage(Protocol):
    """What a handler needs from a delivery: the raw body and manual settlement."""

    body: bytes

    @property
    def redelivered(self) -> bool | None: ...

    async def ack(self, multiple: bool = False) -> None: ...

    async def nack(self, multiple: bool = False, requeue: bool = True) -> None: ...


class Publisher(Protocol):
    async def publish(
        self,
        queue: str,
        body: bytes,
        *,
        headers: Mapping[str, Any] | None = None,
    ) -> None: ...

    async def ensure_delay_queue(self, name: str, *, lane_queue: str, delay_ms: int) -> None: ...


class AmqpPublisher:
    """Publish persistent JSON messages to named queues through the default exchange.

    The session runs with publisher confirms, so ``publish`` returns only after
    the broker has taken the message.
    """

    def __init__(self, session: Any, *, logger: Any | None = None) -> None:
        self._session = session
        self._declared_delay_queues: set[str] = set()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    def bind(self, session: Any) -> None:
        """Switch to a new broker session after a reconnect; delay queues are declared again."""

        self._session = session
        self._declared_delay_queues.clear()

    async def publish(
        self,
        queue: str,
        body: bytes,
        *,
        headers: Mapping[str, Any] | None = None,
    ) -> None:
        await self._session.publish(queue, body, headers=headers, content_type=CONTENT_TYPE_JSON)

    async def ensure_delay_queue(self, name: str, *, lane_queue: str, delay_ms: int) -> None:
        if name in self._declared_delay_queues:
            return
        await self._session.declare_queue(
            name, arguments=delay_queue_arguments(lane_queue, delay_ms)
        )
        self._declared_delay_queues.add(name)
        self._logger.info(
            "delay_queue_declared", queue=name, target_queue=lane_queue, delay_ms=delay_ms
        )


__all__ = ["AmqpPublisher", "CONTENT_TYPE_JSON", "InboundMessage", "Publisher"]
