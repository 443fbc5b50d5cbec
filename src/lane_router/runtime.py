"""Shared lifecycle for long-running consumer processes (dispatcher and worker).

Connect, declare queues, consume until SIGINT/SIGTERM or the stop token fires,
then drain in-flight handlers and close the broker and Redis connections. A
dropped broker connection is re-established with the startup backoff.
"""

from __future__ import annotations

import asyncio
import signal
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

import structlog

from lane_router.broker.connection import (
    BROKER_CONNECTION_ERRORS,
    Connector,
    connect_session,
    connect_with_retry,
)
from lane_router.broker.consumer import MessageHandler, QueueConsumer
from lane_router.broker.messages import AmqpPublisher, Publisher
from lane_router.broker.topology import declare_queues, primary_queue_plan
from lane_router.config.settings import RouterSettings
from lane_router.errors import BrokerUnavailableError
from lane_router.observability.health import HealthReporter
from lane_router.observability.metrics import MetricsRegistry
from lane_router.store.assignments import LaneAssignmentStore
from lane_router.store.rate_limiter import SlidingWindowRateLimiter
from lane_router.store.redis_client import create_redis_client
from lane_router.utils.concurrency import CancellationToken


@dataclass(slots=True)
class ServiceContext:
    """Resources handed to the handler factory once the broker is reachable."""

    settings: RouterSettings
    tier: str
    redis: Any
    limiter: SlidingWindowRateLimiter
    publisher: Publisher
    metrics: MetricsRegistry

    def assignment_store(self) -> LaneAssignmentStore | None:
        if not self.settings.redis.pin_assignments:
            return None
        return LaneAssignmentStore(
            self.redis,
            key_prefix=self.settings.key_prefix_for(self.tier),
            ttl_ms=self.settings.redis.assignment_ttl_ms,
        )


HandlerFactory = Callable[[ServiceContext], MessageHandler]


def build_limiter(
    settings: RouterSettings,
    redis_client: Any,
    *,
    tier: str,
    metrics: MetricsRegistry | None = None,
) -> SlidingWindowRateLimiter:
    return SlidingWindowRateLimiter(
        redis_client,
        key_prefix=settings.key_prefix_for(tier),
        window_ms=settings.rate_limit.window_ms,
        key_ttl_seconds=settings.redis.key_ttl_seconds,
        metrics=metrics,
    )


def install_signal_handlers(token: CancellationToken) -> None:
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        # Not available on Windows event loops.
        with suppress(NotImplementedError, RuntimeError):
            loop.add_signal_handler(signum, token.cancel)


class _ConsumerService:
    """One consumer process; the broker session and queue consumer are replaced on reconnect."""

    def __init__(
        self,
        settings: RouterSettings,
        *,
        tier: str,
        queue_name: str,
        build_handler: HandlerFactory,
        token: CancellationToken,
        redis: Any,
        limiter: SlidingWindowRateLimiter,
        metrics: MetricsRegistry,
        connector: Connector | None,
        logger: Any,
    ) -> None:
        self._settings = settings
        self._tier = tier
        self._queue = queue_name
        self._build_handler = build_handler
        self._token = token
        self._redis = redis
        self._limiter = limiter
        self._metrics = metrics
        self._connector = connector if connector is not None else connect_session
        self._log = logger
        self._plan = primary_queue_plan(settings)
        self._publisher: AmqpPublisher | None = None
        self._handler: MessageHandler | None = None

    async def run(self) -> None:
        session, consumer = await self._connect()
        reporter = HealthReporter(
            self._metrics,
            interval_seconds=self._settings.observability.health_interval_seconds,
            probes={"redis": self._limiter.health_check},
        )
        health_task = asyncio.create_task(reporter.run(self._token))
        self._log.info(
            "service_started",
            tier=self._tier,
            queue=self._queue,
            instance_id=self._settings.instance_id,
        )
        try:
            while True:
                pump_task = asyncio.create_task(session.pump())
                try:
                    lost = await self._serve(consumer, pump_task)
                finally:
                    await _shutdown_session(session, pump_task, self._log)
                if lost is None or self._token.is_cancelled:
                    return
                session, consumer = await self._connect()
                self._log.info("broker_reconnected", tier=self._tier, queue=self._queue)
        finally:
            health_task.cancel()
            with suppress(asyncio.CancelledError):
                await health_task

    async def _connect(self) -> tuple[Any, QueueConsumer]:
        return await connect_with_retry(
            self._settings.broker.url,
            attempts=self._settings.broker.connect_attempts,
            reconnect_delay_ms=self._settings.broker.reconnect_delay_ms,
            connector=self._open_consuming,
            logger=self._log,
        )

    async def _open_consuming(self, url: str) -> tuple[Any, QueueConsumer]:
        """Connect, declare the topology and start consuming; one retryable attempt."""

        session = await self._connector(url)
        try:
            await session.open(prefetch_count=self._settings.broker.prefetch_count)
            await declare_queues(session, self._plan)
            consumer = QueueConsumer(
                session,
                self._queue,
                self._bind_handler(session),
                drain_timeout_seconds=self._settings.broker.drain_timeout_seconds,
            )
            await consumer.start()
        except BaseException:
            await _close_session(session, self._log)
            raise
        return session, consumer

    def _bind_handler(self, session: Any) -> MessageHandler:
        # Built once so handler state (round-robin cursor) survives reconnects.
        if self._publisher is not None and self._handler is not None:
            self._publisher.bind(session)
            return self._handler
        self._publisher = AmqpPublisher(session)
        self._handler = self._build_handler(
            ServiceContext(
                settings=self._settings,
                tier=self._tier,
                redis=self._redis,
                limiter=self._limiter,
                publisher=self._publisher,
                metrics=self._metrics,
            )
        )
        return self._handler

    async def _serve(
        self, consumer: QueueConsumer, pump_task: asyncio.Task[None]
    ) -> BaseException | None:
        """Wait for a stop request or a broken pump; returns the pump failure, if any."""

        stop_wait = asyncio.create_task(self._token.wait())
        try:
            await asyncio.wait({stop_wait, pump_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_wait.cancel()

        if pump_task.done():
            error = None if pump_task.cancelled() else pump_task.exception()
            lost = error or BrokerUnavailableError("broker event pump stopped")
            self._log.warning(
                "broker_connection_lost",
                tier=self._tier,
                queue=self._queue,
                in_flight=consumer.in_flight,
                error=str(lost),
            )
            return lost

        self._log.info("service_stopping", tier=self._tier, queue=self._queue)
        await consumer.stop()
        return None


async def _shutdown_session(session: Any, pump_task: asyncio.Task[None], log: Any) -> None:
    session.stop_pump()
    # A pump failure has already been reported by the caller.
    await asyncio.gather(pump_task, return_exceptions=True)
    await _close_session(session, log)


async def _close_session(session: Any, log: Any) -> None:
    try:
        await session.close()
    except BROKER_CONNECTION_ERRORS as exc:
        log.warning("broker_close_failed", error=str(exc))


async def run_consumer_service(
    settings: RouterSettings,
    *,
    tier: str,
    queue_name: str,
    build_handler: HandlerFactory,
    stop_token: CancellationToken | None = None,
    redis_client: Any | None = None,
    connector: Connector | None = None,
    metrics: MetricsRegistry | None = None,
    logger: Any | None = None,
) -> None:
    """Run until stopped, reconnecting whenever the broker connection drops.

    Each (re)connect gets ``broker.connect_attempts`` tries with backoff. Raises
    ``BrokerUnavailableError`` once a round of tries is exhausted.
    """

    log = logger if logger is not None else structlog.get_logger(__name__)
    token = stop_token if stop_token is not None else CancellationToken()
    if stop_token is None:
        install_signal_handlers(token)

    registry = metrics if metrics is not None else MetricsRegistry()
    redis = redis_client if redis_client is not None else create_redis_client(settings.redis.url)
    limiter = build_limiter(settings, redis, tier=tier, metrics=registry)
    service = _ConsumerService(
        settings,
        tier=tier,
        queue_name=queue_name,
        build_handler=build_handler,
        token=token,
        redis=redis,
        limiter=limiter,
        metrics=registry,
        connector=connector,
        logger=log,
    )
    try:
        await service.run()
    finally:
        await limiter.close()
        log.info("service_stopped", tier=tier, metrics=registry.snapshot()["counters"])


__all__ = [
    "HandlerFactory",
    "ServiceContext",
    "build_limiter",
    "install_signal_handlers",
    "run_consumer_service",
]
