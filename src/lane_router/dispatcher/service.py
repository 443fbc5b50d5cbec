"""Dispatcher process: consume the intake queue and route every job."""

from __future__ import annotations

from typing import Any

from lane_router.broker.connection import Connector
from lane_router.config.settings import RouterSettings
from lane_router.dispatcher.dispatcher import Dispatcher
from lane_router.observability.metrics import MetricsRegistry
from lane_router.runtime import ServiceContext, run_consumer_service
from lane_router.utils.concurrency import CancellationToken

TIER = "dispatcher"


def build_dispatcher(context: ServiceContext) -> Dispatcher:
    return Dispatcher(
        context.settings,
        context.limiter,
        context.publisher,
        assignments=context.assignment_store(),
        metrics=context.metrics,
    )


async def run_dispatcher(
    settings: RouterSettings,
    *,
    stop_token: CancellationToken | None = None,
    redis_client: Any | None = None,
    connector: Connector | None = None,
    metrics: MetricsRegistry | None = None,
) -> None:
    await run_consumer_service(
        settings,
        tier=TIER,
        queue_name=settings.queues.intake,
        build_handler=lambda context: build_dispatcher(context).route_one,
        stop_token=stop_token,
        redis_client=redis_client,
        connector=connector,
        metrics=metrics,
    )


__all__ = ["TIER", "build_dispatcher", "run_dispatcher"]
