"""Worker process: consume one lane queue and run the configured processor."""

from __future__ import annotations

from typing import Any

from lane_router.broker.connection import Connector
from lane_router.config.settings import RouterSettings
from lane_router.observability.metrics import MetricsRegistry
from lane_router.runtime import run_consumer_service
from lane_router.utils.concurrency import CancellationToken
from lane_router.worker.consumer import LaneWorker, validate_worker_binding
from lane_router.worker.processors import JobProcessor, load_processor

TIER = "worker"


async def run_worker(
    settings: RouterSettings,
    lane: str | None = None,
    *,
    processor: JobProcessor | None = None,
    stop_token: CancellationToken | None = None,
    redis_client: Any | None = None,
    connector: Connector | None = None,
    metrics: MetricsRegistry | None = None,
) -> None:
    """Validate the lane binding before touching the broker, then consume the lane queue."""

    bound = validate_worker_binding(settings, lane)
    resolved = processor if processor is not None else load_processor(settings.worker.processor)

    await run_consumer_service(
        settings,
        tier=TIER,
        queue_name=bound.queue,
        build_handler=lambda context: LaneWorker(
            bound,
            context.settings,
            context.limiter,
            context.publisher,
            resolved,
            metrics=context.metrics,
        ).handle,
        stop_token=stop_token,
        redis_client=redis_client,
        connector=connector,
        metrics=metrics,
    )


__all__ = ["TIER", "run_worker"]
