"""
lane-router - lane worker consumption and safety net.

File: src/lane_router/worker/consumer.py
Last updated: 2026-10-18

Purpose
- Consume one lane queue, re-check the lane budget in the worker namespace and
  run the configured processor.

What should be included in this file
- ``validate_worker_binding`` run once at startup.
- ``WorkerOutcome`` and ``LaneWorker.handle``.

Functional requirements
- Over budget: ``nack(requeue=True)``, nothing is dead-lettered.
- Processor success: publish the result, then ack.
- Processor failure: publish a dead-letter envelope, then ``nack(requeue=False)``.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from enum import StrEnum
from typing import Any

import structlog

from lane_router.broker.messages import InboundMessage, Publisher
from lane_router.config.settings import RouterSettings
from lane_router.domain.models import DeadLetterRecord, FailureStage, JobRecord, Lane, parse_job
from lane_router.errors import MalformedJobError, WorkerBindingError
from lane_router.observability.logging import correlation_scope
from lane_router.observability.metrics import (
    JOB_PROCESSING_MS,
    JOBS_COMPLETED,
    JOBS_DEAD_LETTERED,
    JOBS_REQUEUED,
    MetricsRegistry,
)
from lane_router.routing.strategies import StrategyKind
from lane_router.store.rate_limiter import SlidingWindowRateLimiter
from lane_router.worker.processors import JobProcessor, ProcessorResult

HEADER_LANE = "x-lane"
HEADER_JOB_ID = "x-job-id"


class WorkerOutcome(StrEnum):
    COMPLETED = "completed"
    REQUEUED = "requeued"
    DEAD_LETTERED = "dead_lettered"


def validate_worker_binding(settings: RouterSettings, lane: str | None = None) -> Lane:
    """Return the single lane this worker serves or raise :class:`WorkerBindingError`."""

    strategy = settings.strategy
    if strategy.kind is not StrategyKind.FIXED:
        raise WorkerBindingError(
            f"worker requires the 'fixed' strategy, configured strategy is {str(strategy.kind)!r}"
        )

    candidates = {
        item.strip().lower()
        for item in (lane, settings.worker.lane, strategy.fixed_lane)
        if item is not None and item.strip()
    }
    if not candidates:
        raise WorkerBindingError("worker lane is not set; pass --lane or set worker.lane")
    if len(candidates) > 1:
        raise WorkerBindingError(
            f"worker must be bound to exactly one lane, got {', '.join(sorted(candidates))}"
        )

    (bound,) = candidates
    resolved = settings.lanes.get(bound)
    if resolved is None:
        known = ", ".join(settings.lanes.names)
        raise WorkerBindingError(f"unknown worker lane {bound!r}; known lanes: {known}")
    return resolved


class LaneWorker:
    """Handle deliveries from one lane queue."""

    def __init__(
        self,
        lane: Lane,
        settings: RouterSettings,
        limiter: SlidingWindowRateLimiter,
        publisher: Publisher,
        processor: JobProcessor,
        *,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._lane = lane
        self._settings = settings
        self._limiter = limiter
        self._publisher = publisher
        self._processor = processor
        self._metrics = metrics if metrics is not None else MetricsRegistry()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)
        self._timer = timer

    @property
    def lane(self) -> Lane:
        return self._lane

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    async def handle(self, message: InboundMessage) -> WorkerOutcome:
        try:
            job = parse_job(
                message.body,
                id_field=self._settings.job.id_field,
                lane_hint_field=self._settings.job.lane_hint_field,
            )
        except MalformedJobError as exc:
            return await self._dead_letter(message, exc, job=None)

        with correlation_scope(job_id=job.job_id, lane=self._lane.name):
            if not await self._admit():
                await message.nack(requeue=True)
                self._metrics.inc(JOBS_REQUEUED, labels={"lane": self._lane.name})
                self._logger.info(
                    "job_requeued_rate_limited", job_id=job.job_id, lane=self._lane.name
                )
                return WorkerOutcome.REQUEUED

            started = self._timer()
            try:
                result = await self._processor(job, self._lane)
                await self._publisher.publish(
                    self._settings.queues.results,
                    _encode_result(result),
                    headers={HEADER_LANE: self._lane.name, HEADER_JOB_ID: job.job_id},
                )
            except Exception as exc:
                return await self._dead_letter(message, exc, job=job)
            finally:
                elapsed_ms = (self._timer() - started) * 1000
                self._metrics.observe(
                    JOB_PROCESSING_MS, elapsed_ms, labels={"lane": self._lane.name}
                )

            await message.ack()
            self._metrics.inc(JOBS_COMPLETED, labels={"lane": self._lane.name})
            self._logger.info(
                "job_completed",
                job_id=job.job_id,
                lane=self._lane.name,
                duration_ms=round(elapsed_ms, 3),
            )
            return WorkerOutcome.COMPLETED

    async def _admit(self) -> bool:
        if not self._settings.rate_limit.enabled:
            return True
        return await self._limiter.permit(self._lane.name, self._lane.capacity_per_minute)

    async def _dead_letter(
        self,
        message: InboundMessage,
        exc: Exception,
        *,
        job: JobRecord | None,
    ) -> WorkerOutcome:
        record = DeadLetterRecord.from_exception(
            message.body,
            exc,
            stage=FailureStage.WORKER,
            lane=self._lane.name,
            instance_id=self._settings.instance_id,
        )
        await self._publisher.publish(
            self._settings.queues.dead_letter, record.envelope(), headers=record.headers()
        )
        await message.nack(requeue=False)
        self._metrics.inc(JOBS_DEAD_LETTERED, labels={"stage": str(FailureStage.WORKER)})
        self._logger.warning(
            "job_dead_lettered",
            job_id=job.job_id if job is not None else None,
            lane=self._lane.name,
            error_type=record.error_type,
            error=record.error_message,
        )
        return WorkerOutcome.DEAD_LETTERED


def _encode_result(result: ProcessorResult) -> bytes:
    if isinstance(result, bytes):
        return result
    return json.dumps(dict(result), sort_keys=True, separators=(",", ":")).encode("utf-8")


__all__ = ["HEADER_JOB_ID", "HEADER_LANE", "LaneWorker", "WorkerOutcome", "validate_worker_binding"]
