"""
lane-router - intake dispatcher.

File: src/lane_router/dispatcher/dispatcher.py
Last updated: 2026-10-18

Purpose
- Move each intake message to exactly one lane queue, or to that lane's delay
  queue when the lane is over budget, or to the dead-letter queue when the
  message cannot be routed.

What should be included in this file
- ``RouteOutcome`` and the ``Dispatcher`` with its single ``route_one`` entrypoint.

Functional requirements
- Ack the intake message only after the outbound publish returned.
- Never requeue onto intake; failures go to the dead-letter queue.
- A delayed job is never re-selected; it resurfaces on its lane queue.
"""

from __future__ import annotations

import random
from enum import StrEnum
from typing import Any

import structlog

from lane_router.broker.messages import InboundMessage, Publisher
from lane_router.config.settings import RouterSettings
from lane_router.domain.models import DeadLetterRecord, FailureStage, JobRecord, Lane, parse_job
from lane_router.observability.logging import correlation_scope
from lane_router.observability.metrics import (
    JOBS_DEAD_LETTERED,
    JOBS_DELAYED,
    JOBS_ROUTED,
    MetricsRegistry,
)
from lane_router.routing.strategies import RandomSource, SelectionState, select_lane
from lane_router.store.assignments import LaneAssignmentStore
from lane_router.store.rate_limiter import SlidingWindowRateLimiter


class RouteOutcome(StrEnum):
    ROUTED = "routed"
    DELAYED = "delayed"
    DEAD_LETTERED = "dead_lettered"


class Dispatcher:
    """Consume-side routing decision for one dispatcher process."""

    def __init__(
        self,
        settings: RouterSettings,
        limiter: SlidingWindowRateLimiter,
        publisher: Publisher,
        *,
        assignments: LaneAssignmentStore | None = None,
        selection_state: SelectionState | None = None,
        rng: RandomSource | None = None,
        metrics: MetricsRegistry | None = None,
        logger: Any | None = None,
    ) -> None:
        self._settings = settings
        self._limiter = limiter
        self._publisher = publisher
        self._assignments = assignments
        self._state = selection_state if selection_state is not None else SelectionState()
        self._rng = rng if rng is not None else random.Random()
        self._metrics = metrics if metrics is not None else MetricsRegistry()
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def metrics(self) -> MetricsRegistry:
        return self._metrics

    async def route_one(self, message: InboundMessage) -> RouteOutcome:
        job: JobRecord | None = None
        lane: Lane | None = None
        try:
            job = parse_job(
                message.body,
                id_field=self._settings.job.id_field,
                lane_hint_field=self._settings.job.lane_hint_field,
            )
            lane = await self.resolve_lane(job)
            with correlation_scope(job_id=job.job_id, lane=lane.name):
                outcome = await self._forward(job, lane)
        except Exception as exc:
            return await self._dead_letter(message, exc, job=job, lane=lane)

        await message.ack()
        return outcome

    async def resolve_lane(self, job: JobRecord) -> Lane:
        """Pinned lane for the job id if one exists, else a fresh selection that gets pinned."""

        lanes = self._settings.lanes
        default = self._settings.strategy.default_lane
        if self._assignments is not None:
            pinned = await self._assignments.lookup(job.job_id)
            if pinned is not None and pinned in lanes:
                return lanes.require(pinned)

        chosen = select_lane(job, self._settings.strategy, self._state, rng=self._rng)
        if self._assignments is not None:
            chosen = await self._assignments.pin(job.job_id, chosen)
        return lanes.resolve(chosen, default)

    async def _forward(self, job: JobRecord, lane: Lane) -> RouteOutcome:
        if await self._admit(lane):
            await self._publisher.publish(lane.queue, job.body)
            self._metrics.inc(JOBS_ROUTED, labels={"lane": lane.name})
            self._logger.info("job_routed", job_id=job.job_id, lane=lane.name, queue=lane.queue)
            return RouteOutcome.ROUTED

        delay_ms = self._settings.rate_limit.delay_ms
        delay_queue = lane.delay_queue(delay_ms)
        await self._publisher.ensure_delay_queue(
            delay_queue, lane_queue=lane.queue, delay_ms=delay_ms
        )
        await self._publisher.publish(delay_queue, job.body)
        self._metrics.inc(JOBS_DELAYED, labels={"lane": lane.name})
        self._logger.info(
            "job_delayed",
            job_id=job.job_id,
            lane=lane.name,
            queue=delay_queue,
            delay_ms=delay_ms,
        )
        return RouteOutcome.DELAYED

    async def _admit(self, lane: Lane) -> bool:
        if not self._settings.rate_limit.enabled:
            return True
        return await self._limiter.permit(lane.name, lane.capacity_per_minute)

    async def _dead_letter(
        self,
        message: InboundMessage,
        exc: Exception,
        *,
        job: JobRecord | None,
        lane: Lane | None,
    ) -> RouteOutcome:
        record = DeadLetterRecord.from_exception(
            message.body,
            exc,
            stage=FailureStage.DISPATCHER,
            lane=lane.name if lane is not None else None,
            instance_id=self._settings.instance_id,
        )
        try:
            await self._publisher.publish(
                self._settings.queues.dead_letter, record.body, headers=record.headers()
            )
        except Exception:
            # Left unacked; the broker redelivers once the channel is recycled.
            self._logger.exception(
                "dead_letter_publish_failed",
                job_id=job.job_id if job is not None else None,
                error_type=record.error_type,
            )
            raise

        await message.ack()
        self._metrics.inc(JOBS_DEAD_LETTERED, labels={"stage": str(FailureStage.DISPATCHER)})
        self._logger.warning(
            "job_dead_lettered",
            job_id=job.job_id if job is not None else None,
            lane=record.lane,
            error_type=record.error_type,
            error=record.error_message,
        )
        return RouteOutcome.DEAD_LETTERED


__all__ = ["Dispatcher", "RouteOutcome"]
