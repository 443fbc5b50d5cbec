"""Lane worker consumption, worker-tier rate check and dead-letter safety net."""

from __future__ import annotations

import json
from dataclasses import replace
from typing import Any

import pytest

from lane_router.config.settings import RouterSettings
from lane_router.constants import HEADER_ERROR_TYPE
from lane_router.domain.models import JobRecord, Lane
from lane_router.errors import WorkerBindingError
from lane_router.observability.metrics import (
    JOB_PROCESSING_MS,
    JOBS_COMPLETED,
    JOBS_DEAD_LETTERED,
    JOBS_REQUEUED,
)
from lane_router.store.rate_limiter import SlidingWindowRateLimiter
from lane_router.worker.consumer import LaneWorker, WorkerOutcome, validate_worker_binding
from lane_router.worker.processors import echo_processor

from . import EventLog, FakeClock, FakeMessage, FakePublisher, build_settings, fake_redis


async def _fails(job: JobRecord, lane: Lane) -> dict[str, Any]:
    raise RuntimeError(f"provider rejected {job.job_id}")


def _worker(
    settings: RouterSettings,
    lane: str,
    *,
    publisher: FakePublisher,
    limiter: SlidingWindowRateLimiter | None = None,
    processor: Any = echo_processor,
) -> LaneWorker:
    if limiter is None:
        limiter = SlidingWindowRateLimiter(
            fake_redis(), key_prefix=settings.redis.worker_key_prefix, clock=FakeClock()
        )
    return LaneWorker(settings.lanes.require(lane), settings, limiter, publisher, processor)


async def test_exhausted_worker_budget_requeues_without_dead_letter() -> None:
    settings = build_settings(lanes={"openai": {"capacity_per_minute": 1}})
    limiter = SlidingWindowRateLimiter(
        fake_redis(), key_prefix=settings.redis.worker_key_prefix, clock=FakeClock()
    )
    assert await limiter.permit("openai", 1)
    publisher = FakePublisher()
    worker = _worker(settings, "openai", publisher=publisher, limiter=limiter)
    message = FakeMessage({"id": "job-1"})

    outcome = await worker.handle(message)

    assert outcome is WorkerOutcome.REQUEUED
    assert message.nacked is True
    assert message.requeue is True
    assert message.acked is False
    assert publisher.published == []
    assert worker.metrics.get_counter(JOBS_REQUEUED, labels={"lane": "openai"}) == 1.0


async def test_success_publishes_result_then_acks() -> None:
    log = EventLog()
    publisher = FakePublisher(log=log)
    worker = _worker(build_settings(), "gemini", publisher=publisher)
    message = FakeMessage({"id": "job-3", "text": "hello"}, log=log)

    assert await worker.handle(message) is WorkerOutcome.COMPLETED

    assert log.events == ["publish:analysis-results", "ack"]
    (result,) = publisher.published
    assert result.headers == {"x-lane": "gemini", "x-job-id": "job-3"}
    payload = json.loads(result.body)
    assert payload["job_id"] == "job-3"
    assert payload["lane"] == "gemini"
    assert payload["payload"] == {"id": "job-3", "text": "hello"}
    assert worker.metrics.get_counter(JOBS_COMPLETED, labels={"lane": "gemini"}) == 1.0
    timing = worker.metrics.get_timing(JOB_PROCESSING_MS, labels={"lane": "gemini"})
    assert timing is not None and timing["count"] == 1


async def test_bytes_results_are_published_unchanged() -> None:
    async def raw(job: JobRecord, lane: Lane) -> bytes:
        return b'{"ok":true}'

    publisher = FakePublisher()
    worker = _worker(build_settings(), "openai", publisher=publisher, processor=raw)

    await worker.handle(FakeMessage({"id": "job-4"}))

    assert publisher.published[0].body == b'{"ok":true}'


async def test_processor_failure_dead_letters_then_nacks_without_requeue() -> None:
    log = EventLog()
    publisher = FakePublisher(log=log)
    worker = _worker(build_settings(), "anthropic", publisher=publisher, processor=_fails)
    message = FakeMessage({"id": "job-5", "text": "x"}, log=log)

    assert await worker.handle(message) is WorkerOutcome.DEAD_LETTERED

    assert log.events == ["publish:analysis-dlq", "nack:requeue=False"]
    (dead,) = publisher.published
    envelope = json.loads(dead.body)
    assert envelope["job"] == {"id": "job-5", "text": "x"}
    assert envelope["error"]["message"] == "provider rejected job-5"
    assert envelope["error"]["type"] == "RuntimeError"
    assert envelope["error"]["lane"] == "anthropic"
    assert envelope["error"]["stage"] == "worker"
    assert dead.headers is not None
    assert dead.headers["x-error-stage"] == "worker"
    assert worker.metrics.get_counter(JOBS_DEAD_LETTERED, labels={"stage": "worker"}) == 1.0


async def test_result_publish_failure_is_dead_lettered() -> None:
    publisher = FakePublisher(fail_queues={"analysis-results"})
    worker = _worker(build_settings(), "openai", publisher=publisher)
    message = FakeMessage({"id": "job-6"})

    assert await worker.handle(message) is WorkerOutcome.DEAD_LETTERED
    assert [item.queue for item in publisher.published] == ["analysis-dlq"]
    assert message.requeue is False


async def test_malformed_message_is_dead_lettered_without_rate_check() -> None:
    settings = build_settings(lanes={"openai": {"capacity_per_minute": 0}})
    publisher = FakePublisher()
    worker = _worker(settings, "openai", publisher=publisher)
    message = FakeMessage(b"\xff\xfe")

    assert await worker.handle(message) is WorkerOutcome.DEAD_LETTERED

    envelope = json.loads(publisher.published[0].body)
    assert envelope["error"]["type"] == "MalformedJobError"
    assert isinstance(envelope["job"], str)
    assert message.requeue is False


async def test_deeply_nested_body_is_dead_lettered_instead_of_left_unsettled() -> None:
    publisher = FakePublisher()
    worker = _worker(build_settings(), "openai", publisher=publisher)
    message = FakeMessage(b"[" * 200_000)

    assert await worker.handle(message) is WorkerOutcome.DEAD_LETTERED
    assert [item.queue for item in publisher.published] == ["analysis-dlq"]
    assert publisher.published[0].headers[HEADER_ERROR_TYPE] == "MalformedJobError"
    assert message.requeue is False


def test_binding_requires_fixed_strategy() -> None:
    settings = build_settings(strategy={"name": "round_robin"})

    with pytest.raises(WorkerBindingError, match="fixed"):
        validate_worker_binding(settings, "openai")


def test_binding_resolves_requested_lane() -> None:
    settings = build_settings(strategy={"name": "fixed", "fixed_lane": "gemini"})

    lane = validate_worker_binding(settings, "Gemini")

    assert lane.name == "gemini"
    assert lane.queue == "gemini-analysis-queue"


def test_binding_falls_back_to_configured_lane() -> None:
    settings = build_settings(
        strategy={"name": "fixed", "fixed_lane": "anthropic"},
        worker={"lane": "anthropic"},
    )

    assert validate_worker_binding(settings).name == "anthropic"


def test_binding_rejects_conflicting_lanes() -> None:
    settings = build_settings(strategy={"name": "fixed", "fixed_lane": "openai"})

    with pytest.raises(WorkerBindingError, match="exactly one lane"):
        validate_worker_binding(settings, "gemini")


def test_binding_rejects_unknown_lane() -> None:
    settings = build_settings(strategy={"name": "fixed", "fixed_lane": "openai"})
    unpinned = replace(settings, strategy=replace(settings.strategy, fixed_lane=None))

    with pytest.raises(WorkerBindingError, match="unknown worker lane 'mistral'"):
        validate_worker_binding(unpinned, "mistral")


def test_binding_requires_some_lane() -> None:
    settings = build_settings(strategy={"name": "fixed", "fixed_lane": "openai"})
    unpinned = replace(settings, strategy=replace(settings.strategy, fixed_lane=None))

    with pytest.raises(WorkerBindingError, match="not set"):
        validate_worker_binding(unpinned)
