"""Dispatcher routing, delay and dead-letter behavior."""

from __future__ import annotations

import random

import pytest
from fakeredis import FakeServer

from lane_router.config.settings import RouterSettings
from lane_router.dispatcher.dispatcher import Dispatcher, RouteOutcome
from lane_router.domain.models import parse_job
from lane_router.observability.metrics import JOBS_DEAD_LETTERED, JOBS_DELAYED, JOBS_ROUTED
from lane_router.store.assignments import LaneAssignmentStore
from lane_router.store.rate_limiter import SlidingWindowRateLimiter

from . import EventLog, FakeClock, FakeMessage, FakePublisher, build_settings, fake_redis


def _dispatcher(
    settings: RouterSettings,
    *,
    publisher: FakePublisher | None = None,
    client: object | None = None,
    assignments: LaneAssignmentStore | None = None,
    clock: FakeClock | None = None,
) -> Dispatcher:
    client = client if client is not None else fake_redis()
    limiter = SlidingWindowRateLimiter(
        client,
        key_prefix=settings.redis.dispatcher_key_prefix,
        clock=clock if clock is not None else FakeClock(),
    )
    return Dispatcher(
        settings,
        limiter,
        publisher if publisher is not None else FakePublisher(),
        assignments=assignments,
        rng=random.Random(7),
    )


async def test_fixed_lane_over_capacity_goes_to_delay_queue() -> None:
    settings = build_settings(
        strategy={"name": "fixed", "fixed_lane": "gemini"},
        lanes={"gemini": {"capacity_per_minute": 1}},
    )
    publisher = FakePublisher()
    dispatcher = _dispatcher(settings, publisher=publisher)

    first = FakeMessage({"id": "job-1"})
    second = FakeMessage({"id": "job-2"})

    assert await dispatcher.route_one(first) is RouteOutcome.ROUTED
    assert await dispatcher.route_one(second) is RouteOutcome.DELAYED

    assert [item.queue for item in publisher.published] == [
        "gemini-analysis-queue",
        "gemini-delayed-30000ms",
    ]
    assert publisher.published[1].body == second.body
    assert publisher.delay_queues == {"gemini-delayed-30000ms": ("gemini-analysis-queue", 30000)}
    assert first.acked and second.acked
    assert dispatcher.metrics.get_counter(JOBS_ROUTED, labels={"lane": "gemini"}) == 1.0
    assert dispatcher.metrics.get_counter(JOBS_DELAYED, labels={"lane": "gemini"}) == 1.0


async def test_ack_happens_after_publish() -> None:
    log = EventLog()
    dispatcher = _dispatcher(build_settings(), publisher=FakePublisher(log=log))

    await dispatcher.route_one(FakeMessage({"id": "job-1"}, log=log))

    assert log.events == ["publish:openai-analysis-queue", "ack"]


async def test_forwarded_body_is_byte_identical() -> None:
    publisher = FakePublisher()
    dispatcher = _dispatcher(build_settings(), publisher=publisher)
    body = b'{"id": 42, "provider": "Gemini", "text": "caf\\u00e9"}'

    await dispatcher.route_one(FakeMessage(body))

    assert publisher.published[0].body == body


async def test_malformed_intake_is_dead_lettered_and_acked() -> None:
    publisher = FakePublisher()
    dispatcher = _dispatcher(build_settings(), publisher=publisher)
    message = FakeMessage(b"not json")

    outcome = await dispatcher.route_one(message)

    assert outcome is RouteOutcome.DEAD_LETTERED
    assert message.acked is True
    assert message.nacked is False
    (dead,) = publisher.published
    assert dead.queue == "analysis-dlq"
    assert dead.body == b"not json"
    assert dead.headers is not None
    assert dead.headers["x-error-type"] == "MalformedJobError"
    assert dead.headers["x-error-stage"] == "dispatcher"
    assert dead.headers["x-error-instance"] == "dispatcher-001"
    assert "x-error-lane" not in dead.headers
    assert dead.headers["x-error-timestamp"].endswith("Z")
    assert dispatcher.metrics.total(JOBS_DEAD_LETTERED) == 1.0


@pytest.mark.parametrize(
    "body",
    [b"[1, 2]", b'{"provider": "openai"}', b'{"id": ""}', b'{"id": true}'],
)
async def test_unusable_jobs_never_reach_a_lane(body: bytes) -> None:
    publisher = FakePublisher()
    dispatcher = _dispatcher(build_settings(), publisher=publisher)

    assert await dispatcher.route_one(FakeMessage(body)) is RouteOutcome.DEAD_LETTERED
    assert [item.queue for item in publisher.published] == ["analysis-dlq"]


async def test_publish_failure_dead_letters_with_lane_header() -> None:
    publisher = FakePublisher(fail_queues={"openai-analysis-queue"})
    dispatcher = _dispatcher(build_settings(), publisher=publisher)
    message = FakeMessage({"id": "job-9"})

    assert await dispatcher.route_one(message) is RouteOutcome.DEAD_LETTERED

    (dead,) = publisher.published
    assert dead.queue == "analysis-dlq"
    assert dead.headers is not None
    assert dead.headers["x-error-lane"] == "openai"
    assert dead.headers["x-error-type"] == "ConnectionError"
    assert message.acked is True


async def test_dead_letter_publish_failure_leaves_message_unacked() -> None:
    publisher = FakePublisher(fail_queues={"openai-analysis-queue", "analysis-dlq"})
    dispatcher = _dispatcher(build_settings(), publisher=publisher)
    message = FakeMessage({"id": "job-9"})

    with pytest.raises(ConnectionError):
        await dispatcher.route_one(message)

    assert message.acked is False
    assert message.nacked is False


async def test_rate_limiting_disabled_always_routes() -> None:
    settings = build_settings(
        lanes={"openai": {"capacity_per_minute": 0}},
        rate_limit={"enabled": False},
    )
    publisher = FakePublisher()
    dispatcher = _dispatcher(settings, publisher=publisher)

    for index in range(3):
        assert await dispatcher.route_one(FakeMessage({"id": f"job-{index}"})) is RouteOutcome.ROUTED
    assert {item.queue for item in publisher.published} == {"openai-analysis-queue"}


async def test_message_based_uses_lane_hint_and_falls_back_to_default() -> None:
    settings = build_settings(strategy={"name": "message_based"})
    publisher = FakePublisher()
    dispatcher = _dispatcher(settings, publisher=publisher)

    await dispatcher.route_one(FakeMessage({"id": "a", "provider": "ANTHROPIC"}))
    await dispatcher.route_one(FakeMessage({"id": "b", "provider": "mistral"}))
    await dispatcher.route_one(FakeMessage({"id": "c"}))

    assert [item.queue for item in publisher.published] == [
        "anthropic-analysis-queue",
        "openai-analysis-queue",
        "openai-analysis-queue",
    ]


async def test_replayed_job_keeps_its_pinned_lane() -> None:
    settings = build_settings(strategy={"name": "round_robin"})
    server = FakeServer()
    assignments = LaneAssignmentStore(
        fake_redis(server), key_prefix=settings.redis.dispatcher_key_prefix, ttl_ms=60_000
    )
    publisher = FakePublisher()
    dispatcher = _dispatcher(
        settings, publisher=publisher, client=fake_redis(server), assignments=assignments
    )

    job_ids = ["job-1", "job-2", "job-3", "job-4"]
    for job_id in job_ids:
        await dispatcher.route_one(FakeMessage({"id": job_id}))
    first_pass = [item.queue for item in publisher.published]

    # A crash before ack redelivers the same jobs; the cursor has moved on.
    for job_id in reversed(job_ids):
        await dispatcher.route_one(FakeMessage({"id": job_id}, redelivered=True))
    replay = [item.queue for item in publisher.published[len(job_ids):]]

    assert first_pass == [
        "openai-analysis-queue",
        "gemini-analysis-queue",
        "anthropic-analysis-queue",
        "openai-analysis-queue",
    ]
    assert replay == list(reversed(first_pass))


async def test_second_replica_honours_first_replicas_pin() -> None:
    settings = build_settings(strategy={"name": "round_robin"})
    server = FakeServer()

    def replica(publisher: FakePublisher) -> Dispatcher:
        return _dispatcher(
            settings,
            publisher=publisher,
            client=fake_redis(server),
            assignments=LaneAssignmentStore(
                fake_redis(server),
                key_prefix=settings.redis.dispatcher_key_prefix,
                ttl_ms=60_000,
            ),
        )

    first_out, second_out = FakePublisher(), FakePublisher()
    first, second = replica(first_out), replica(second_out)

    await first.route_one(FakeMessage({"id": "warmup"}))
    await first.route_one(FakeMessage({"id": "job-1"}))
    await second.route_one(FakeMessage({"id": "job-1"}))

    assert first_out.published[-1].queue == second_out.published[-1].queue


async def test_resolve_lane_ignores_pins_for_lanes_no_longer_configured() -> None:
    settings = build_settings()
    client = fake_redis()
    assignments = LaneAssignmentStore(
        client, key_prefix=settings.redis.dispatcher_key_prefix, ttl_ms=60_000
    )
    await client.set(assignments.key_for("job-1"), "retired")
    dispatcher = _dispatcher(settings, client=client, assignments=assignments)

    lane = await dispatcher.resolve_lane(parse_job(b'{"id": "job-1"}'))

    assert lane.name == "openai"
