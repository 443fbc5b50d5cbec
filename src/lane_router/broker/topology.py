"""Queue declarations: durable lane queues plus TTL delay queues that redirect back."""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from lane_router.config.settings import RouterSettings


def queue_arguments(message_ttl_ms: int | None) -> dict[str, Any]:
    if message_ttl_ms is None:
        return {}
    return {"x-message-ttl": message_ttl_ms}


def delay_queue_arguments(lane_queue: str, delay_ms: int) -> dict[str, Any]:
    """Messages expire after ``delay_ms`` and are dead-lettered onto ``lane_queue``."""

    if delay_ms <= 0:
        raise ValueError("delay_ms must be > 0")
    return {
        "x-message-ttl": delay_ms,
        "x-dead-letter-exchange": "",
        "x-dead-letter-routing-key": lane_queue,
    }


def primary_queue_plan(settings: RouterSettings) -> dict[str, dict[str, Any]]:
    """Queue name -> declare arguments for every queue a process needs at startup.

    The dead-letter and results queues carry no TTL so failures and results are
    kept until something reads them.
    """

    ttl = settings.broker.message_ttl_ms
    plan: dict[str, dict[str, Any]] = {settings.queues.intake: queue_arguments(ttl)}
    for lane in settings.lanes:
        plan[lane.queue] = queue_arguments(ttl)
    plan[settings.queues.dead_letter] = queue_arguments(None)
    plan[settings.queues.results] = queue_arguments(None)
    return plan


async def declare_queues(session: Any, plan: Mapping[str, Mapping[str, Any]]) -> list[str]:
    """Declare each queue durably; redeclaring with identical arguments is a no-op."""

    declared: list[str] = []
    for name, arguments in plan.items():
        await session.declare_queue(name, arguments=dict(arguments) or None)
        declared.append(name)
    return declared


__all__ = [
    "declare_queues",
    "delay_queue_arguments",
    "primary_queue_plan",
    "queue_arguments",
]
