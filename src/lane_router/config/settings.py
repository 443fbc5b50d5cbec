"""Typed runtime settings materialized from a validated config mapping."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from lane_router.config.schema import assert_valid_config
from lane_router.domain.models import Lane, LaneMetadata, LaneRegistry
from lane_router.routing.strategies import (
    LaneWeight,
    StrategyConfig,
    parse_strategy_kind,
)


@dataclass(frozen=True, slots=True)
class RateLimitSettings:
    enabled: bool
    delay_ms: int
    window_ms: int


@dataclass(frozen=True, slots=True)
class RedisSettings:
    url: str
    dispatcher_key_prefix: str
    worker_key_prefix: str
    key_ttl_seconds: int
    assignment_ttl_ms: int
    pin_assignments: bool


@dataclass(frozen=True, slots=True)
class BrokerSettings:
    url: str
    prefetch_count: int
    connect_attempts: int
    reconnect_delay_ms: int
    message_ttl_ms: int
    drain_timeout_seconds: float


@dataclass(frozen=True, slots=True)
class QueueNames:
    intake: str
    dead_letter: str
    results: str


@dataclass(frozen=True, slots=True)
class JobFields:
    id_field: str
    lane_hint_field: str


@dataclass(frozen=True, slots=True)
class WorkerSettings:
    processor: str
    lane: str | None = None


@dataclass(frozen=True, slots=True)
class ObservabilitySettings:
    log_level: str
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool
    health_interval_seconds: float


@dataclass(frozen=True, slots=True)
class RouterSettings:
    """Everything a dispatcher or worker process needs, read once at startup."""

    instance_id: str
    strategy: StrategyConfig
    lanes: LaneRegistry
    rate_limit: RateLimitSettings
    redis: RedisSettings
    broker: BrokerSettings
    queues: QueueNames
    job: JobFields
    worker: WorkerSettings
    observability: ObservabilitySettings

    @classmethod
    def from_config(cls, config: Mapping[str, object]) -> RouterSettings:
        """Validate ``config`` and convert it; raises ``ConfigValidationError``."""

        validated = assert_valid_config(config)
        lanes = _build_lanes(validated["lanes"])
        return cls(
            instance_id=validated["service"]["instance_id"],
            strategy=_build_strategy(validated["strategy"], lanes),
            lanes=lanes,
            rate_limit=RateLimitSettings(**validated["rate_limit"]),
            redis=RedisSettings(**validated["redis"]),
            broker=BrokerSettings(**validated["broker"]),
            queues=QueueNames(**validated["queues"]),
            job=JobFields(**validated["job"]),
            worker=WorkerSettings(
                processor=validated["worker"]["processor"],
                lane=validated["worker"].get("lane"),
            ),
            observability=ObservabilitySettings(**validated["observability"]),
        )

    def key_prefix_for(self, tier: str) -> str:
        if tier == "dispatcher":
            return self.redis.dispatcher_key_prefix
        if tier == "worker":
            return self.redis.worker_key_prefix
        raise ValueError(f"unknown rate-limit tier {tier!r}; expected dispatcher or worker")


def _build_lanes(section: Mapping[str, Any]) -> LaneRegistry:
    lanes: list[Lane] = []
    for name in section:
        raw = section[name]
        lanes.append(
            Lane(
                name=name,
                queue=raw["queue"],
                capacity_per_minute=raw["capacity_per_minute"],
                metadata=LaneMetadata(
                    cost_per_million=raw.get("cost_per_million"),
                    quality_score=raw.get("quality_score"),
                ),
            )
        )
    return LaneRegistry(lanes)


def _build_strategy(section: Mapping[str, Any], lanes: LaneRegistry) -> StrategyConfig:
    return StrategyConfig(
        kind=parse_strategy_kind(section["name"]),
        default_lane=section["default_lane"],
        known_lanes=lanes.names,
        available_lanes=tuple(section["available_lanes"]),
        fixed_lane=section.get("fixed_lane"),
        priority_order=tuple(section["priority_order"]),
        weights=tuple(
            LaneWeight(lane=item["lane"], weight=item["weight"]) for item in section["weights"]
        ),
        metadata={lane.name: lane.metadata for lane in lanes},
    )


__all__ = [
    "BrokerSettings",
    "JobFields",
    "ObservabilitySettings",
    "QueueNames",
    "RateLimitSettings",
    "RedisSettings",
    "RouterSettings",
    "WorkerSettings",
]
