"""Stable constants shared across dispatcher and worker processes."""

from __future__ import annotations

from typing import Final

# Schema versions for persisted contracts.
CONFIG_SCHEMA_VERSION: Final[int] = 1

# Built-in lanes and their primary queues.
BUILTIN_LANES: Final[tuple[str, ...]] = ("openai", "gemini", "anthropic")
DEFAULT_LANE: Final[str] = "openai"
DEFAULT_LANE_QUEUES: Final[dict[str, str]] = {
    "openai": "openai-analysis-queue",
    "gemini": "gemini-analysis-queue",
    "anthropic": "anthropic-analysis-queue",
}
DEFAULT_LANE_CAPACITY_PER_MINUTE: Final[dict[str, int]] = {
    "openai": 5000,
    "gemini": 500,
    "anthropic": 400,
}

# Priority orders used when no lane carries cost/quality metadata.
DEFAULT_COST_ORDER: Final[tuple[str, ...]] = ("gemini", "openai", "anthropic")
DEFAULT_QUALITY_ORDER: Final[tuple[str, ...]] = ("anthropic", "openai", "gemini")

# Queue names.
DEFAULT_INTAKE_QUEUE: Final[str] = "raw-analysis-queue"
DEFAULT_DEAD_LETTER_QUEUE: Final[str] = "analysis-dlq"
DEFAULT_RESULTS_QUEUE: Final[str] = "analysis-results"

# Timing.
RATE_WINDOW_MS: Final[int] = 60_000
DEFAULT_DELAY_MS: Final[int] = 30_000
DEFAULT_QUEUE_MESSAGE_TTL_MS: Final[int] = 86_400_000

# Redis key namespaces; dispatcher and worker tiers never share counters.
DISPATCHER_KEY_PREFIX: Final[str] = "lane_router:dispatcher:ratelimit:"
WORKER_KEY_PREFIX: Final[str] = "lane_router:worker:ratelimit:"

# Dead-letter header names.
HEADER_ERROR_MESSAGE: Final[str] = "x-error-message"
HEADER_ERROR_TYPE: Final[str] = "x-error-type"
HEADER_ERROR_TIMESTAMP: Final[str] = "x-error-timestamp"
HEADER_ERROR_LANE: Final[str] = "x-error-lane"
HEADER_ERROR_STAGE: Final[str] = "x-error-stage"
HEADER_ERROR_INSTANCE: Final[str] = "x-error-instance"

__all__ = [
    "BUILTIN_LANES",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_COST_ORDER",
    "DEFAULT_DEAD_LETTER_QUEUE",
    "DEFAULT_DELAY_MS",
    "DEFAULT_INTAKE_QUEUE",
    "DEFAULT_LANE",
    "DEFAULT_LANE_CAPACITY_PER_MINUTE",
    "DEFAULT_LANE_QUEUES",
    "DEFAULT_QUALITY_ORDER",
    "DEFAULT_QUEUE_MESSAGE_TTL_MS",
    "DEFAULT_RESULTS_QUEUE",
    "DISPATCHER_KEY_PREFIX",
    "HEADER_ERROR_INSTANCE",
    "HEADER_ERROR_LANE",
    "HEADER_ERROR_MESSAGE",
    "HEADER_ERROR_STAGE",
    "HEADER_ERROR_TIMESTAMP",
    "HEADER_ERROR_TYPE",
    "RATE_WINDOW_MS",
    "WORKER_KEY_PREFIX",
]
