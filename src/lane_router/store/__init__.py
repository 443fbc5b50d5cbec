"""Redis-backed stores: per-lane rate windows and job lane assignments."""

from lane_router.store.assignments import LaneAssignmentStore
from lane_router.store.rate_limiter import RateLimitState, SlidingWindowRateLimiter
from lane_router.store.redis_client import create_redis_client

__all__ = [
    "LaneAssignmentStore",
    "RateLimitState",
    "SlidingWindowRateLimiter",
    "create_redis_client",
]
