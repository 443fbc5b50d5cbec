"""Utility exports for async concurrency helpers."""

from lane_router.utils.concurrency import CancellationToken, InFlightTracker, run_with_timeout

__all__ = [
    "CancellationToken",
    "InFlightTracker",
    "run_with_timeout",
]
