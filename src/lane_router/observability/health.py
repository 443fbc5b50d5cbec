"""Periodic health log for long-running dispatcher and worker processes."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from lane_router.observability.metrics import MetricsRegistry
from lane_router.utils.concurrency import CancellationToken

HealthProbe = Callable[[], Awaitable[bool]]


class HealthReporter:
    """Log a metrics snapshot plus dependency probes every ``interval_seconds``."""

    def __init__(
        self,
        metrics: MetricsRegistry,
        *,
        interval_seconds: float,
        probes: dict[str, HealthProbe] | None = None,
        logger: Any | None = None,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._metrics = metrics
        self._interval = interval_seconds
        self._probes = dict(probes or {})
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    async def report_once(self) -> dict[str, bool]:
        results: dict[str, bool] = {}
        for probe_name, probe in sorted(self._probes.items()):
            try:
                results[probe_name] = bool(await probe())
            except Exception as exc:  # noqa: BLE001
                self._logger.warning("health_probe_failed", probe=probe_name, error=str(exc))
                results[probe_name] = False

        snapshot = self._metrics.snapshot()
        self._logger.info(
            "health",
            healthy=all(results.values()),
            probes=results,
            counters=snapshot["counters"],
            uptime_seconds=snapshot["uptime_seconds"],
        )
        return results

    async def run(self, token: CancellationToken) -> None:
        while not token.is_cancelled:
            try:
                await asyncio.wait_for(token.wait(), timeout=self._interval)
            except TimeoutError:
                await self.report_once()


__all__ = ["HealthProbe", "HealthReporter"]
