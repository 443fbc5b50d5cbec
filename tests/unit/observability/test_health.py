"""Tests for the periodic health reporter."""

from __future__ import annotations

import asyncio

import pytest
from structlog.testing import capture_logs

from lane_router.observability.health import HealthReporter
from lane_router.observability.metrics import JOBS_COMPLETED, MetricsRegistry
from lane_router.utils.concurrency import CancellationToken


async def _healthy() -> bool:
    return True


async def _broken() -> bool:
    raise ConnectionError("redis down")


async def test_report_once_logs_counters_and_probe_results() -> None:
    metrics = MetricsRegistry()
    metrics.inc(JOBS_COMPLETED, labels={"lane": "openai"})
    reporter = HealthReporter(
        metrics,
        interval_seconds=30,
        probes={"redis": _broken, "broker": _healthy},
    )

    with capture_logs() as logs:
        results = await reporter.report_once()

    assert results == {"broker": True, "redis": False}
    failed = [entry for entry in logs if entry["event"] == "health_probe_failed"]
    assert failed[0]["probe"] == "redis"
    health = [entry for entry in logs if entry["event"] == "health"][0]
    assert health["healthy"] is False
    assert health["counters"] == {"jobs_completed_total{lane=openai}": 1.0}


async def test_run_reports_until_token_cancelled() -> None:
    reporter = HealthReporter(MetricsRegistry(), interval_seconds=0.01)
    token = CancellationToken()

    with capture_logs() as logs:
        task = asyncio.create_task(reporter.run(token))
        await asyncio.sleep(0.05)
        token.cancel()
        await asyncio.wait_for(task, timeout=1.0)

    reports = [entry for entry in logs if entry["event"] == "health"]
    assert reports
    assert all(entry["healthy"] is True for entry in reports)


def test_interval_must_be_positive() -> None:
    with pytest.raises(ValueError, match="interval_seconds"):
        HealthReporter(MetricsRegistry(), interval_seconds=0)
