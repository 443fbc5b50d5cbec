"""Regression tests for concurrency utility edge cases."""

from __future__ import annotations

import asyncio
import gc
import sys
import warnings
from contextlib import contextmanager
from types import SimpleNamespace
from typing import TYPE_CHECKING

import pytest

from lane_router.utils.concurrency import CancellationToken, InFlightTracker, run_with_timeout

if TYPE_CHECKING:
    from collections.abc import Iterator


@contextmanager
def _capture_unraisable() -> Iterator[list[SimpleNamespace]]:
    captured: list[SimpleNamespace] = []
    original = sys.unraisablehook

    def hook(unraisable: object) -> None:
        captured.append(
            SimpleNamespace(
                exc_type=getattr(unraisable, "exc_type", None),
                exc_value=getattr(unraisable, "exc_value", None),
                err_msg=getattr(unraisable, "err_msg", None),
            )
        )

    sys.unraisablehook = hook
    try:
        yield captured
    finally:
        sys.unraisablehook = original


async def _slow() -> int:
    await asyncio.sleep(0.01)
    return 1


async def _slower() -> int:
    await asyncio.sleep(0.05)
    return 1


async def test_run_with_timeout_returns_result() -> None:
    assert await run_with_timeout(_slow(), 1.0) == 1


async def test_run_with_timeout_does_not_leak_coroutine_on_early_cancel() -> None:
    token = CancellationToken()
    token.cancel()

    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        coro = _slow()
        with pytest.raises(asyncio.CancelledError):
            await run_with_timeout(coro, 1.0, token)
        del coro
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_timeout_path_does_not_leak_coroutine() -> None:
    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        with pytest.raises(TimeoutError):
            await run_with_timeout(_slower(), 0.001, None)
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_rejects_non_positive_timeout() -> None:
    with pytest.raises(ValueError, match="timeout_seconds"):
        await run_with_timeout(_slow(), 0)


async def test_cancellation_during_wait_raises_cancelled() -> None:
    token = CancellationToken()
    asyncio.get_running_loop().call_later(0.01, token.cancel)

    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(asyncio.sleep(1.0), 1.0, token)


async def test_in_flight_tracker_waits_for_handlers_to_finish() -> None:
    tracker = InFlightTracker()
    release = asyncio.Event()

    async def handler() -> None:
        async with tracker.track():
            await release.wait()

    task = asyncio.create_task(handler())
    await asyncio.sleep(0)
    assert tracker.active == 1
    assert await tracker.wait_idle(0.01) is False

    release.set()
    assert await tracker.wait_idle(1.0) is True
    await task
    assert tracker.active == 0


async def test_in_flight_tracker_idle_immediately_when_empty() -> None:
    assert await InFlightTracker().wait_idle(0) is True


def test_in_flight_tracker_rejects_unbalanced_exit() -> None:
    with pytest.raises(RuntimeError, match="more times than enter"):
        InFlightTracker().exit()
