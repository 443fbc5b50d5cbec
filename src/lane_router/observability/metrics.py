"""Thread-safe routing counters and timings with deterministic JSON export."""

from __future__ import annotations

import json
import math
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Mapping

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]

JOBS_ROUTED: Final[str] = "jobs_routed_total"
JOBS_DELAYED: Final[str] = "jobs_delayed_total"
JOBS_DEAD_LETTERED: Final[str] = "jobs_dead_lettered_total"
JOBS_COMPLETED: Final[str] = "jobs_completed_total"
JOBS_REQUEUED: Final[str] = "jobs_requeued_total"
JOB_PROCESSING_MS: Final[str] = "job_processing_ms"
RATE_LIMITER_FAIL_OPEN: Final[str] = "rate_limiter_fail_open_total"

_MetricLabels = tuple[tuple[str, str], ...]

_METRIC_NAME_MAX_LEN: Final[int] = 128
_LABEL_VALUE_MAX_LEN: Final[int] = 256


@dataclass(frozen=True, order=True, slots=True)
class _MetricKey:
    name: str
    labels: _MetricLabels


@dataclass(slots=True)
class _TimingState:
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value

    def as_dict(self) -> dict[str, JSONValue]:
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": self.total / self.count if self.count else 0.0,
        }


class MetricsRegistry:
    """In-memory counters and timings shared by the dispatcher or worker loop."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._started_at = datetime.now(tz=UTC)
        self._counters: dict[_MetricKey, float] = {}
        self._timings: dict[_MetricKey, _TimingState] = {}

    def inc(
        self,
        name: str,
        amount: float = 1.0,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        """Increment a counter by ``amount`` (>= 0)."""

        delta = _as_finite_float(amount, path="amount")
        if delta < 0:
            raise ValueError("counter increment amount must be >= 0")

        key = _metric_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + delta

    def observe(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        key = _metric_key(name, labels)
        sample = _as_finite_float(value, path="value")
        with self._lock:
            state = self._timings.setdefault(key, _TimingState())
            state.observe(sample)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        key = _metric_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0.0)

    def total(self, name: str) -> float:
        """Sum of a counter across every label set."""

        with self._lock:
            return sum(value for key, value in self._counters.items() if key.name == name)

    def get_timing(
        self,
        name: str,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> dict[str, JSONValue] | None:
        key = _metric_key(name, labels)
        with self._lock:
            state = self._timings.get(key)
            return None if state is None else state.as_dict()

    def snapshot(self) -> dict[str, JSONValue]:
        """Return a snapshot with stable key ordering."""

        with self._lock:
            started_at = self._started_at
            counters = sorted(self._counters.items())
            timings = sorted(self._timings.items())

        now = datetime.now(tz=UTC)
        return {
            "started_at": started_at.isoformat(timespec="seconds").replace("+00:00", "Z"),
            "uptime_seconds": max(0.0, (now - started_at).total_seconds()),
            "counters": {_metric_identifier(key): value for key, value in counters},
            "timings": {_metric_identifier(key): state.as_dict() for key, state in timings},
        }

    def to_json(self, *, indent: int | None = None) -> str:
        payload = self.snapshot()
        if indent is None:
            return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
        return json.dumps(payload, sort_keys=True, indent=indent, ensure_ascii=False)


def _metric_key(name: str, labels: Mapping[str, str] | None) -> _MetricKey:
    return _MetricKey(name=_validate_metric_name(name), labels=_normalize_labels(labels))


def _metric_identifier(key: _MetricKey) -> str:
    if not key.labels:
        return key.name
    labels = ",".join(f"{k}={v}" for k, v in key.labels)
    return f"{key.name}{{{labels}}}"


def _validate_metric_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise ValueError("metric name must be a non-empty string")
    normalized = name.strip()
    if len(normalized) > _METRIC_NAME_MAX_LEN:
        raise ValueError(f"metric name must be <= {_METRIC_NAME_MAX_LEN} characters")
    return normalized


def _normalize_labels(labels: Mapping[str, str] | None) -> _MetricLabels:
    if not labels:
        return ()

    out: list[tuple[str, str]] = []
    for key, value in labels.items():
        if not isinstance(key, str) or not key.strip():
            raise ValueError("label key must be a non-empty string")
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"label value for {key!r} must be a non-empty string")
        if len(value) > _LABEL_VALUE_MAX_LEN:
            raise ValueError(f"label value for {key!r} exceeds {_LABEL_VALUE_MAX_LEN} characters")
        out.append((key.strip(), value.strip()))

    out.sort(key=lambda item: item[0])
    return tuple(out)


def _as_finite_float(value: float, *, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path} must be numeric, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        raise ValueError(f"{path} must be finite")
    return parsed


__all__ = [
    "JOBS_COMPLETED",
    "JOBS_DEAD_LETTERED",
    "JOBS_DELAYED",
    "JOBS_REQUEUED",
    "JOBS_ROUTED",
    "JOB_PROCESSING_MS",
    "JSONScalar",
    "JSONValue",
    "MetricsRegistry",
    "RATE_LIMITER_FAIL_OPEN",
]
