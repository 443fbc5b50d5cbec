"""Dataclass domain models for jobs, lanes and dead-letter records."""

from __future__ import annotations

import json
import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from lane_router.constants import (
    HEADER_ERROR_INSTANCE,
    HEADER_ERROR_LANE,
    HEADER_ERROR_MESSAGE,
    HEADER_ERROR_STAGE,
    HEADER_ERROR_TIMESTAMP,
    HEADER_ERROR_TYPE,
)
from lane_router.errors import MalformedJobError

_LANE_NAME_RE = re.compile(r"^[a-z][a-z0-9_-]*$")
_MAX_ERROR_TEXT = 1024


class FailureStage(StrEnum):
    DISPATCHER = "dispatcher"
    WORKER = "worker"


def delay_queue_name(lane: str, delay_ms: int) -> str:
    """Deterministic delay queue name, so repeated declarations stay idempotent."""

    return f"{lane}-delayed-{delay_ms}ms"


def utc_timestamp(now: datetime | None = None) -> str:
    moment = now if now is not None else datetime.now(tz=UTC)
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class LaneMetadata:
    cost_per_million: float | None = None
    quality_score: float | None = None


@dataclass(frozen=True, slots=True)
class Lane:
    """Named route: one primary queue, one delay queue per delay interval, one budget."""

    name: str
    queue: str
    capacity_per_minute: int
    metadata: LaneMetadata = field(default_factory=LaneMetadata)

    def __post_init__(self) -> None:
        if not _LANE_NAME_RE.fullmatch(self.name):
            raise ValueError(f"Lane.name: invalid lane name {self.name!r}")
        if not isinstance(self.queue, str) or not self.queue.strip():
            raise ValueError("Lane.queue: must be a non-empty string")
        if isinstance(self.capacity_per_minute, bool) or self.capacity_per_minute < 0:
            raise ValueError("Lane.capacity_per_minute: must be >= 0")

    def delay_queue(self, delay_ms: int) -> str:
        return delay_queue_name(self.name, delay_ms)


class LaneRegistry:
    """Ordered, read-only mapping of lane name to :class:`Lane`."""

    __slots__ = ("_lanes",)

    def __init__(self, lanes: Mapping[str, Lane] | list[Lane] | tuple[Lane, ...]) -> None:
        items = list(lanes.values()) if isinstance(lanes, Mapping) else list(lanes)
        ordered: dict[str, Lane] = {}
        queues: set[str] = set()
        for lane in items:
            if lane.name in ordered:
                raise ValueError(f"duplicate lane {lane.name!r}")
            if lane.queue in queues:
                raise ValueError(f"queue {lane.queue!r} is bound to more than one lane")
            ordered[lane.name] = lane
            queues.add(lane.queue)
        if not ordered:
            raise ValueError("at least one lane is required")
        self._lanes = ordered

    def __contains__(self, name: object) -> bool:
        return name in self._lanes

    def __iter__(self) -> Iterator[Lane]:
        return iter(self._lanes.values())

    def __len__(self) -> int:
        return len(self._lanes)

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._lanes)

    def get(self, name: str) -> Lane | None:
        return self._lanes.get(name)

    def require(self, name: str) -> Lane:
        lane = self._lanes.get(name)
        if lane is None:
            raise KeyError(name)
        return lane

    def resolve(self, name: str | None, default: str) -> Lane:
        """Return the named lane, or the default lane when the name is unknown."""

        if name is not None:
            lane = self._lanes.get(name)
            if lane is not None:
                return lane
        return self.require(default)


@dataclass(frozen=True, slots=True)
class JobRecord:
    """Opaque job as received on the intake queue. ``body`` is forwarded unchanged."""

    job_id: str
    payload: Mapping[str, Any]
    body: bytes
    lane_hint: str | None = None


def parse_job(
    body: bytes,
    *,
    id_field: str = "id",
    lane_hint_field: str = "provider",
) -> JobRecord:
    """Parse an intake body; raise :class:`MalformedJobError` when it is unusable."""

    try:
        decoded = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedJobError(f"job body is not valid JSON: {exc}") from exc
    except RecursionError as exc:
        raise MalformedJobError("job body is nested too deeply to decode") from exc
    if not isinstance(decoded, dict):
        raise MalformedJobError(f"job body must be a JSON object, got {type(decoded).__name__}")

    raw_id = decoded.get(id_field)
    if isinstance(raw_id, bool) or not isinstance(raw_id, (str, int)):
        raise MalformedJobError(f"job is missing a string or integer {id_field!r} field")
    job_id = str(raw_id).strip()
    if not job_id:
        raise MalformedJobError(f"job {id_field!r} must not be empty")

    raw_hint = decoded.get(lane_hint_field)
    lane_hint = raw_hint.strip().lower() if isinstance(raw_hint, str) and raw_hint.strip() else None
    return JobRecord(job_id=job_id, payload=decoded, body=bytes(body), lane_hint=lane_hint)


@dataclass(frozen=True, slots=True)
class DeadLetterRecord:
    """Original body plus failure metadata. Never consumed back into routing."""

    body: bytes
    error_message: str
    error_type: str
    failed_at: str
    stage: FailureStage
    lane: str | None = None
    instance_id: str | None = None

    @classmethod
    def from_exception(
        cls,
        body: bytes,
        exc: BaseException,
        *,
        stage: FailureStage,
        lane: str | None = None,
        instance_id: str | None = None,
        now: datetime | None = None,
    ) -> DeadLetterRecord:
        message = str(exc).strip() or exc.__class__.__name__
        return cls(
            body=bytes(body),
            error_message=message[:_MAX_ERROR_TEXT],
            error_type=exc.__class__.__name__,
            failed_at=utc_timestamp(now),
            stage=stage,
            lane=lane,
            instance_id=instance_id,
        )

    def headers(self) -> dict[str, str]:
        headers = {
            HEADER_ERROR_MESSAGE: self.error_message,
            HEADER_ERROR_TYPE: self.error_type,
            HEADER_ERROR_TIMESTAMP: self.failed_at,
            HEADER_ERROR_STAGE: str(self.stage),
        }
        if self.lane is not None:
            headers[HEADER_ERROR_LANE] = self.lane
        if self.instance_id is not None:
            headers[HEADER_ERROR_INSTANCE] = self.instance_id
        return headers

    def error_object(self) -> dict[str, Any]:
        return {
            "message": self.error_message,
            "type": self.error_type,
            "timestamp": self.failed_at,
            "lane": self.lane,
            "stage": str(self.stage),
            "instance_id": self.instance_id,
        }

    def envelope(self) -> bytes:
        """JSON ``{"job": ..., "error": ...}``; undecodable bodies are kept as text."""

        try:
            job: Any = json.loads(self.body)
        except (UnicodeDecodeError, json.JSONDecodeError):
            job = self.body.decode("utf-8", errors="replace")
        payload = {"job": job, "error": self.error_object()}
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


__all__ = [
    "DeadLetterRecord",
    "FailureStage",
    "JobRecord",
    "Lane",
    "LaneMetadata",
    "LaneRegistry",
    "delay_queue_name",
    "parse_job",
    "utc_timestamp",
]
