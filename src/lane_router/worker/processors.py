"""Pluggable job processors invoked by lane workers."""

from __future__ import annotations

import importlib
from collections.abc import Mapping
from typing import Any, Protocol

from lane_router.domain.models import JobRecord, Lane, utc_timestamp
from lane_router.errors import ConfigurationError

ProcessorResult = Mapping[str, Any] | bytes


class JobProcessor(Protocol):
    async def __call__(self, job: JobRecord, lane: Lane) -> ProcessorResult: ...


def load_processor(path: str) -> JobProcessor:
    """Resolve ``"package.module:attribute"`` to a processor callable."""

    module_name, sep, attribute = path.partition(":")
    if not sep or not module_name or not attribute:
        raise ConfigurationError(
            f"processor {path!r} must be an import path of the form 'package.module:attribute'"
        )
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        raise ConfigurationError(f"processor module {module_name!r} cannot be imported") from exc

    target: Any = module
    for part in attribute.split("."):
        try:
            target = getattr(target, part)
        except AttributeError as exc:
            raise ConfigurationError(
                f"processor {path!r} does not exist: {module_name!r} has no {part!r}"
            ) from exc
    if not callable(target):
        raise ConfigurationError(f"processor {path!r} is not callable")
    return target


async def echo_processor(job: JobRecord, lane: Lane) -> dict[str, Any]:
    """Return the payload tagged with lane and completion time."""

    return {
        "job_id": job.job_id,
        "lane": lane.name,
        "completed_at": utc_timestamp(),
        "payload": dict(job.payload),
    }


__all__ = ["JobProcessor", "ProcessorResult", "echo_processor", "load_processor"]
