"""
lane-router - domain types.

File: src/lane_router/domain/__init__.py
Last updated: 2026-10-18

Purpose
- Domain types shared by dispatcher and worker: JobRecord, Lane, LaneRegistry, DeadLetterRecord.

Functional requirements
- Keep domain layer free of IO side effects.
"""

from lane_router.domain.models import (
    DeadLetterRecord,
    FailureStage,
    JobRecord,
    Lane,
    LaneMetadata,
    LaneRegistry,
    delay_queue_name,
    parse_job,
)

__all__ = [
    "DeadLetterRecord",
    "FailureStage",
    "JobRecord",
    "Lane",
    "LaneMetadata",
    "LaneRegistry",
    "delay_queue_name",
    "parse_job",
]
