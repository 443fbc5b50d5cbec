"""
lane-router - lane selection strategies.

File: src/lane_router/routing/strategies.py
Last updated: 2026-10-18

Purpose
- Name exactly one target lane for a job under a closed set of selection policies.

What should be included in this file
- ``StrategyKind`` enum and immutable ``StrategyConfig``.
- ``SelectionState`` holding the round-robin cursor (the only mutable state).
- ``select_lane`` evaluating every strategy in one ``match``.

Functional requirements
- Filter by available lanes before selecting, never after.
- Unknown, unset or unavailable choices resolve to the default lane.
- No I/O; randomness is injected so tests can seed it.
"""

from __future__ import annotations

import random
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Protocol

from lane_router.config.schema import STRATEGY_NAMES, normalize_strategy_name
from lane_router.constants import DEFAULT_COST_ORDER, DEFAULT_QUALITY_ORDER
from lane_router.domain.models import JobRecord, LaneMetadata
from lane_router.errors import UnknownStrategyError


class StrategyKind(StrEnum):
    FIXED = "fixed"
    ROUND_ROBIN = "round_robin"
    COST_OPTIMIZED = "cost_optimized"
    QUALITY_FIRST = "quality_first"
    WEIGHTED = "weighted"
    MESSAGE_BASED = "message_based"


class RandomSource(Protocol):
    def random(self) -> float: ...


def parse_strategy_kind(name: str) -> StrategyKind:
    """Parse ``"ROUND_ROBIN"``, ``"round-robin"`` and similar spellings."""

    normalized = normalize_strategy_name(name) if isinstance(name, str) else ""
    try:
        return StrategyKind(normalized)
    except ValueError as exc:
        expected = ", ".join(STRATEGY_NAMES)
        raise UnknownStrategyError(
            f"unknown selection strategy {name!r}; expected one of: {expected}"
        ) from exc


@dataclass(frozen=True, slots=True)
class LaneWeight:
    lane: str
    weight: int

    def __post_init__(self) -> None:
        if isinstance(self.weight, bool) or self.weight < 0:
            raise ValueError(f"LaneWeight.weight: must be >= 0 for lane {self.lane!r}")


@dataclass(frozen=True, slots=True)
class StrategyConfig:
    """Immutable selection policy, loaded once per process."""

    kind: StrategyKind
    default_lane: str
    known_lanes: tuple[str, ...]
    available_lanes: tuple[str, ...]
    fixed_lane: str | None = None
    priority_order: tuple[str, ...] = ()
    weights: tuple[LaneWeight, ...] = ()
    metadata: Mapping[str, LaneMetadata] = field(default_factory=dict)

    def __post_init__(self) -> None:
        known = set(self.known_lanes)
        if self.default_lane not in known:
            raise ValueError(f"StrategyConfig.default_lane: unknown lane {self.default_lane!r}")
        for lane in self.available_lanes:
            if lane not in known:
                raise ValueError(f"StrategyConfig.available_lanes: unknown lane {lane!r}")

    def ranked_lanes(self) -> tuple[str, ...]:
        """Priority list for cost/quality strategies, before availability filtering."""

        if self.priority_order:
            return self.priority_order
        if self.kind is StrategyKind.QUALITY_FIRST:
            return _rank_by_metadata(
                self.known_lanes,
                self.metadata,
                score=lambda item: item.quality_score,
                descending=True,
                fallback=DEFAULT_QUALITY_ORDER,
            )
        return _rank_by_metadata(
            self.known_lanes,
            self.metadata,
            score=lambda item: item.cost_per_million,
            descending=False,
            fallback=DEFAULT_COST_ORDER,
        )


@dataclass(slots=True)
class SelectionState:
    """Round-robin cursor. One instance per dispatcher process."""

    cursor: int = 0


def select_lane(
    job: JobRecord | None,
    config: StrategyConfig,
    state: SelectionState,
    *,
    rng: RandomSource | None = None,
) -> str:
    """Return the target lane name for ``job``."""

    available = tuple(lane for lane in config.available_lanes if lane in config.known_lanes)

    match config.kind:
        case StrategyKind.FIXED:
            if config.fixed_lane is not None and config.fixed_lane in config.known_lanes:
                return config.fixed_lane
            return config.default_lane

        case StrategyKind.ROUND_ROBIN:
            if not available:
                return config.default_lane
            index = state.cursor % len(available)
            state.cursor = (index + 1) % len(available)
            return available[index]

        case StrategyKind.COST_OPTIMIZED | StrategyKind.QUALITY_FIRST:
            return _first_available(config.ranked_lanes(), available, config.default_lane)

        case StrategyKind.WEIGHTED:
            return _weighted_draw(config.weights, available, config.default_lane, rng)

        case StrategyKind.MESSAGE_BASED:
            hint = job.lane_hint if job is not None else None
            if hint is None:
                return config.default_lane
            hint = hint.strip().lower()
            if hint in config.known_lanes and hint in available:
                return hint
            return config.default_lane

    raise UnknownStrategyError(f"unhandled selection strategy {config.kind!r}")


def _first_available(order: Sequence[str], available: Sequence[str], default: str) -> str:
    allowed = set(available)
    for lane in order:
        if lane in allowed:
            return lane
    return default


def _weighted_draw(
    weights: Sequence[LaneWeight],
    available: Sequence[str],
    default: str,
    rng: RandomSource | None,
) -> str:
    allowed = set(available)
    candidates = [item for item in weights if item.lane in allowed and item.weight > 0]
    total = sum(item.weight for item in candidates)
    if total <= 0:
        return default

    draw = (rng.random() if rng is not None else random.random()) * total
    cumulative = 0
    for item in candidates:
        cumulative += item.weight
        if cumulative >= draw:
            return item.lane
    return candidates[-1].lane


def _rank_by_metadata(
    lanes: Sequence[str],
    metadata: Mapping[str, LaneMetadata],
    *,
    score: Callable[[LaneMetadata], float | None],
    descending: bool,
    fallback: Sequence[str],
) -> tuple[str, ...]:
    scored: list[tuple[float, str]] = []
    unscored: list[str] = []
    for lane in lanes:
        item = metadata.get(lane)
        value = score(item) if item is not None else None
        if value is None:
            unscored.append(lane)
        else:
            scored.append((-value if descending else value, lane))

    if not scored:
        known = set(lanes)
        head = [lane for lane in fallback if lane in known]
        return (*head, *(lane for lane in lanes if lane not in head))

    scored.sort()
    return (*(lane for _, lane in scored), *unscored)


__all__ = [
    "LaneWeight",
    "RandomSource",
    "SelectionState",
    "StrategyConfig",
    "StrategyKind",
    "parse_strategy_kind",
    "select_lane",
]
