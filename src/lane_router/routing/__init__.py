"""Lane selection: strategy kinds, immutable policy config and the pure selector."""

from lane_router.routing.strategies import (
    LaneWeight,
    SelectionState,
    StrategyConfig,
    StrategyKind,
    parse_strategy_kind,
    select_lane,
)

__all__ = [
    "LaneWeight",
    "SelectionState",
    "StrategyConfig",
    "StrategyKind",
    "parse_strategy_kind",
    "select_lane",
]
