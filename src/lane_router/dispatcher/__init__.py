"""Intake dispatcher: strategy selection, dispatcher-tier rate check and routing."""

from lane_router.dispatcher.dispatcher import Dispatcher, RouteOutcome

__all__ = ["Dispatcher", "RouteOutcome"]
