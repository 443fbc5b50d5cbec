"""Exception hierarchy shared by dispatcher and worker processes."""

from __future__ import annotations


class LaneRouterError(RuntimeError):
    """Base error for routing runtime failures."""


class ConfigurationError(LaneRouterError):
    """Raised when runtime settings cannot support the requested process role."""


class UnknownStrategyError(ConfigurationError):
    """Raised when a selection strategy name is not recognized."""


class WorkerBindingError(ConfigurationError):
    """Raised when a worker is not bound to exactly one known lane."""


class MalformedJobError(LaneRouterError):
    """Raised when an intake message cannot be parsed into a job record."""


class BrokerUnavailableError(LaneRouterError):
    """Raised when the broker cannot be reached after all connect attempts."""


__all__ = [
    "BrokerUnavailableError",
    "ConfigurationError",
    "LaneRouterError",
    "MalformedJobError",
    "UnknownStrategyError",
    "WorkerBindingError",
]
