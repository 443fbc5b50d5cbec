"""
lane-router - package root.

File: src/lane_router/__init__.py
Last updated: 2026-10-18

Purpose
- Route analysis jobs from one intake queue to per-lane worker queues under a
  selection strategy and a shared per-lane rate budget.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init,
  no broker or redis connections).
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
