"""Module entrypoint for ``python -m lane_router``."""

from __future__ import annotations

from lane_router.main import cli_entrypoint

if __name__ == "__main__":
    raise SystemExit(cli_entrypoint())
