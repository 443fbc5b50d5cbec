"""UI package exports for the CLI and its renderer."""

from lane_router.ui.cli import build_parser, run_cli
from lane_router.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "run_cli",
]
