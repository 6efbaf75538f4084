"""Thin command-line surface for ralph-town."""

from ralph_town.ui.cli import CLIError, build_parser, run_cli
from ralph_town.ui.render import CLIRenderer

__all__ = ["CLIError", "CLIRenderer", "build_parser", "run_cli"]
