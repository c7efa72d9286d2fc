"""UI package exports for the CLI and its renderer."""

from sandrun.ui.cli import CLIError, build_parser, cli_entrypoint, main, run_cli
from sandrun.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "cli_entrypoint",
    "create_renderer",
    "main",
    "run_cli",
]
