"""Output rendering for the sandrun CLI.

File: src/sandrun/ui/render.py

Purpose
- Provide a thin rendering layer over ``rich`` for scan reports, execution
  results and config dumps.
- Respect the NO_COLOR environment variable and the --no-color CLI flag.
"""

from __future__ import annotations

import os
from typing import IO, TYPE_CHECKING

from rich.console import Console
from rich.table import Table

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sandrun.domain.models import ExecutionResult, ScanResult

_SEVERITY_STYLE = {
    "low": "dim",
    "medium": "yellow",
    "high": "bold yellow",
    "critical": "bold red",
}


def _color_allowed(no_color_flag: bool) -> bool:
    if no_color_flag:
        return False
    return not os.environ.get("NO_COLOR", "")


class CLIRenderer:
    """Render CLI output through a ``rich`` console.

    Program output (a snippet's stdout) is written verbatim without markup
    processing.
    """

    def __init__(self, *, no_color: bool = False, file: IO[str] | None = None) -> None:
        color = _color_allowed(no_color)
        self.console = Console(
            file=file,
            no_color=not color,
            highlight=False,
            soft_wrap=True,
        )

    def kv(self, key: str, value: object) -> None:
        self.console.print(f"{key}: {value}", markup=False)

    def text(self, line: str) -> None:
        self.console.print(line, markup=False)

    def warning(self, text: str) -> None:
        self.console.print(f"Warning: {text}", style="yellow", markup=False)

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        if not rows:
            return
        table = Table(title=title, show_lines=False)
        for header in headers:
            table.add_column(header)
        for row in rows:
            table.add_row(*(str(cell) for cell in row))
        self.console.print(table)

    def scan_report(self, result: ScanResult) -> None:
        """Print the verdict, risk level and one table row per issue."""

        verdict = "safe" if result.safe else "UNSAFE"
        self.console.print(
            f"Verdict: {verdict}  risk={result.risk_level.value}  score={result.score}",
            style="green" if result.safe else "bold red",
            markup=False,
        )
        if not result.issues:
            return
        table = Table(title="Issues")
        for header in ("Severity", "Kind", "Description", "Match"):
            table.add_column(header)
        for issue in result.issues:
            table.add_row(
                issue.severity.value,
                issue.kind.value,
                issue.description,
                issue.matched_pattern or "",
                style=_SEVERITY_STYLE.get(issue.severity.value),
            )
        self.console.print(table)

    def execution_result(self, result: ExecutionResult) -> None:
        if result.output:
            self.console.out(result.output, end="" if result.output.endswith("\n") else "\n")
        style = "green" if result.success else "bold red"
        summary = f"[{result.category.value}]"
        if result.failure is not None:
            summary += f" {result.failure.value}"
        if result.exit_code is not None:
            summary += f" exit={result.exit_code}"
        summary += f" {result.duration_ms:.0f} ms"
        self.console.print(summary, style=style, markup=False)
        if result.message:
            self.text(result.message)
        if result.errors and result.errors != result.message:
            self.console.print("stderr:", style="dim", markup=False)
            self.text(result.errors.rstrip("\n"))
        for name in result.filtered_packages:
            self.warning(f"package {name!r} was filtered by the security policy")
        if not result.success and result.issues:
            rows = [
                (issue.severity.value, issue.kind.value, issue.description)
                for issue in result.issues
            ]
            self.table(("Severity", "Kind", "Description"), rows, title="Issues")


def create_renderer(*, no_color: bool = False, file: IO[str] | None = None) -> CLIRenderer:
    return CLIRenderer(no_color=no_color, file=file)


__all__ = ["CLIRenderer", "create_renderer"]
