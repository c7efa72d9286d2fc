"""Command-line interface router for sandrun."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final, NoReturn

from sandrun.config import (
    ConfigLoadError,
    ConfigSource,
    ConfigValidationError,
    load_config,
    redact_config,
)
from sandrun.domain.errors import InvalidSessionIdError
from sandrun.domain.models import ExecutionResult, ResultCategory
from sandrun.engine import ExecutionEngine
from sandrun.observability.logging import setup_logging
from sandrun.ui.render import CLIRenderer, create_renderer

EXIT_OK: Final[int] = 0
EXIT_FAILED: Final[int] = 1
EXIT_REJECTED: Final[int] = 2
EXIT_USAGE: Final[int] = 64

_EXIT_BY_CATEGORY: Final[dict[ResultCategory, int]] = {
    ResultCategory.OK: EXIT_OK,
    ResultCategory.FAILED: EXIT_FAILED,
    ResultCategory.REJECTED: EXIT_REJECTED,
    ResultCategory.UNAVAILABLE: EXIT_REJECTED,
}


@dataclass(frozen=True, slots=True)
class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code."""

    message: str
    exit_code: int = EXIT_USAGE

    def __str__(self) -> str:
        return self.message


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> NoReturn:
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router."""

    parser = _ArgumentParser(
        prog="sandrun",
        description=(
            "sandrun - run untrusted JavaScript snippets in throwaway sandboxes.\n\n"
            "Common workflows:\n"
            "  sandrun scan snippet.js             Static risk assessment only\n"
            "  sandrun run snippet.js -p lodash    Scan, install, execute, clean up\n"
            "  sandrun config                      Show the effective config\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to a sandrun TOML config (default: ./sandrun.toml if present).",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )
    common.add_argument(
        "--log-level",
        default=None,
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Override observability.log_level.",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    scan = subparsers.add_parser("scan", parents=[common], help="Assess a snippet's risk.")
    scan.add_argument("file", help="JavaScript file to scan ('-' reads stdin).")
    scan.add_argument("--json", action="store_true", default=False, help="Emit JSON.")
    scan.set_defaults(handler=_cmd_scan)

    run = subparsers.add_parser("run", parents=[common], help="Execute a snippet in a sandbox.")
    run.add_argument("file", help="JavaScript file to run ('-' reads stdin).")
    run.add_argument(
        "-p",
        "--package",
        dest="packages",
        action="append",
        default=[],
        metavar="PACKAGE",
        help="Package to install before running (repeatable).",
    )
    run.add_argument("--session-id", default=None, help="Session ID (default: generated).")
    run.add_argument(
        "--timeout-ms",
        type=int,
        default=None,
        help="Override execution.execution_timeout_ms for this run.",
    )
    run.add_argument("--json", action="store_true", default=False, help="Emit JSON.")
    run.set_defaults(handler=_cmd_run)

    config = subparsers.add_parser("config", parents=[common], help="Show effective config.")
    config.add_argument("--json", action="store_true", default=False, help="Emit JSON.")
    config.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return EXIT_USAGE

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


def main(argv: Sequence[str] | None = None) -> int:
    return run_cli(argv)


def cli_entrypoint() -> None:
    """Console-script entrypoint."""

    raise SystemExit(run_cli())


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_scan(args: argparse.Namespace) -> int:
    source = _load_config_source(args)
    code = _read_code(args.file)
    engine = ExecutionEngine(source)
    result = engine.scan_code(code)

    if args.json:
        _emit_json({"command": "scan", "file": args.file, "result": result.to_dict()})
    else:
        _get_renderer(args).scan_report(result)
    return EXIT_OK if result.safe else EXIT_REJECTED


def _cmd_run(args: argparse.Namespace) -> int:
    overrides: dict[str, Any] = {}
    if args.timeout_ms is not None:
        overrides["execution"] = {"execution_timeout_ms": args.timeout_ms}
    source = _load_config_source(args, overrides=overrides)
    code = _read_code(args.file)
    engine = ExecutionEngine(source)

    try:
        result = asyncio.run(_run_session(engine, args.session_id, args.packages, code))
    except InvalidSessionIdError as exc:
        raise CLIError(str(exc)) from exc

    if args.json:
        _emit_json({"command": "run", "file": args.file, "result": result.to_dict()})
    else:
        _get_renderer(args).execution_result(result)
    return _EXIT_BY_CATEGORY[result.category]


def _cmd_config(args: argparse.Namespace) -> int:
    source = _load_config_source(args)
    redacted = redact_config(source.snapshot())

    if args.json:
        _emit_json({"command": "config", "config": redacted})
        return EXIT_OK

    renderer = _get_renderer(args)
    renderer.kv("Config file", args.config_path or "(default search)")
    renderer.text(json.dumps(redacted, indent=2, sort_keys=True, ensure_ascii=False))
    return EXIT_OK


async def _run_session(
    engine: ExecutionEngine,
    session_id: str | None,
    packages: Sequence[str],
    code: str,
) -> ExecutionResult:
    try:
        return await engine.create_session(session_id, packages, code)
    finally:
        engine.shutdown()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_config_source(
    args: argparse.Namespace, *, overrides: Mapping[str, object] | None = None
) -> ConfigSource:
    merged: dict[str, Any] = dict(overrides or {})
    if args.log_level is not None:
        merged["observability"] = {"log_level": args.log_level}
    try:
        config = load_config(args.config_path, overrides=merged)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc)) from exc
    source = ConfigSource(config)
    setup_logging(source.get("observability"), stream=sys.stderr)
    return source


def _read_code(file_arg: str) -> str:
    if file_arg == "-":
        return sys.stdin.read()
    path = Path(file_arg).expanduser()
    try:
        return path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise CLIError(f"unable to read {path}: {exc}") from exc


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=bool(getattr(args, "no_color", False)))


__all__ = ["CLIError", "build_parser", "cli_entrypoint", "main", "run_cli"]
