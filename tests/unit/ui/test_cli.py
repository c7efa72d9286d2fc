"""
sandrun — unit tests for the CLI

File: tests/unit/ui/test_cli.py

Purpose
- Validate command routing, JSON and text output, exit codes and config error
  handling. ``run`` uses an engine wired to a Python runtime profile.
"""

from __future__ import annotations

import io
import json
from collections.abc import Callable
from pathlib import Path

import pytest

from sandrun.config.loader import ConfigSource
from sandrun.domain.models import ExecutionResult, FailureKind
from sandrun.engine import ExecutionEngine
from sandrun.sandbox.resource_monitor import MetricsProvider, ResourceMonitor
from sandrun.sandbox.runtime import RuntimeProfile
from sandrun.sandbox.supervisor import ExecutionSupervisor
from sandrun.ui import cli
from sandrun.ui.render import CLIRenderer


@pytest.fixture()
def config_path(tmp_path: Path) -> Path:
    path = tmp_path / "sandrun.toml"
    path.write_text('[sandbox]\nroot = "boxes"\n', encoding="utf-8")
    return path


@pytest.fixture()
def python_engine(
    monkeypatch: pytest.MonkeyPatch,
    python_runtime: RuntimeProfile,
    fixed_metrics: Callable[..., MetricsProvider],
) -> None:
    def _factory(source: ConfigSource) -> ExecutionEngine:
        return ExecutionEngine(
            source,
            monitor=ResourceMonitor(provider=fixed_metrics()),
            supervisor=ExecutionSupervisor(python_runtime),
        )

    monkeypatch.setattr(cli, "ExecutionEngine", _factory)


def _write(tmp_path: Path, name: str, code: str) -> str:
    path = tmp_path / name
    path.write_text(code, encoding="utf-8")
    return str(path)


# ---------------------------------------------------------------------------
# scan
# ---------------------------------------------------------------------------


def test_scan_safe_file_json(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    snippet = _write(tmp_path, "ok.js", "console.log('hi')")

    exit_code = cli.run_cli(["scan", snippet, "--json", "--config", str(config_path)])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == cli.EXIT_OK
    assert payload["command"] == "scan"
    assert payload["result"]["safe"] is True
    assert payload["result"]["risk_level"] == "low"


def test_scan_unsafe_file_renders_issue_table(
    tmp_path: Path,
    config_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    capsys: pytest.CaptureFixture[str],
) -> None:
    monkeypatch.setenv("COLUMNS", "200")
    snippet = _write(tmp_path, "bad.js", "require('child_process').exec('id')")

    exit_code = cli.run_cli(["scan", snippet, "--no-color", "--config", str(config_path)])

    out = capsys.readouterr().out
    assert exit_code == cli.EXIT_REJECTED
    assert "UNSAFE" in out
    assert "dangerous_package" in out


def test_scan_reads_stdin(
    config_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    monkeypatch.setattr("sys.stdin", io.StringIO("eval('1')"))

    exit_code = cli.run_cli(["scan", "-", "--json", "--config", str(config_path)])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == cli.EXIT_OK
    assert payload["result"]["risk_level"] == "high"


def test_missing_snippet_file_is_usage_error(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = cli.run_cli(["scan", str(tmp_path / "nope.js"), "--config", str(config_path)])

    assert exit_code == cli.EXIT_USAGE
    assert "unable to read" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# run
# ---------------------------------------------------------------------------


@pytest.mark.usefixtures("python_engine")
def test_run_success_json(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    snippet = _write(tmp_path, "hello.py", "print('hi')")

    exit_code = cli.run_cli(
        ["run", snippet, "--json", "--session-id", "cli-1", "--config", str(config_path)]
    )

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == cli.EXIT_OK
    assert payload["result"]["success"] is True
    assert payload["result"]["output"] == "hi\n"
    assert payload["result"]["session_id"] == "cli-1"
    assert not (tmp_path / "boxes" / "cli-1").exists()


@pytest.mark.usefixtures("python_engine")
def test_run_failure_text_output(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    snippet = _write(tmp_path, "fail.py", "import sys\nprint('partial')\nsys.exit(4)")

    exit_code = cli.run_cli(["run", snippet, "--no-color", "--config", str(config_path)])

    out = capsys.readouterr().out
    assert exit_code == cli.EXIT_FAILED
    assert "partial" in out
    assert "[failed] non_zero_exit exit=4" in out


@pytest.mark.usefixtures("python_engine")
def test_run_timeout_override(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    snippet = _write(tmp_path, "slow.py", "import time\ntime.sleep(30)")

    exit_code = cli.run_cli(
        ["run", snippet, "--json", "--timeout-ms", "500", "--config", str(config_path)]
    )

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == cli.EXIT_FAILED
    assert payload["result"]["failure"] == "execution_timeout"


def test_run_unsafe_code_is_rejected(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    snippet = _write(tmp_path, "bad.js", "require('net').createServer()")

    exit_code = cli.run_cli(["run", snippet, "--json", "--config", str(config_path)])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == cli.EXIT_REJECTED
    assert payload["result"]["failure"] == "scan_rejected"
    assert payload["result"]["category"] == "rejected"


def test_run_invalid_session_id_is_usage_error(
    tmp_path: Path, config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    snippet = _write(tmp_path, "ok.js", "console.log(1)")

    exit_code = cli.run_cli(
        ["run", snippet, "--session-id", "../x", "--config", str(config_path)]
    )

    assert exit_code == cli.EXIT_USAGE
    assert "session_id" in capsys.readouterr().err


# ---------------------------------------------------------------------------
# config and errors
# ---------------------------------------------------------------------------


def test_config_json_is_redacted_and_normalized(
    config_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = cli.run_cli(["config", "--json", "--config", str(config_path)])

    payload = json.loads(capsys.readouterr().out)
    assert exit_code == cli.EXIT_OK
    expected_root = (config_path.parent.resolve() / "boxes").as_posix()
    assert payload["config"]["sandbox"]["root"] == expected_root
    assert payload["config"]["installer"]["command"][0] == "npm"


def test_missing_config_file_is_usage_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    exit_code = cli.run_cli(["config", "--config", str(tmp_path / "missing.toml")])

    assert exit_code == cli.EXIT_USAGE
    assert "config file not found" in capsys.readouterr().err


def test_invalid_config_value_is_usage_error(
    tmp_path: Path, capsys: pytest.CaptureFixture[str]
) -> None:
    path = tmp_path / "bad.toml"
    path.write_text("[execution]\nmax_concurrent_executions = 0\n", encoding="utf-8")

    exit_code = cli.run_cli(["config", "--config", str(path)])

    assert exit_code == cli.EXIT_USAGE
    assert "execution.max_concurrent_executions" in capsys.readouterr().err


def test_argument_errors_exit_with_usage_code() -> None:
    with pytest.raises(SystemExit) as excinfo:
        cli.run_cli([])
    assert excinfo.value.code == cli.EXIT_USAGE

    with pytest.raises(SystemExit) as excinfo:
        cli.run_cli(["run"])
    assert excinfo.value.code == cli.EXIT_USAGE


def test_renderer_reports_filtered_packages_and_stderr() -> None:
    buffer = io.StringIO()
    renderer = CLIRenderer(no_color=True, file=buffer)

    renderer.execution_result(
        ExecutionResult(
            success=False,
            output="out\n",
            errors="boom\n",
            exit_code=1,
            duration_ms=12.0,
            failure=FailureKind.NON_ZERO_EXIT,
            message="process exited with code 1",
            filtered_packages=("fs",),
        )
    )

    text = buffer.getvalue()
    assert text.startswith("out\n")
    assert "[failed] non_zero_exit exit=1 12 ms" in text
    assert "boom" in text
    assert "package 'fs' was filtered by the security policy" in text
