"""
sandrun — unit tests for constrained dependency installation

File: tests/unit/sandbox/test_dependency_installer.py

Purpose
- Validate package spec parsing, deny-list filtering and auditing, strict
  policy rejection, manifest updates and package manager failure mapping.
- The package manager is replaced by an in-memory runner; no network access.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from sandrun.domain.errors import InstallError, PackagePolicyError
from sandrun.sandbox.dependency_installer import (
    DependencyInstaller,
    InstallPolicy,
    PackageSpec,
    install_environment,
    is_denied,
    parse_package_spec,
)
from sandrun.sandbox.process import CommandExecutionResult
from sandrun.sandbox.provisioner import SandboxProvisioner
from sandrun.utils.concurrency import CancellationToken


@dataclass
class FakeRunner:
    returncode: int = 0
    stdout: str = ""
    stderr: str = ""
    error: BaseException | None = None
    calls: list[dict[str, Any]] = field(default_factory=list)

    async def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout_seconds: float,
        cancel_token: CancellationToken | None = None,
    ) -> CommandExecutionResult:
        self.calls.append(
            {
                "command": tuple(command),
                "cwd": cwd,
                "env": dict(env),
                "timeout_seconds": timeout_seconds,
                "cancel_token": cancel_token,
            }
        )
        if self.error is not None:
            raise self.error
        return CommandExecutionResult(
            command=tuple(command),
            cwd=cwd,
            returncode=self.returncode,
            stdout=self.stdout,
            stderr=self.stderr,
        )


@pytest.fixture()
def sandbox(tmp_path: Path) -> Path:
    return SandboxProvisioner(tmp_path / "root").provision("sess-install")


def _manifest_deps(sandbox: Path) -> dict[str, str]:
    manifest = json.loads((sandbox / "package.json").read_text(encoding="utf-8"))
    return dict(manifest["dependencies"])


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("lodash", PackageSpec("lodash")),
        ("lodash@^4.17.21", PackageSpec("lodash", "^4.17.21")),
        ("@types/node@20.x", PackageSpec("@types/node", "20.x")),
        ("left-pad@~1.3.0", PackageSpec("left-pad", "~1.3.0")),
        ("chalk@>=4 <6", None),
    ],
)
def test_parse_package_spec(raw: str, expected: PackageSpec | None) -> None:
    if expected is None:
        with pytest.raises(InstallError):
            parse_package_spec(raw)
        return
    assert parse_package_spec(raw) == expected


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "--registry=https://evil.example",
        "lodash; rm -rf /",
        "https://example.com/pkg.tgz",
        "../local-package",
        "git+ssh://host/repo.git",
        "Lodash",
        "a" * 215,
    ],
)
def test_invalid_specs_are_rejected(raw: str) -> None:
    with pytest.raises(InstallError):
        parse_package_spec(raw)


@pytest.mark.parametrize(
    ("spec", "denied"),
    [
        ("fs", True),
        ("fs@1.0.0", True),
        ("node:child_process", True),
        ("FS", True),
        ("fs-extra", False),
        ("@scope/fs", False),
        ("lodash", False),
    ],
)
def test_deny_list_matches_base_module(spec: str, denied: bool) -> None:
    assert is_denied(spec) is denied


def test_install_environment_keeps_only_path(tmp_path: Path) -> None:
    env = install_environment(tmp_path, {"PATH": "/bin", "NPM_TOKEN": "secret", "HOME": "/root"})

    assert env["PATH"] == "/bin"
    assert env["HOME"] == str(tmp_path)
    assert env["npm_config_cache"] == str(tmp_path / ".npm")
    assert "NPM_TOKEN" not in env


async def test_allowed_packages_are_recorded_and_installed(sandbox: Path) -> None:
    runner = FakeRunner()
    installer = DependencyInstaller(runner=runner, base_env={"PATH": "/bin", "SECRET": "x"})

    report = await installer.install(sandbox, ["lodash@^4.17.0", "@types/node", "lodash"])

    assert report.installed == ("lodash@^4.17.0", "@types/node")
    assert report.filtered == ()
    assert not report.skipped
    assert _manifest_deps(sandbox) == {"lodash": "^4.17.0", "@types/node": "latest"}
    [call] = runner.calls
    assert call["command"] == ("npm", "install", "--no-audit", "--no-fund", "--ignore-scripts")
    assert call["cwd"] == sandbox
    assert call["timeout_seconds"] == 60.0
    assert "SECRET" not in call["env"]


async def test_dangerous_packages_are_filtered_and_audited(
    sandbox: Path, recording_audit: Callable[[], Any]
) -> None:
    runner = FakeRunner()
    audit = recording_audit()
    installer = DependencyInstaller(runner=runner, audit_sink=audit)

    report = await installer.install(sandbox, ["fs", "lodash"], session_id="sess-install")

    assert report.filtered == ("fs",)
    assert report.installed == ("lodash",)
    assert report.requested == ("fs", "lodash")
    assert _manifest_deps(sandbox) == {"lodash": "latest"}
    assert audit.kinds() == ["dangerous_package_filtered"]
    assert audit.events[0][1] == {"package": "fs", "session_id": "sess-install", "strict": False}


async def test_only_dangerous_packages_skips_package_manager(
    sandbox: Path, recording_audit: Callable[[], Any]
) -> None:
    runner = FakeRunner()
    installer = DependencyInstaller(runner=runner, audit_sink=recording_audit())

    report = await installer.install(sandbox, ["fs", "child_process"])

    assert report.skipped
    assert report.filtered == ("fs", "child_process")
    assert runner.calls == []
    assert _manifest_deps(sandbox) == {}


async def test_strict_policy_rejects_whole_request(
    sandbox: Path, recording_audit: Callable[[], Any]
) -> None:
    runner = FakeRunner()
    audit = recording_audit()
    installer = DependencyInstaller(runner=runner, audit_sink=audit)

    with pytest.raises(PackagePolicyError) as excinfo:
        await installer.install(sandbox, ["lodash", "net"], policy=InstallPolicy(strict=True))

    assert excinfo.value.packages == ("net",)
    assert audit.kinds() == ["dangerous_package_filtered"]
    assert runner.calls == []


async def test_blocking_can_be_disabled(sandbox: Path) -> None:
    runner = FakeRunner()
    installer = DependencyInstaller(runner=runner)

    report = await installer.install(
        sandbox, ["fs"], policy=InstallPolicy(block_dangerous_packages=False)
    )

    assert report.installed == ("fs",)
    assert len(runner.calls) == 1


async def test_non_zero_exit_raises_install_error(sandbox: Path) -> None:
    runner = FakeRunner(returncode=1, stderr="npm ERR! 404 Not Found - GET lodashh\n")
    installer = DependencyInstaller(runner=runner)

    with pytest.raises(InstallError, match="exit code 1") as excinfo:
        await installer.install(sandbox, ["lodashh"])

    assert "404 Not Found" in str(excinfo.value)
    assert excinfo.value.stderr.startswith("npm ERR!")


async def test_timeout_raises_install_error(sandbox: Path) -> None:
    installer = DependencyInstaller(runner=FakeRunner(error=TimeoutError()), timeout_ms=1500)

    with pytest.raises(InstallError, match=r"timed out after 1\.5 seconds"):
        await installer.install(sandbox, ["lodash"])


async def test_missing_package_manager_raises_install_error(sandbox: Path) -> None:
    installer = DependencyInstaller(runner=FakeRunner(error=FileNotFoundError("npm")))

    with pytest.raises(InstallError, match="unable to start package manager"):
        await installer.install(sandbox, ["lodash"])


async def test_cancellation_maps_to_install_error_only_when_token_fired(sandbox: Path) -> None:
    token = CancellationToken()
    token.cancel()
    installer = DependencyInstaller(runner=FakeRunner(error=asyncio.CancelledError()))

    with pytest.raises(InstallError, match="cancelled"):
        await installer.install(sandbox, ["lodash"], cancel_token=token)
    with pytest.raises(asyncio.CancelledError):
        await installer.install(sandbox, ["lodash"])


async def test_invalid_spec_fails_before_any_side_effect(sandbox: Path) -> None:
    runner = FakeRunner()
    installer = DependencyInstaller(runner=runner)

    with pytest.raises(InstallError, match="invalid package spec"):
        await installer.install(sandbox, ["lodash", "--global"])

    assert runner.calls == []
    assert _manifest_deps(sandbox) == {}


async def test_denied_entries_are_audited_even_when_a_later_spec_is_invalid(
    sandbox: Path, recording_audit: Callable[[], Any]
) -> None:
    runner = FakeRunner()
    audit = recording_audit()
    installer = DependencyInstaller(runner=runner, audit_sink=audit)

    with pytest.raises(InstallError, match="invalid package spec"):
        await installer.install(sandbox, ["net", "--global", "fs"], session_id="sess-mixed")

    assert audit.kinds() == ["dangerous_package_filtered", "dangerous_package_filtered"]
    assert [payload["package"] for _, payload in audit.events] == ["net", "fs"]
    assert runner.calls == []
    assert _manifest_deps(sandbox) == {}


def test_installer_constructor_validation() -> None:
    with pytest.raises(ValueError):
        DependencyInstaller(command=())
    with pytest.raises(ValueError):
        DependencyInstaller(timeout_ms=0)


def test_install_policy_from_config() -> None:
    policy = InstallPolicy.from_config(
        {"block_dangerous_packages": True, "strict_package_policy": True}
    )

    assert policy == InstallPolicy(block_dangerous_packages=True, strict=True)
    assert InstallPolicy.from_config({}) == InstallPolicy()
