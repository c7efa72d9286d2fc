"""Constrained dependency installation inside a provisioned sandbox.

Requested package specs are validated, deduplicated and checked against a
deny list of built-in modules that grant host, network-server or
process-spawning capability. Denied entries are dropped and audited (or, in
strict mode, reject the whole request). The survivors are added to the
sandbox manifest and the package manager runs in the sandbox under a hard
timeout.
"""

from __future__ import annotations

import asyncio
import os
import re
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Final

import structlog

from sandrun.constants import DEFAULT_INSTALL_COMMAND, DEFAULT_INSTALL_TIMEOUT_MS
from sandrun.domain.errors import InstallError, PackagePolicyError
from sandrun.domain.models import JSONValue
from sandrun.observability.audit import AuditSink, SecurityEventKind, emit_security_event
from sandrun.sandbox.process import AsyncSubprocessCommandRunner, CommandRunner
from sandrun.sandbox.provisioner import read_manifest, write_manifest
from sandrun.security.patterns import module_base_name
from sandrun.utils.concurrency import CancellationToken

logger = structlog.get_logger(__name__)

DENIED_PACKAGES: Final[frozenset[str]] = frozenset(
    {
        "fs",
        "os",
        "child_process",
        "cluster",
        "dgram",
        "dns",
        "net",
        "tls",
        "http",
        "https",
        "http2",
        "worker_threads",
        "vm",
        "v8",
        "inspector",
        "repl",
        "module",
        "process",
    }
)

_PACKAGE_SPEC_RE: Final[re.Pattern[str]] = re.compile(
    r"^(?P<name>(?:@[a-z0-9][a-z0-9._~-]*/)?[a-z0-9][a-z0-9._~-]*)"
    r"(?:@(?P<range>[0-9A-Za-z.^~<>=*|+-]{1,64}))?$"
)
_MAX_NAME_LEN: Final[int] = 214
_STDERR_TAIL: Final[int] = 2000


@dataclass(frozen=True, slots=True)
class PackageSpec:
    name: str
    version_range: str | None = None

    @property
    def manifest_version(self) -> str:
        return self.version_range or "latest"

    def __str__(self) -> str:
        if self.version_range is None:
            return self.name
        return f"{self.name}@{self.version_range}"


@dataclass(frozen=True, slots=True)
class InstallPolicy:
    """Deny-list handling: filter silently (default) or reject the whole request."""

    block_dangerous_packages: bool = True
    strict: bool = False

    @classmethod
    def from_config(cls, security: Mapping[str, object]) -> InstallPolicy:
        return cls(
            block_dangerous_packages=bool(security.get("block_dangerous_packages", True)),
            strict=bool(security.get("strict_package_policy", False)),
        )


@dataclass(frozen=True, slots=True)
class InstallReport:
    requested: tuple[str, ...]
    installed: tuple[str, ...]
    filtered: tuple[str, ...]

    @property
    def skipped(self) -> bool:
        return not self.installed

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "requested": list(self.requested),
            "installed": list(self.installed),
            "filtered": list(self.filtered),
        }


def parse_package_spec(raw: str) -> PackageSpec:
    """Parse ``name``, ``@scope/name`` or either with ``@<range>``.

    Raises ``InstallError`` for anything else (flags, whitespace, URLs, paths).
    """

    if not isinstance(raw, str):
        raise InstallError(f"package spec must be a string, got {type(raw).__name__}")
    match = _PACKAGE_SPEC_RE.fullmatch(raw)
    if match is None:
        raise InstallError(f"invalid package spec: {raw!r}")
    name = match.group("name")
    if len(name) > _MAX_NAME_LEN:
        raise InstallError(f"package name exceeds {_MAX_NAME_LEN} characters: {raw!r}")
    return PackageSpec(name=name, version_range=match.group("range"))


def is_denied(spec: str, deny_list: Iterable[str] = DENIED_PACKAGES) -> bool:
    """Return ``True`` when the spec's base module name is on ``deny_list``."""

    if spec.startswith("@"):
        base = module_base_name(spec)
    else:
        base = module_base_name(spec.split("@", 1)[0])
    return base.lower() in frozenset(deny_list)


def install_environment(sandbox_path: Path, base_env: Mapping[str, str]) -> dict[str, str]:
    env = {key: value for key, value in base_env.items() if key == "PATH"}
    env.update(
        {
            "HOME": str(sandbox_path),
            "npm_config_cache": str(sandbox_path / ".npm"),
            "npm_config_update_notifier": "false",
            "npm_config_fund": "false",
            "npm_config_audit": "false",
        }
    )
    return env


class DependencyInstaller:
    """Filter, record and install third-party packages for one sandbox."""

    def __init__(
        self,
        *,
        runner: CommandRunner | None = None,
        command: Sequence[str] = DEFAULT_INSTALL_COMMAND,
        timeout_ms: int = DEFAULT_INSTALL_TIMEOUT_MS,
        audit_sink: AuditSink | None = None,
        deny_list: Iterable[str] = DENIED_PACKAGES,
        base_env: Mapping[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        if isinstance(timeout_ms, bool) or timeout_ms <= 0:
            raise ValueError("timeout_ms must be a positive integer")
        self._runner = runner or AsyncSubprocessCommandRunner()
        self._command = tuple(command)
        self._timeout_ms = timeout_ms
        self._audit_sink = audit_sink
        self._deny_list = frozenset(name.lower() for name in deny_list)
        self._base_env = base_env

    def resolve(
        self,
        packages: Sequence[str],
        *,
        policy: InstallPolicy,
    ) -> tuple[tuple[str, ...], tuple[PackageSpec, ...], tuple[str, ...]]:
        """Split ``packages`` into (requested, allowed specs, filtered) without side effects."""

        requested, allowed, filtered, error = self._split(packages, policy)
        if error is not None:
            raise error
        return requested, allowed, filtered

    async def install(
        self,
        sandbox_path: Path,
        packages: Sequence[str],
        *,
        policy: InstallPolicy | None = None,
        session_id: str | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> InstallReport:
        active_policy = policy or InstallPolicy()
        requested, allowed, filtered, error = self._split(packages, active_policy)

        # Deny-listed entries are audited even when another entry is invalid.
        for name in filtered:
            logger.warning("dangerous_package_filtered", package=name)
            if self._audit_sink is not None:
                emit_security_event(
                    self._audit_sink,
                    SecurityEventKind.DANGEROUS_PACKAGE_FILTERED,
                    {"package": name, "session_id": session_id, "strict": active_policy.strict},
                )
        if error is not None:
            raise error
        if filtered and active_policy.strict:
            raise PackagePolicyError(filtered)

        if not allowed:
            logger.info("dependency_install_skipped", requested=list(requested))
            return InstallReport(requested=requested, installed=(), filtered=filtered)

        self._record_dependencies(sandbox_path, allowed)
        await self._run_package_manager(sandbox_path, cancel_token)

        installed = tuple(str(spec) for spec in allowed)
        logger.info("dependencies_installed", packages=list(installed))
        return InstallReport(requested=requested, installed=installed, filtered=filtered)

    def _split(
        self, packages: Sequence[str], policy: InstallPolicy
    ) -> tuple[tuple[str, ...], tuple[PackageSpec, ...], tuple[str, ...], InstallError | None]:
        requested: list[str] = []
        allowed: list[PackageSpec] = []
        filtered: list[str] = []
        seen: set[str] = set()
        error: InstallError | None = None
        for raw in packages:
            if not isinstance(raw, str):
                error = error or InstallError(
                    f"package spec must be a string, got {type(raw).__name__}"
                )
                continue
            if policy.block_dangerous_packages and is_denied(raw, self._deny_list):
                if raw not in seen:
                    seen.add(raw)
                    requested.append(raw)
                    filtered.append(raw)
                continue
            try:
                spec = parse_package_spec(raw)
            except InstallError as exc:
                error = error or exc
                continue
            if spec.name in seen:
                continue
            seen.add(spec.name)
            requested.append(raw)
            allowed.append(spec)
        return tuple(requested), tuple(allowed), tuple(filtered), error

    def _record_dependencies(self, sandbox_path: Path, specs: Sequence[PackageSpec]) -> None:
        try:
            manifest = read_manifest(sandbox_path)
            dependencies = manifest.get("dependencies")
            if not isinstance(dependencies, dict):
                dependencies = {}
                manifest["dependencies"] = dependencies
            for spec in specs:
                dependencies[spec.name] = spec.manifest_version
            write_manifest(sandbox_path, manifest)
        except (OSError, ValueError) as exc:
            raise InstallError(f"unable to update sandbox manifest: {exc}") from exc

    async def _run_package_manager(
        self, sandbox_path: Path, cancel_token: CancellationToken | None
    ) -> None:
        env = install_environment(
            sandbox_path, os.environ if self._base_env is None else self._base_env
        )
        timeout_seconds = self._timeout_ms / 1000.0
        try:
            result = await self._runner.run(
                self._command,
                cwd=sandbox_path,
                env=env,
                timeout_seconds=timeout_seconds,
                cancel_token=cancel_token,
            )
        except TimeoutError as exc:
            raise InstallError(
                f"package installation timed out after {timeout_seconds:g} seconds"
            ) from exc
        except asyncio.CancelledError:
            if cancel_token is not None and cancel_token.is_cancelled:
                raise InstallError("package installation cancelled") from None
            raise
        except OSError as exc:
            raise InstallError(f"unable to start package manager: {exc}") from exc

        if result.returncode != 0:
            detail = (result.stderr.strip() or result.stdout.strip())[-_STDERR_TAIL:]
            raise InstallError(
                f"package installation failed with exit code {result.returncode}: {detail}",
                stdout=result.stdout,
                stderr=result.stderr,
            )


__all__ = [
    "DENIED_PACKAGES",
    "DependencyInstaller",
    "InstallPolicy",
    "InstallReport",
    "PackageSpec",
    "install_environment",
    "is_denied",
    "parse_package_spec",
]
