"""
sandrun — execution engine.

File: src/sandrun/engine/engine.py

Purpose
- Run one untrusted snippet through admit -> scan -> resource check ->
  provision -> install -> execute -> cleanup and return a structured
  :class:`ExecutionResult` for every outcome.

Functional requirements
- Admission happens before any scan or filesystem work; a refused request has
  no side effects beyond an audit event.
- Every phase failure short-circuits later phases but always reaches cleanup.
- Numeric limits are re-read from the config source at each admission, so
  updates apply to the next admitted session only.
- ``cleanup_session`` is idempotent and callable at any time, including during
  shutdown for every still-registered session.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path

import structlog

from sandrun.config.loader import ConfigSource
from sandrun.domain.errors import (
    AdmissionRefused,
    InstallError,
    PackagePolicyError,
    ProvisionError,
    SandrunError,
    ScanRejected,
)
from sandrun.domain.ids import generate_session_id, validate_session_id
from sandrun.domain.models import (
    CleanupResult,
    ExecutionLimits,
    ExecutionResult,
    FailureKind,
    Issue,
    JSONValue,
    ScanResult,
    SessionSnapshot,
    SessionState,
)
from sandrun.engine.registry import SessionRegistry
from sandrun.observability.audit import (
    AuditSink,
    LoggingAuditSink,
    SecurityEventKind,
    emit_security_event,
)
from sandrun.observability.logging import session_scope
from sandrun.observability.metrics import ExecutionMetrics
from sandrun.sandbox.dependency_installer import DependencyInstaller, InstallPolicy
from sandrun.sandbox.provisioner import SandboxProvisioner
from sandrun.sandbox.resource_monitor import (
    PsutilMetricsProvider,
    ResourceMonitor,
    ResourceThresholds,
)
from sandrun.sandbox.runtime import NODE_RUNTIME
from sandrun.sandbox.supervisor import ExecutionSupervisor
from sandrun.security.risk_scanner import RiskScanner
from sandrun.utils.concurrency import CancellationToken

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class ExecutionSettings:
    """Per-admission view of the numeric limits and policies in the config."""

    max_concurrent: int
    limits: ExecutionLimits
    install_policy: InstallPolicy
    thresholds: ResourceThresholds
    max_code_bytes: int

    @classmethod
    def from_config(cls, config: ConfigSource) -> ExecutionSettings:
        execution = config.get("execution")
        security = config.get("security")
        return cls(
            max_concurrent=int(execution["max_concurrent_executions"]),
            limits=ExecutionLimits(
                timeout_ms=int(execution["execution_timeout_ms"]),
                max_memory_mb=int(execution["max_memory_mb"]),
                max_output_bytes=int(execution["max_output_bytes"]),
                max_error_bytes=int(execution["max_error_bytes"]),
            ),
            install_policy=InstallPolicy.from_config(security),
            thresholds=ResourceThresholds.from_config(config.get("resources")),
            max_code_bytes=int(security["max_code_bytes"]),
        )


class ExecutionEngine:
    """Orchestrates sandboxed executions and owns the session registry.

    Collaborators default to the production implementations built from
    ``config``; tests inject fakes.
    """

    def __init__(
        self,
        config: ConfigSource | None = None,
        *,
        scanner: RiskScanner | None = None,
        monitor: ResourceMonitor | None = None,
        provisioner: SandboxProvisioner | None = None,
        installer: DependencyInstaller | None = None,
        supervisor: ExecutionSupervisor | None = None,
        registry: SessionRegistry | None = None,
        audit_sink: AuditSink | None = None,
        metrics: ExecutionMetrics | None = None,
    ) -> None:
        self._config = config or ConfigSource()
        self._audit_sink = audit_sink or LoggingAuditSink()
        self._scanner = scanner
        self._registry = registry or SessionRegistry()
        self._metrics = metrics or ExecutionMetrics()

        execution = self._config.get("execution")
        security = self._config.get("security")
        installer_cfg = self._config.get("installer")
        resources = self._config.get("resources")
        sandbox_cfg = self._config.get("sandbox")

        self._monitor = monitor or ResourceMonitor(
            provider=PsutilMetricsProvider(disk_path=resources.get("disk_path")),
        )
        self._provisioner = provisioner or SandboxProvisioner(
            sandbox_cfg.get("root"),
            registry_url=str(security["allowed_registry"]),
        )
        self._installer = installer or DependencyInstaller(
            command=installer_cfg["command"],
            timeout_ms=int(installer_cfg["timeout_ms"]),
            audit_sink=self._audit_sink,
        )
        self._supervisor = supervisor or ExecutionSupervisor(
            NODE_RUNTIME.with_executable(str(execution["runtime_executable"]))
        )

    @property
    def config(self) -> ConfigSource:
        return self._config

    @property
    def registry(self) -> SessionRegistry:
        return self._registry

    @property
    def provisioner(self) -> SandboxProvisioner:
        return self._provisioner

    def scan_code(self, code: str) -> ScanResult:
        """Assess ``code`` without admitting a session."""

        settings = ExecutionSettings.from_config(self._config)
        result = self._scanner_for(settings).scan(code)
        self._metrics.record_scan(safe=result.safe, risk_level=result.risk_level.value)
        return result

    async def create_session(
        self,
        session_id: str | None,
        packages: Sequence[str] = (),
        code: str = "",
    ) -> ExecutionResult:
        """Run ``code`` end to end in a fresh sandbox.

        ``session_id`` may be ``None`` to generate one. Raises
        ``InvalidSessionIdError`` for IDs that are not a safe path component;
        every other outcome is reported on the returned result.
        """

        sid = generate_session_id() if session_id is None else validate_session_id(session_id)
        requested = tuple(packages)
        settings = ExecutionSettings.from_config(self._config)
        started = time.monotonic()
        token = CancellationToken()

        admitted = self._registry.admit(
            sid,
            packages=requested,
            code_size=len(code.encode("utf-8")),
            max_concurrent=settings.max_concurrent,
            cancel_token=token,
        )
        if not admitted:
            emit_security_event(
                self._audit_sink,
                SecurityEventKind.CONCURRENT_EXECUTION_LIMIT,
                {"session_id": sid, "max_concurrent": settings.max_concurrent},
            )
            result = _error_result(
                sid,
                FailureKind.ADMISSION_REFUSED,
                "maximum concurrent executions reached or session id already in use",
                started,
            )
            self._metrics.record_execution(result)
            return result

        with session_scope(sid):
            logger.info("session_started", packages=list(requested))
            try:
                result = await self._run_pipeline(sid, requested, code, settings, token, started)
            finally:
                self._registry.transition(sid, SessionState.TERMINATED)
                self._registry.release(sid)
            logger.info(
                "session_finished",
                success=result.success,
                category=result.category.value,
                failure=None if result.failure is None else result.failure.value,
                duration_ms=round(result.duration_ms, 3),
            )
        self._metrics.record_execution(result)
        return result

    def cleanup_session(self, session_id: str) -> CleanupResult:
        """Force-clean ``session_id``: cancel its child and remove its sandbox.

        A registered session keeps its ID and concurrency slot until its own
        pipeline has reaped the child and released it. Idempotent. Unknown
        sessions succeed once no sandbox directory is left.
        """

        try:
            validate_session_id(session_id)
        except ValueError as exc:
            return CleanupResult(success=False, error=str(exc))

        snapshot = self._registry.get(session_id)
        self._registry.cancel(session_id)
        self._registry.transition(session_id, SessionState.CLEANING_UP)
        sandbox_path = (
            snapshot.sandbox_path
            if snapshot is not None and snapshot.sandbox_path is not None
            else self._provisioner.path_for(session_id)
        )
        result = self._provisioner.teardown(sandbox_path)
        if snapshot is not None:
            logger.info("session_force_cleaned", session_id=session_id, success=result.success)
        return result

    def active_sessions(self) -> tuple[SessionSnapshot, ...]:
        return self._registry.active_sessions()

    def execution_stats(self) -> dict[str, JSONValue]:
        stats = self._metrics.stats()
        stats["active_sessions"] = len(self._registry)
        stats["live_sessions"] = self._registry.live_count()
        return stats

    def shutdown(self) -> dict[str, CleanupResult]:
        """Force-clean every registered session; return results keyed by session ID."""

        results = {
            snapshot.id: self.cleanup_session(snapshot.id)
            for snapshot in self._registry.active_sessions()
        }
        if results:
            logger.info("engine_shutdown", cleaned=len(results))
        return results

    async def _run_pipeline(
        self,
        sid: str,
        packages: tuple[str, ...],
        code: str,
        settings: ExecutionSettings,
        token: CancellationToken,
        started: float,
    ) -> ExecutionResult:
        scan: ScanResult | None = None
        filtered: tuple[str, ...] = ()
        try:
            self._registry.transition(sid, SessionState.SCANNING)
            scan = self._scan(sid, code, settings)
            await self._admit_resources(sid, settings)
            if token.is_cancelled:
                raise asyncio.CancelledError("session cancelled before provisioning")

            self._registry.transition(sid, SessionState.PROVISIONING)
            with self._provisioner.sandbox(sid) as sandbox_path:
                self._registry.set_sandbox_path(sid, sandbox_path)
                try:
                    filtered = await self._install(sid, sandbox_path, packages, settings, token)
                    self._registry.transition(sid, SessionState.RUNNING)
                    result = await self._supervisor.run(
                        sandbox_path, code, settings.limits, cancel_token=token
                    )
                    self._registry.transition(
                        sid, SessionState.COMPLETED if result.success else SessionState.FAILED
                    )
                finally:
                    self._registry.transition(sid, SessionState.CLEANING_UP)
                    self._registry.set_sandbox_path(sid, None)
        except SandrunError as exc:
            self._registry.transition(sid, _state_for_error(exc))
            self._registry.transition(sid, SessionState.CLEANING_UP)
            return _error_result(
                sid,
                _failure_for_error(exc, token),
                str(exc),
                started,
                issues=_issues_for_error(exc, scan),
                filtered=_filtered_for_error(exc, filtered),
            )
        except asyncio.CancelledError:
            if not token.is_cancelled:
                raise
            self._registry.transition(sid, SessionState.FAILED)
            self._registry.transition(sid, SessionState.CLEANING_UP)
            return _error_result(
                sid, FailureKind.CANCELLED, "execution cancelled", started, filtered=filtered
            )

        return replace(
            result,
            session_id=sid,
            issues=() if scan is None else scan.issues,
            filtered_packages=filtered,
        )

    def _scan(self, sid: str, code: str, settings: ExecutionSettings) -> ScanResult:
        scan = self._scanner_for(settings).scan(code)
        self._metrics.record_scan(safe=scan.safe, risk_level=scan.risk_level.value)
        if scan.safe:
            return scan
        emit_security_event(
            self._audit_sink,
            SecurityEventKind.UNSAFE_CODE,
            {
                "session_id": sid,
                "risk_level": scan.risk_level.value,
                "issues": [issue.description for issue in scan.issues],
            },
        )
        raise ScanRejected(scan.issues)

    async def _admit_resources(self, sid: str, settings: ExecutionSettings) -> None:
        check = await asyncio.to_thread(self._monitor.check_limits, settings.thresholds)
        if check.safe:
            return
        emit_security_event(
            self._audit_sink,
            SecurityEventKind.EXECUTION_BLOCKED_RESOURCES,
            {"session_id": sid, "violations": list(check.violations)},
        )
        raise AdmissionRefused(
            f"system resources too high: {', '.join(check.violations)}",
            violations=check.violations,
        )

    async def _install(
        self,
        sid: str,
        sandbox_path: Path,
        packages: tuple[str, ...],
        settings: ExecutionSettings,
        token: CancellationToken,
    ) -> tuple[str, ...]:
        if not packages:
            return ()
        self._registry.transition(sid, SessionState.INSTALLING)
        report = await self._installer.install(
            sandbox_path,
            packages,
            policy=settings.install_policy,
            session_id=sid,
            cancel_token=token,
        )
        return report.filtered

    def _scanner_for(self, settings: ExecutionSettings) -> RiskScanner:
        if self._scanner is not None:
            return self._scanner
        return RiskScanner(max_code_bytes=settings.max_code_bytes)


def _failure_for_error(exc: SandrunError, token: CancellationToken) -> FailureKind:
    if isinstance(exc, ScanRejected):
        return FailureKind.SCAN_REJECTED
    if isinstance(exc, AdmissionRefused):
        return FailureKind.ADMISSION_REFUSED
    if isinstance(exc, ProvisionError):
        return FailureKind.PROVISION_ERROR
    if isinstance(exc, PackagePolicyError):
        return FailureKind.PACKAGE_REJECTED
    if isinstance(exc, InstallError):
        return FailureKind.CANCELLED if token.is_cancelled else FailureKind.INSTALL_ERROR
    return FailureKind.PROVISION_ERROR


def _state_for_error(exc: SandrunError) -> SessionState:
    if isinstance(exc, (ScanRejected, PackagePolicyError)):
        return SessionState.REJECTED
    return SessionState.FAILED


def _issues_for_error(exc: SandrunError, scan: ScanResult | None) -> tuple[Issue, ...]:
    if isinstance(exc, ScanRejected):
        return exc.issues
    return () if scan is None else scan.issues


def _filtered_for_error(exc: SandrunError, filtered: tuple[str, ...]) -> tuple[str, ...]:
    if isinstance(exc, PackagePolicyError):
        return exc.packages
    return filtered


def _error_result(
    sid: str,
    kind: FailureKind,
    message: str,
    started: float,
    *,
    issues: tuple[Issue, ...] = (),
    filtered: tuple[str, ...] = (),
) -> ExecutionResult:
    return ExecutionResult(
        success=False,
        errors=message,
        duration_ms=(time.monotonic() - started) * 1000.0,
        failure=kind,
        message=message,
        issues=issues,
        session_id=sid,
        filtered_packages=filtered,
    )


__all__ = ["ExecutionEngine", "ExecutionSettings"]
