"""Error taxonomy for the execution pipeline.

Phase components raise these; :class:`sandrun.engine.ExecutionEngine` converts
them into structured :class:`sandrun.domain.models.ExecutionResult` values.
Execution-phase failures (timeout, output overflow, non-zero exit) are not
exceptions: the supervisor reports them on the result's ``failure`` field.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence

    from sandrun.domain.models import Issue


class SandrunError(RuntimeError):
    """Base error for engine failures."""


class InvalidSessionIdError(SandrunError, ValueError):
    """Raised when a session ID cannot be used as a sandbox directory name."""


class ScanRejected(SandrunError):
    """Raised when the risk scanner reports at least one critical issue."""

    def __init__(self, issues: Sequence[Issue]) -> None:
        self.issues = tuple(issues)
        details = ", ".join(issue.description for issue in self.issues) or "no details"
        super().__init__(f"code failed security validation: {details}")


class AdmissionRefused(SandrunError):
    """Raised when concurrency or host resource limits refuse a new session."""

    def __init__(self, reason: str, *, violations: Sequence[str] = ()) -> None:
        self.reason = reason
        self.violations = tuple(violations)
        super().__init__(reason)


class ProvisionError(SandrunError):
    """Raised when a session sandbox cannot be created."""


class InstallError(SandrunError):
    """Raised when dependency resolution or installation fails."""

    def __init__(self, message: str, *, stdout: str = "", stderr: str = "") -> None:
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(message)


class PackagePolicyError(InstallError):
    """Raised in strict mode when requested packages hit the deny list."""

    def __init__(self, packages: Sequence[str]) -> None:
        self.packages = tuple(packages)
        super().__init__(f"dangerous packages rejected by policy: {', '.join(self.packages)}")


class CleanupError(SandrunError):
    """Raised when a sandbox directory cannot be removed."""


__all__ = [
    "AdmissionRefused",
    "CleanupError",
    "InstallError",
    "InvalidSessionIdError",
    "PackagePolicyError",
    "ProvisionError",
    "SandrunError",
    "ScanRejected",
]
