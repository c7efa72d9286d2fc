"""Dataclass domain models for scan results, sessions, and execution outcomes."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING

from sandrun.constants import (
    DEFAULT_EXECUTION_TIMEOUT_MS,
    DEFAULT_MAX_ERROR_BYTES,
    DEFAULT_MAX_MEMORY_MB,
    DEFAULT_MAX_OUTPUT_BYTES,
    RISK_THRESHOLDS,
    SEVERITY_WEIGHT,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from sandrun.utils.concurrency import CancellationToken

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class Severity(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        return SEVERITY_WEIGHT[self.value]


class RiskLevel(StrEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK = {
    RiskLevel.LOW: 0,
    RiskLevel.MEDIUM: 1,
    RiskLevel.HIGH: 2,
    RiskLevel.CRITICAL: 3,
}


class IssueKind(StrEnum):
    DANGEROUS_PACKAGE = "dangerous_package"
    SUSPICIOUS_PATTERN = "suspicious_pattern"
    HEURISTIC = "heuristic"
    DATA_FLOW = "data_flow"
    SYNTAX_ERROR = "syntax_error"
    CODE_SIZE = "code_size"


class SessionState(StrEnum):
    ADMITTED = "admitted"
    SCANNING = "scanning"
    REJECTED = "rejected"
    PROVISIONING = "provisioning"
    INSTALLING = "installing"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CLEANING_UP = "cleaning_up"
    TERMINATED = "terminated"


# States that hold a sandbox and count as live executions.
LIVE_STATES: frozenset[SessionState] = frozenset(
    {SessionState.PROVISIONING, SessionState.INSTALLING, SessionState.RUNNING}
)


class FailureKind(StrEnum):
    SCAN_REJECTED = "scan_rejected"
    PACKAGE_REJECTED = "package_rejected"
    ADMISSION_REFUSED = "admission_refused"
    PROVISION_ERROR = "provision_error"
    INSTALL_ERROR = "install_error"
    EXECUTION_TIMEOUT = "execution_timeout"
    OUTPUT_LIMIT_EXCEEDED = "output_limit_exceeded"
    NON_ZERO_EXIT = "non_zero_exit"
    SPAWN_ERROR = "spawn_error"
    CANCELLED = "cancelled"


class ResultCategory(StrEnum):
    """Coarse outcome a UI layer can branch on."""

    OK = "ok"
    REJECTED = "rejected"
    UNAVAILABLE = "unavailable"
    FAILED = "failed"


_CATEGORY_BY_FAILURE = {
    FailureKind.SCAN_REJECTED: ResultCategory.REJECTED,
    FailureKind.PACKAGE_REJECTED: ResultCategory.REJECTED,
    FailureKind.ADMISSION_REFUSED: ResultCategory.UNAVAILABLE,
}


@dataclass(frozen=True, slots=True)
class Issue:
    """One finding from the risk scanner."""

    kind: IssueKind
    severity: Severity
    description: str
    matched_pattern: str | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "description": self.description,
            "matched_pattern": self.matched_pattern,
        }
        if self.detail is not None:
            payload["detail"] = self.detail
        return payload


def risk_score(issues: Iterable[Issue]) -> int:
    """Weighted issue score: critical=10, high=5, medium=2, low=1."""

    return sum(issue.severity.weight for issue in issues)


def risk_level_for_score(score: int) -> RiskLevel:
    for threshold, level in RISK_THRESHOLDS:
        if score >= threshold:
            return RiskLevel(level)
    return RiskLevel.LOW


@dataclass(frozen=True, slots=True)
class ScanResult:
    """Immutable risk assessment for one code snippet."""

    safe: bool
    issues: tuple[Issue, ...]
    risk_level: RiskLevel

    @classmethod
    def from_issues(cls, issues: Iterable[Issue]) -> ScanResult:
        collected = tuple(issues)
        return cls(
            safe=not any(issue.severity is Severity.CRITICAL for issue in collected),
            issues=collected,
            risk_level=risk_level_for_score(risk_score(collected)),
        )

    @property
    def score(self) -> int:
        return risk_score(self.issues)

    def issues_of(self, kind: IssueKind) -> tuple[Issue, ...]:
        return tuple(issue for issue in self.issues if issue.kind is kind)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "safe": self.safe,
            "risk_level": self.risk_level.value,
            "score": self.score,
            "issues": [issue.to_dict() for issue in self.issues],
        }


@dataclass(frozen=True, slots=True)
class ExecutionLimits:
    """Per-execution ceilings handed to the supervisor."""

    timeout_ms: int = DEFAULT_EXECUTION_TIMEOUT_MS
    max_memory_mb: int = DEFAULT_MAX_MEMORY_MB
    max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES
    max_error_bytes: int = DEFAULT_MAX_ERROR_BYTES

    def __post_init__(self) -> None:
        for name in ("timeout_ms", "max_memory_mb", "max_output_bytes", "max_error_bytes"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ValueError(f"{name} must be a positive integer")

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Outcome of one execution request.

    ``exit_code`` is ``None`` when the child was killed or never spawned.
    ``duration_ms`` is always recorded, whatever the outcome.
    """

    success: bool
    output: str = ""
    errors: str | None = None
    exit_code: int | None = None
    duration_ms: float = 0.0
    failure: FailureKind | None = None
    message: str | None = None
    issues: tuple[Issue, ...] = ()
    session_id: str | None = None
    filtered_packages: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not math.isfinite(self.duration_ms) or self.duration_ms < 0:
            raise ValueError("duration_ms must be a finite value >= 0")
        if self.success and self.failure is not None:
            raise ValueError("successful results cannot carry a failure kind")

    @property
    def category(self) -> ResultCategory:
        if self.failure is None:
            return ResultCategory.OK if self.success else ResultCategory.FAILED
        return _CATEGORY_BY_FAILURE.get(self.failure, ResultCategory.FAILED)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "session_id": self.session_id,
            "success": self.success,
            "category": self.category.value,
            "failure": None if self.failure is None else self.failure.value,
            "message": self.message,
            "output": self.output,
            "errors": self.errors,
            "exit_code": self.exit_code,
            "duration_ms": round(self.duration_ms, 3),
            "issues": [issue.to_dict() for issue in self.issues],
            "filtered_packages": list(self.filtered_packages),
        }


@dataclass(slots=True)
class Session:
    """Mutable registry record for one attempted execution.

    Only the session registry mutates these records; callers receive
    :class:`SessionSnapshot` copies.
    """

    id: str
    requested_packages: tuple[str, ...]
    code_size: int
    state: SessionState = SessionState.ADMITTED
    started_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))
    sandbox_path: Path | None = None
    cancel_token: CancellationToken | None = field(default=None, repr=False)

    def snapshot(self, *, now: datetime | None = None) -> SessionSnapshot:
        current = now or datetime.now(tz=UTC)
        elapsed_ms = max(0.0, (current - self.started_at).total_seconds() * 1000.0)
        return SessionSnapshot(
            id=self.id,
            state=self.state,
            requested_packages=self.requested_packages,
            code_size=self.code_size,
            started_at=self.started_at,
            sandbox_path=self.sandbox_path,
            elapsed_ms=elapsed_ms,
        )


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    id: str
    state: SessionState
    requested_packages: tuple[str, ...]
    code_size: int
    started_at: datetime
    sandbox_path: Path | None
    elapsed_ms: float

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "id": self.id,
            "state": self.state.value,
            "packages": list(self.requested_packages),
            "code_size": self.code_size,
            "started_at": self.started_at.isoformat(),
            "sandbox_path": None if self.sandbox_path is None else str(self.sandbox_path),
            "elapsed_ms": round(self.elapsed_ms, 3),
        }


@dataclass(frozen=True, slots=True)
class CleanupResult:
    success: bool
    error: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {"success": self.success}
        if self.error is not None:
            payload["error"] = self.error
        return payload


__all__ = [
    "LIVE_STATES",
    "CleanupResult",
    "ExecutionLimits",
    "ExecutionResult",
    "FailureKind",
    "Issue",
    "IssueKind",
    "JSONScalar",
    "JSONValue",
    "ResultCategory",
    "RiskLevel",
    "ScanResult",
    "Session",
    "SessionSnapshot",
    "SessionState",
    "Severity",
    "risk_level_for_score",
    "risk_score",
]
