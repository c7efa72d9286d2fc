"""Domain types: sessions, scan results, execution outcomes, and the error taxonomy."""

from sandrun.domain.errors import (
    AdmissionRefused,
    CleanupError,
    InstallError,
    InvalidSessionIdError,
    PackagePolicyError,
    ProvisionError,
    SandrunError,
    ScanRejected,
)
from sandrun.domain.ids import generate_session_id, is_valid_session_id, validate_session_id
from sandrun.domain.models import (
    LIVE_STATES,
    CleanupResult,
    ExecutionLimits,
    ExecutionResult,
    FailureKind,
    Issue,
    IssueKind,
    ResultCategory,
    RiskLevel,
    ScanResult,
    Session,
    SessionSnapshot,
    SessionState,
    Severity,
)

__all__ = [
    "LIVE_STATES",
    "AdmissionRefused",
    "CleanupError",
    "CleanupResult",
    "ExecutionLimits",
    "ExecutionResult",
    "FailureKind",
    "InstallError",
    "InvalidSessionIdError",
    "Issue",
    "IssueKind",
    "PackagePolicyError",
    "ProvisionError",
    "ResultCategory",
    "RiskLevel",
    "SandrunError",
    "ScanRejected",
    "ScanResult",
    "Session",
    "SessionSnapshot",
    "SessionState",
    "Severity",
    "generate_session_id",
    "is_valid_session_id",
    "validate_session_id",
]
