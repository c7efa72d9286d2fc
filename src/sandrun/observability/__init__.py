"""Observability surface: structured logging, security audit, execution metrics."""

from sandrun.observability.audit import (
    AuditSink,
    LoggingAuditSink,
    SecurityEventKind,
    emit_security_event,
)
from sandrun.observability.logging import (
    RedactSecrets,
    default_log_redactor,
    session_scope,
    setup_logging,
)
from sandrun.observability.metrics import ExecutionMetrics, MetricsRegistry

__all__ = [
    "AuditSink",
    "ExecutionMetrics",
    "LoggingAuditSink",
    "MetricsRegistry",
    "RedactSecrets",
    "SecurityEventKind",
    "default_log_redactor",
    "emit_security_event",
    "session_scope",
    "setup_logging",
]
