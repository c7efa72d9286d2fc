"""Security audit events.

Components report security-relevant decisions through an :class:`AuditSink`.
A failing sink must never break an execution, so :func:`emit_security_event`
logs and swallows sink errors.
"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from typing import Any, Final, Protocol

import structlog

AUDIT_LOGGER_NAME: Final[str] = "sandrun.audit"

logger = structlog.get_logger(__name__)


class SecurityEventKind(StrEnum):
    UNSAFE_CODE = "unsafe_code"
    DANGEROUS_PACKAGE_FILTERED = "dangerous_package_filtered"
    CONCURRENT_EXECUTION_LIMIT = "concurrent_execution_limit"
    EXECUTION_BLOCKED_RESOURCES = "execution_blocked_resources"


class AuditSink(Protocol):
    def log_security_event(self, kind: str, payload: Mapping[str, Any]) -> None: ...


class LoggingAuditSink:
    """Write security events to the ``sandrun.audit`` structlog logger."""

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME) -> None:
        self._logger = structlog.get_logger(logger_name)

    def log_security_event(self, kind: str, payload: Mapping[str, Any]) -> None:
        self._logger.warning(
            "security_event",
            event_type="security",
            security_event=str(kind),
            **dict(payload),
        )


def emit_security_event(sink: AuditSink, kind: str, payload: Mapping[str, Any]) -> None:
    try:
        sink.log_security_event(str(kind), payload)
    except Exception as exc:  # noqa: BLE001
        logger.error("audit_sink_failed", security_event=str(kind), error=str(exc))


__all__ = [
    "AUDIT_LOGGER_NAME",
    "AuditSink",
    "LoggingAuditSink",
    "SecurityEventKind",
    "emit_security_event",
]
