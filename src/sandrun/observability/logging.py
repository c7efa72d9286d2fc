"""Structured logging setup on top of structlog and stdlib logging.

Every module logs through ``structlog.get_logger(__name__)``. ``setup_logging``
routes those events through stdlib handlers with ISO timestamps, secret
redaction and a JSON (or console) renderer. ``session_scope`` binds the
session ID into contextvars so every event emitted during an execution
carries it.
"""

from __future__ import annotations

import logging
import re
import sys
from collections.abc import Iterator, Mapping, MutableMapping
from contextlib import contextmanager
from typing import IO, Any, Final

import structlog

_REDACTED_VALUE: Final[str] = "***REDACTED***"
_DEFAULT_LOGGER_NAME: Final[str] = "sandrun"

_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
    "client_secret",
)

_SENSITIVE_ASSIGNMENT_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|client_secret|authorization|_authToken)\b"
    r"\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")
_NPM_TOKEN_PATTERN: Final[re.Pattern[str]] = re.compile(r"\bnpm_[A-Za-z0-9]{20,}\b")

# Keys structlog and the renderer own; never redacted.
_RESERVED_KEYS: Final[frozenset[str]] = frozenset({"event", "level", "logger", "timestamp"})


class RedactSecrets:
    """structlog processor that masks secret-looking keys and inline credentials."""

    def __call__(
        self, logger: Any, method_name: str, event_dict: MutableMapping[str, Any]
    ) -> MutableMapping[str, Any]:
        for key in list(event_dict):
            if key in _RESERVED_KEYS and key != "event":
                continue
            event_dict[key] = _redact_value(event_dict[key], key_context=key)
        return event_dict


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    stream: IO[str] | None = None,
    logger_name: str = _DEFAULT_LOGGER_NAME,
) -> structlog.stdlib.BoundLogger:
    """Configure structlog and the ``sandrun`` stdlib logger; return a bound logger.

    ``observability_config`` is the ``[observability]`` config section
    (``log_level``, ``json_logs``, ``redact_secrets``).
    """

    cfg = dict(observability_config or {})
    raw_level = cfg.get("log_level", "INFO")
    level_name = raw_level.upper() if isinstance(raw_level, str) else "INFO"
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    json_logs = bool(cfg.get("json_logs", True))
    redact_enabled = bool(cfg.get("redact_secrets", True))

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(level)

    stdlib_logger = logging.getLogger(logger_name)
    for existing in stdlib_logger.handlers[:]:
        stdlib_logger.removeHandler(existing)
    stdlib_logger.addHandler(handler)
    stdlib_logger.setLevel(level)
    stdlib_logger.propagate = False

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]
    if redact_enabled:
        processors.append(RedactSecrets())
    processors.append(
        structlog.processors.JSONRenderer(sort_keys=True)
        if json_logs
        else structlog.dev.ConsoleRenderer(colors=False)
    )

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=False,
    )
    return structlog.get_logger(logger_name)


@contextmanager
def session_scope(session_id: str, **fields: str) -> Iterator[None]:
    """Bind ``session_id`` (plus ``fields``) to every event logged inside the block."""

    with structlog.contextvars.bound_contextvars(session_id=session_id, **fields):
        yield


def default_log_redactor(value: object) -> object:
    """Redact secret-looking content from an arbitrary JSON-like value."""

    return _redact_value(value, key_context=None)


def _redact_value(value: object, *, key_context: str | None) -> object:
    if key_context is not None and _requires_redaction_for_key(key_context):
        return _REDACTED_VALUE
    if isinstance(value, str):
        return _redact_string(value)
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, key_context=None) for item in value]
    if isinstance(value, Mapping):
        return {key: _redact_value(item, key_context=str(key)) for key, item in value.items()}
    return value


def _requires_redaction_for_key(key: str) -> bool:
    key_lower = key.lower()
    return any(term in key_lower for term in _SENSITIVE_KEY_TERMS)


def _redact_string(text: str) -> str:
    redacted = _SENSITIVE_ASSIGNMENT_PATTERN.sub(
        lambda match: f"{match.group(1)}{match.group(2)}{_REDACTED_VALUE}", text
    )
    redacted = _BEARER_TOKEN_PATTERN.sub(f"Bearer {_REDACTED_VALUE}", redacted)
    return _NPM_TOKEN_PATTERN.sub(_REDACTED_VALUE, redacted)


__all__ = [
    "RedactSecrets",
    "default_log_redactor",
    "session_scope",
    "setup_logging",
]
