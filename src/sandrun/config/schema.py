"""
sandrun — configuration schema and validation.

File: src/sandrun/config/schema.py

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric ranges.
- Deterministic deep-merge helpers and redacted dumps.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Support partial validation for per-section runtime updates.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, NotRequired, TypedDict
from urllib.parse import urlsplit

from sandrun.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_EXECUTION_TIMEOUT_MS,
    DEFAULT_INSTALL_COMMAND,
    DEFAULT_INSTALL_TIMEOUT_MS,
    DEFAULT_MAX_CODE_BYTES,
    DEFAULT_MAX_CONCURRENT_EXECUTIONS,
    DEFAULT_MAX_ERROR_BYTES,
    DEFAULT_MAX_MEMORY_MB,
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_REGISTRY_URL,
    DEFAULT_RESOURCE_CEILING_PERCENT,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

SECTION_NAMES: Final[tuple[str, ...]] = (
    "execution",
    "security",
    "installer",
    "resources",
    "sandbox",
    "observability",
)

# Fields that hold filesystem paths; the loader resolves them against the config file.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("resources", "disk_path"),
    ("sandbox", "root"),
)

# Optional scalar fields absent from the defaults, with their env coercion type.
OPTIONAL_FIELDS: Final[tuple[tuple[tuple[str, ...], Literal["str", "int", "float", "bool"]], ...]] = (
    (("resources", "disk_path"), "str"),
    (("sandbox", "root"), "str"),
)

LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "credential", "credentials", "auth"}
)
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


class MetaConfig(TypedDict):
    schema_version: int


class ExecutionConfig(TypedDict):
    max_concurrent_executions: int
    execution_timeout_ms: int
    max_memory_mb: int
    max_output_bytes: int
    max_error_bytes: int
    runtime_executable: str


class SecurityConfig(TypedDict):
    block_dangerous_packages: bool
    strict_package_policy: bool
    max_code_bytes: int
    allowed_registry: str


class InstallerConfig(TypedDict):
    command: list[str]
    timeout_ms: int


class ResourcesConfig(TypedDict):
    max_memory_percent: float
    max_cpu_percent: float
    max_disk_percent: float
    disk_path: NotRequired[str]


class SandboxConfig(TypedDict, total=False):
    root: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    json_logs: bool
    redact_secrets: bool


class SandrunConfig(TypedDict):
    meta: MetaConfig
    execution: ExecutionConfig
    security: SecurityConfig
    installer: InstallerConfig
    resources: ResourcesConfig
    sandbox: SandboxConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[SandrunConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "execution": {
        "max_concurrent_executions": DEFAULT_MAX_CONCURRENT_EXECUTIONS,
        "execution_timeout_ms": DEFAULT_EXECUTION_TIMEOUT_MS,
        "max_memory_mb": DEFAULT_MAX_MEMORY_MB,
        "max_output_bytes": DEFAULT_MAX_OUTPUT_BYTES,
        "max_error_bytes": DEFAULT_MAX_ERROR_BYTES,
        "runtime_executable": "node",
    },
    "security": {
        "block_dangerous_packages": True,
        "strict_package_policy": False,
        "max_code_bytes": DEFAULT_MAX_CODE_BYTES,
        "allowed_registry": DEFAULT_REGISTRY_URL,
    },
    "installer": {
        "command": list(DEFAULT_INSTALL_COMMAND),
        "timeout_ms": DEFAULT_INSTALL_TIMEOUT_MS,
    },
    "resources": {
        "max_memory_percent": DEFAULT_RESOURCE_CEILING_PERCENT,
        "max_cpu_percent": DEFAULT_RESOURCE_CEILING_PERCENT,
        "max_disk_percent": DEFAULT_RESOURCE_CEILING_PERCENT,
    },
    "sandbox": {},
    "observability": {
        "log_level": "INFO",
        "json_logs": True,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> SandrunConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade sandrun.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the sandrun runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate a full config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues, partial=False)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def validate_section(
    section: str, payload: Mapping[str, object] | object
) -> ConfigValidationResult:
    """Validate a partial section payload (only the keys present are checked)."""

    issues = _IssueCollector()
    validator = _SECTION_VALIDATORS.get(section)
    if validator is None:
        issues.add(section, "unknown section")
        return ConfigValidationResult(config=None, issues=issues.items())
    section_obj = _as_object(payload, section, issues)
    if section_obj is None:
        return ConfigValidationResult(config=None, issues=issues.items())
    normalized = validator(section_obj, section, issues, partial=True)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_root(
    payload: Mapping[str, object],
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"meta", *SECTION_NAMES}
    _reject_unknown_keys(payload, allowed, "", issues)
    if not partial:
        _require_keys(payload, allowed, "", issues)

    out: dict[str, Any] = {}
    meta_raw = payload.get("meta")
    if meta_raw is not None:
        meta = _as_object(meta_raw, "meta", issues)
        if meta is not None:
            out["meta"] = _validate_meta(meta, "meta", issues, partial=partial)

    for name in SECTION_NAMES:
        raw = payload.get(name)
        if raw is None:
            continue
        section = _as_object(raw, name, issues)
        if section is None:
            continue
        out[name] = _SECTION_VALIDATORS[name](section, name, issues, partial=partial)
    return out


def _validate_meta(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"schema_version"}, path, issues)
    if not partial:
        _require_keys(payload, {"schema_version"}, path, issues)

    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(payload["schema_version"], _join(path, "schema_version"), issues, minimum=1)
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_execution(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    ranges = {
        "max_concurrent_executions": (1, 10),
        "execution_timeout_ms": (100, 300_000),
        "max_memory_mb": (16, 8192),
        "max_output_bytes": (1, None),
        "max_error_bytes": (1, None),
    }
    allowed = {*ranges, "runtime_executable"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key, (minimum, maximum) in ranges.items():
        if key not in payload:
            continue
        parsed = _as_int(payload[key], _join(path, key), issues, minimum=minimum, maximum=maximum)
        if parsed is not None:
            out[key] = parsed

    if "runtime_executable" in payload:
        executable = _as_str(payload["runtime_executable"], _join(path, "runtime_executable"), issues)
        if executable is not None:
            out["runtime_executable"] = executable
    return out


def _validate_security(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {
        "block_dangerous_packages",
        "strict_package_policy",
        "max_code_bytes",
        "allowed_registry",
    }
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    for key in ("block_dangerous_packages", "strict_package_policy"):
        if key in payload:
            flag = _as_bool(payload[key], _join(path, key), issues)
            if flag is not None:
                out[key] = flag

    if "max_code_bytes" in payload:
        limit = _as_int(payload["max_code_bytes"], _join(path, "max_code_bytes"), issues, minimum=1)
        if limit is not None:
            out["max_code_bytes"] = limit

    if "allowed_registry" in payload:
        registry_path = _join(path, "allowed_registry")
        registry = _as_str(payload["allowed_registry"], registry_path, issues)
        if registry is not None:
            parts = urlsplit(registry)
            if parts.scheme != "https" or not parts.netloc:
                issues.add(registry_path, "must be an https:// URL")
            else:
                out["allowed_registry"] = registry if registry.endswith("/") else registry + "/"
    return out


def _validate_installer(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"command", "timeout_ms"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "command" in payload:
        command_path = _join(path, "command")
        raw = payload["command"]
        if isinstance(raw, str) or not isinstance(raw, Sequence):
            issues.add(command_path, f"expected list of strings, got {type(raw).__name__}")
        elif not raw:
            issues.add(command_path, "must not be empty")
        else:
            items: list[str] = []
            for index, item in enumerate(raw):
                parsed = _as_str(item, f"{command_path}[{index}]", issues)
                if parsed is not None:
                    items.append(parsed)
            if len(items) == len(raw):
                out["command"] = items

    if "timeout_ms" in payload:
        timeout = _as_int(
            payload["timeout_ms"], _join(path, "timeout_ms"), issues, minimum=1000, maximum=600_000
        )
        if timeout is not None:
            out["timeout_ms"] = timeout
    return out


def _validate_resources(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    percents = ("max_memory_percent", "max_cpu_percent", "max_disk_percent")
    _reject_unknown_keys(payload, {*percents, "disk_path"}, path, issues)
    if not partial:
        _require_keys(payload, set(percents), path, issues)

    out: dict[str, Any] = {}
    for key in percents:
        if key not in payload:
            continue
        parsed = _as_float(payload[key], _join(path, key), issues, minimum=0.0, maximum=100.0)
        if parsed is not None:
            out[key] = parsed

    if "disk_path" in payload:
        disk_path = _as_str(payload["disk_path"], _join(path, "disk_path"), issues)
        if disk_path is not None:
            out["disk_path"] = disk_path
    return out


def _validate_sandbox(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, {"root"}, path, issues)

    out: dict[str, Any] = {}
    if "root" in payload:
        root = _as_str(payload["root"], _join(path, "root"), issues)
        if root is not None:
            out["root"] = root
    return out


def _validate_observability(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
    *,
    partial: bool,
) -> dict[str, Any]:
    allowed = {"log_level", "json_logs", "redact_secrets"}
    _reject_unknown_keys(payload, allowed, path, issues)
    if not partial:
        _require_keys(payload, allowed, path, issues)

    out: dict[str, Any] = {}
    if "log_level" in payload:
        raw_level = payload["log_level"]
        if isinstance(raw_level, str):
            raw_level = raw_level.strip().upper()
        level = _as_enum(raw_level, _join(path, "log_level"), issues, allowed_values=LOG_LEVELS)
        if level is not None:
            out["log_level"] = level
    for key in ("json_logs", "redact_secrets"):
        if key in payload:
            flag = _as_bool(payload[key], _join(path, key), issues)
            if flag is not None:
                out[key] = flag
    return out


_SECTION_VALIDATORS = {
    "execution": _validate_execution,
    "security": _validate_security,
    "installer": _validate_installer,
    "resources": _validate_resources,
    "sandbox": _validate_sandbox,
    "observability": _validate_observability,
}


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object keys must be strings, got {type(key).__name__}")
            return None
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    stripped = value.strip()
    if not stripped:
        issues.add(path, "must not be empty")
        return None
    return stripped


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if not isinstance(value, bool):
        issues.add(path, f"expected boolean, got {type(value).__name__}")
        return None
    return value


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if maximum is not None and value > maximum:
        issues.add(path, f"must be <= {maximum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
    maximum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if maximum is not None and parsed > maximum:
        issues.add(path, f"must be <= {maximum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = _deep_copy_value(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key in sorted(value):
        out[key] = _deep_copy_value(value[key])
    return out


def _deep_copy_value(value: object) -> Any:
    if isinstance(value, Mapping):
        return {key: _deep_copy_value(item) for key, item in value.items() if isinstance(key, str)}
    if isinstance(value, (list, tuple)):
        return [_deep_copy_value(item) for item in value]
    return copy.deepcopy(value)


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            if _key_is_sensitive(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(value[key], key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


def _key_is_sensitive(key: str) -> bool:
    tokens = tuple(token for token in _normalize_key(key).split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "LOG_LEVELS",
    "OPTIONAL_FIELDS",
    "PATH_FIELDS",
    "SECTION_NAMES",
    "SandrunConfig",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
    "validate_section",
]
