"""
sandrun config package public API.

File: src/sandrun/config/__init__.py

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``sandrun.toml`` + ``SANDRUN_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from sandrun.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLoadError,
    ConfigSource,
    dump_effective_config,
    load_config,
    normalize_paths,
)
from sandrun.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    SECTION_NAMES,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    SandrunConfig,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
    validate_section,
)

__all__ = [
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigSource",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "PATH_FIELDS",
    "SECTION_NAMES",
    "SandrunConfig",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "validate_config",
    "validate_section",
]
