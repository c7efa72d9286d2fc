"""Stable constants shared across the sandrun engine."""

from __future__ import annotations

from typing import Final

CONFIG_SCHEMA_VERSION: Final[int] = 1

# Sandbox layout.
SANDBOX_DIR_NAME: Final[str] = "sandrun"
MANIFEST_FILENAME: Final[str] = "package.json"
REGISTRY_CONFIG_FILENAME: Final[str] = ".npmrc"
DEFAULT_REGISTRY_URL: Final[str] = "https://registry.npmjs.org/"

# Execution defaults.
DEFAULT_MAX_CONCURRENT_EXECUTIONS: Final[int] = 3
DEFAULT_EXECUTION_TIMEOUT_MS: Final[int] = 30_000
DEFAULT_INSTALL_TIMEOUT_MS: Final[int] = 60_000
DEFAULT_MAX_MEMORY_MB: Final[int] = 512
DEFAULT_MAX_OUTPUT_BYTES: Final[int] = 1024 * 1024
DEFAULT_MAX_ERROR_BYTES: Final[int] = 1024 * 1024
DEFAULT_MAX_CODE_BYTES: Final[int] = 50_000
DEFAULT_RESOURCE_CEILING_PERCENT: Final[float] = 98.0

DEFAULT_INSTALL_COMMAND: Final[tuple[str, ...]] = (
    "npm",
    "install",
    "--no-audit",
    "--no-fund",
    "--ignore-scripts",
)

# Risk scoring.
RISK_LEVELS: Final[tuple[str, ...]] = ("low", "medium", "high", "critical")
SEVERITY_WEIGHT: Final[dict[str, int]] = {
    "low": 1,
    "medium": 2,
    "high": 5,
    "critical": 10,
}
RISK_THRESHOLDS: Final[tuple[tuple[int, str], ...]] = (
    (10, "critical"),
    (5, "high"),
    (2, "medium"),
)

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_EXECUTION_TIMEOUT_MS",
    "DEFAULT_INSTALL_COMMAND",
    "DEFAULT_INSTALL_TIMEOUT_MS",
    "DEFAULT_MAX_CODE_BYTES",
    "DEFAULT_MAX_CONCURRENT_EXECUTIONS",
    "DEFAULT_MAX_ERROR_BYTES",
    "DEFAULT_MAX_MEMORY_MB",
    "DEFAULT_MAX_OUTPUT_BYTES",
    "DEFAULT_REGISTRY_URL",
    "DEFAULT_RESOURCE_CEILING_PERCENT",
    "MANIFEST_FILENAME",
    "REGISTRY_CONFIG_FILENAME",
    "RISK_LEVELS",
    "RISK_THRESHOLDS",
    "SANDBOX_DIR_NAME",
    "SEVERITY_WEIGHT",
]
