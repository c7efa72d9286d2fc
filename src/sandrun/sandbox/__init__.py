"""Sandbox lifecycle: host admission, provisioning, dependencies and execution."""

from sandrun.sandbox.dependency_installer import (
    DENIED_PACKAGES,
    DependencyInstaller,
    InstallPolicy,
    InstallReport,
    PackageSpec,
    is_denied,
    parse_package_spec,
)
from sandrun.sandbox.process import (
    AsyncSubprocessCommandRunner,
    CommandExecutionResult,
    CommandRunner,
)
from sandrun.sandbox.provisioner import SandboxProvisioner, default_sandbox_root
from sandrun.sandbox.resource_monitor import (
    HostSample,
    MetricsProvider,
    PsutilMetricsProvider,
    ResourceCheck,
    ResourceMonitor,
    ResourceThresholds,
)
from sandrun.sandbox.runtime import NODE_RUNTIME, RuntimeProfile
from sandrun.sandbox.supervisor import ExecutionSupervisor

__all__ = [
    "DENIED_PACKAGES",
    "NODE_RUNTIME",
    "AsyncSubprocessCommandRunner",
    "CommandExecutionResult",
    "CommandRunner",
    "DependencyInstaller",
    "ExecutionSupervisor",
    "HostSample",
    "InstallPolicy",
    "InstallReport",
    "MetricsProvider",
    "PackageSpec",
    "PsutilMetricsProvider",
    "ResourceCheck",
    "ResourceMonitor",
    "ResourceThresholds",
    "RuntimeProfile",
    "SandboxProvisioner",
    "default_sandbox_root",
    "is_denied",
    "parse_package_spec",
]
