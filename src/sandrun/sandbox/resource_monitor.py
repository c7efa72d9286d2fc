"""Host resource admission gate.

Samples CPU, memory and disk utilization through ``psutil`` and compares them
against configured ceilings. A sampling failure is reported as unsafe
(``check_failed``) so admission fails closed.
"""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final, Protocol

import psutil
import structlog

from sandrun.constants import DEFAULT_RESOURCE_CEILING_PERCENT
from sandrun.domain.models import JSONValue

logger = structlog.get_logger(__name__)

MEMORY_CRITICAL: Final[str] = "memory_critical"
CPU_HIGH: Final[str] = "cpu_high"
DISK_CRITICAL: Final[str] = "disk_critical"
CHECK_FAILED: Final[str] = "check_failed"

DEFAULT_CPU_SAMPLE_SECONDS: Final[float] = 0.1

# Utilization at or above this is reported as "warning" in health payloads.
_WARNING_PERCENT: Final[float] = 80.0


@dataclass(frozen=True, slots=True)
class HostSample:
    """Point-in-time host utilization, all percentages in ``[0, 100]``."""

    captured_at: datetime
    cpu_percent: float
    memory_percent: float
    disk_percent: float
    memory_total_bytes: int | None = None
    memory_available_bytes: int | None = None
    disk_total_bytes: int | None = None
    disk_free_bytes: int | None = None

    def __post_init__(self) -> None:
        for name in ("cpu_percent", "memory_percent", "disk_percent"):
            _validate_percent(getattr(self, name), name)

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "captured_at": self.captured_at.isoformat(),
            "cpu": {"usage": self.cpu_percent, "status": _status(self.cpu_percent)},
            "memory": {
                "usage": self.memory_percent,
                "status": _status(self.memory_percent),
                "total_bytes": self.memory_total_bytes,
                "available_bytes": self.memory_available_bytes,
            },
            "disk": {
                "usage": self.disk_percent,
                "status": _status(self.disk_percent),
                "total_bytes": self.disk_total_bytes,
                "free_bytes": self.disk_free_bytes,
            },
        }


class MetricsProvider(Protocol):
    """Host metrics source used by :class:`ResourceMonitor`."""

    def sample(self) -> HostSample: ...


class PsutilMetricsProvider:
    """Collect host metrics with ``psutil``. Errors propagate to the caller.

    CPU utilization is measured over a blocking ``cpu_interval`` window on
    every sample, so callers on an event loop should sample from a thread.
    """

    def __init__(
        self,
        *,
        disk_path: Path | str | None = None,
        cpu_interval: float = DEFAULT_CPU_SAMPLE_SECONDS,
    ) -> None:
        if isinstance(cpu_interval, bool) or not cpu_interval > 0:
            raise ValueError("cpu_interval must be > 0")
        raw_disk_path = Path.cwd() if disk_path is None else Path(disk_path)
        self._disk_path = raw_disk_path.resolve(strict=False)
        self._cpu_interval = float(cpu_interval)

    @property
    def disk_path(self) -> Path:
        return self._disk_path

    def sample(self) -> HostSample:
        cpu_percent = float(psutil.cpu_percent(interval=self._cpu_interval))
        memory = psutil.virtual_memory()
        disk = psutil.disk_usage(str(self._disk_path))
        return HostSample(
            captured_at=datetime.now(tz=UTC),
            cpu_percent=max(0.0, min(100.0, cpu_percent)),
            memory_percent=max(0.0, min(100.0, float(memory.percent))),
            disk_percent=max(0.0, min(100.0, float(disk.percent))),
            memory_total_bytes=int(memory.total),
            memory_available_bytes=int(memory.available),
            disk_total_bytes=int(disk.total),
            disk_free_bytes=int(disk.free),
        )


@dataclass(frozen=True, slots=True)
class ResourceThresholds:
    """Utilization ceilings; a sample strictly above a ceiling is a violation."""

    max_memory_percent: float = DEFAULT_RESOURCE_CEILING_PERCENT
    max_cpu_percent: float = DEFAULT_RESOURCE_CEILING_PERCENT
    max_disk_percent: float = DEFAULT_RESOURCE_CEILING_PERCENT

    def __post_init__(self) -> None:
        for name in ("max_memory_percent", "max_cpu_percent", "max_disk_percent"):
            _validate_percent(getattr(self, name), name)

    @classmethod
    def from_config(cls, resources: Mapping[str, object]) -> ResourceThresholds:
        defaults = cls()
        values: dict[str, float] = {}
        for name in ("max_memory_percent", "max_cpu_percent", "max_disk_percent"):
            raw = resources.get(name, getattr(defaults, name))
            if isinstance(raw, bool) or not isinstance(raw, (int, float)):
                raise ValueError(f"resources.{name} must be a number")
            values[name] = float(raw)
        return cls(**values)


@dataclass(frozen=True, slots=True)
class ResourceCheck:
    """Admission verdict. ``health`` is ``None`` when sampling failed."""

    safe: bool
    violations: tuple[str, ...]
    health: HostSample | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, JSONValue]:
        payload: dict[str, JSONValue] = {
            "safe": self.safe,
            "violations": list(self.violations),
            "health": None if self.health is None else self.health.to_dict(),
        }
        if self.error is not None:
            payload["error"] = self.error
        return payload


class ResourceMonitor:
    """Compare a fresh host sample against :class:`ResourceThresholds`."""

    def __init__(
        self,
        *,
        provider: MetricsProvider | None = None,
        thresholds: ResourceThresholds | None = None,
    ) -> None:
        self._provider = provider or PsutilMetricsProvider()
        self._thresholds = thresholds or ResourceThresholds()

    @property
    def thresholds(self) -> ResourceThresholds:
        return self._thresholds

    def check_limits(self, thresholds: ResourceThresholds | None = None) -> ResourceCheck:
        limits = thresholds or self._thresholds
        try:
            sample = self._provider.sample()
        except Exception as exc:  # noqa: BLE001
            logger.error("resource_check_failed", error=str(exc), error_type=type(exc).__name__)
            return ResourceCheck(safe=False, violations=(CHECK_FAILED,), error=str(exc))

        violations: list[str] = []
        if sample.memory_percent > limits.max_memory_percent:
            violations.append(MEMORY_CRITICAL)
        if sample.cpu_percent > limits.max_cpu_percent:
            violations.append(CPU_HIGH)
        if sample.disk_percent > limits.max_disk_percent:
            violations.append(DISK_CRITICAL)

        if violations:
            logger.warning(
                "resource_limit_violation",
                violations=violations,
                cpu_percent=sample.cpu_percent,
                memory_percent=sample.memory_percent,
                disk_percent=sample.disk_percent,
            )
        return ResourceCheck(safe=not violations, violations=tuple(violations), health=sample)


def _status(percent: float) -> str:
    return "healthy" if percent < _WARNING_PERCENT else "warning"


def _validate_percent(value: float, field_name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{field_name} must be numeric")
    if not math.isfinite(float(value)) or not 0.0 <= float(value) <= 100.0:
        raise ValueError(f"{field_name} must be within [0, 100]")


__all__ = [
    "CHECK_FAILED",
    "CPU_HIGH",
    "DEFAULT_CPU_SAMPLE_SECONDS",
    "DISK_CRITICAL",
    "MEMORY_CRITICAL",
    "HostSample",
    "MetricsProvider",
    "PsutilMetricsProvider",
    "ResourceCheck",
    "ResourceMonitor",
    "ResourceThresholds",
]
