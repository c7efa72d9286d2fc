"""Thread-safe execution metrics with deterministic snapshots."""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Final

from sandrun.domain.models import JSONValue

if TYPE_CHECKING:
    from collections.abc import Mapping

    from sandrun.domain.models import ExecutionResult

_MetricLabels = tuple[tuple[str, str], ...]

_METRIC_NAME_MAX_LEN: Final[int] = 128

EXECUTIONS_TOTAL: Final[str] = "executions_total"
EXECUTIONS_SUCCEEDED: Final[str] = "executions_succeeded"
EXECUTIONS_FAILED: Final[str] = "executions_failed"
EXECUTION_FAILURES: Final[str] = "execution_failures"
EXECUTION_DURATION_MS: Final[str] = "execution_duration_ms"
SCANS_TOTAL: Final[str] = "scans_total"


@dataclass(frozen=True, order=True, slots=True)
class _MetricKey:
    name: str
    labels: _MetricLabels


@dataclass(slots=True)
class _DistributionState:
    count: int = 0
    total: float = 0.0
    minimum: float | None = None
    maximum: float | None = None
    last: float | None = None

    def observe(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.last = value
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value

    def as_dict(self) -> dict[str, JSONValue]:
        avg = self.total / self.count if self.count else 0.0
        return {
            "count": self.count,
            "sum": self.total,
            "min": self.minimum,
            "max": self.maximum,
            "avg": avg,
            "last": self.last,
        }


class MetricsRegistry:
    """In-memory counters and distributions keyed by name and labels."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._created_at = datetime.now(tz=UTC)
        self._counters: dict[_MetricKey, float] = {}
        self._distributions: dict[_MetricKey, _DistributionState] = {}

    def inc(
        self,
        name: str,
        amount: float = 1.0,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        """Increment a counter by ``amount`` (>= 0)."""

        delta = _as_finite_float(amount, path="amount")
        if delta < 0:
            raise ValueError("counter increment amount must be >= 0")

        key = _metric_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0.0) + delta

    def observe(
        self,
        name: str,
        value: float,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        """Record a sample for distribution statistics."""

        key = _metric_key(name, labels)
        sample = _as_finite_float(value, path="value")
        with self._lock:
            state = self._distributions.get(key)
            if state is None:
                state = _DistributionState()
                self._distributions[key] = state
            state.observe(sample)

    def get_counter(self, name: str, *, labels: Mapping[str, str] | None = None) -> float:
        key = _metric_key(name, labels)
        with self._lock:
            return self._counters.get(key, 0.0)

    def counters_named(self, name: str) -> dict[str, float]:
        """Return every labelled series of counter ``name`` keyed by its identifier."""

        with self._lock:
            series = sorted(item for item in self._counters.items() if item[0].name == name)
        return {_metric_identifier(key): value for key, value in series}

    def get_distribution(
        self,
        name: str,
        *,
        labels: Mapping[str, str] | None = None,
    ) -> dict[str, JSONValue] | None:
        key = _metric_key(name, labels)
        with self._lock:
            state = self._distributions.get(key)
            if state is None:
                return None
            return dict(state.as_dict())

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._distributions.clear()
            self._created_at = datetime.now(tz=UTC)

    def snapshot(self) -> dict[str, JSONValue]:
        """Return deterministic snapshot with stable key ordering."""

        with self._lock:
            created_at = self._created_at
            counters = tuple(sorted(self._counters.items()))
            distributions = tuple(
                sorted((key, state.as_dict()) for key, state in self._distributions.items())
            )

        now = datetime.now(tz=UTC)
        return {
            "metadata": {
                "created_at": created_at.isoformat(timespec="seconds").replace("+00:00", "Z"),
                "uptime_seconds": max(0.0, (now - created_at).total_seconds()),
            },
            "counters": {_metric_identifier(key): value for key, value in counters},
            "distributions": {_metric_identifier(key): state for key, state in distributions},
        }


class ExecutionMetrics:
    """Execution statistics: totals, failures by kind, and a duration distribution."""

    def __init__(self, registry: MetricsRegistry | None = None) -> None:
        self._registry = registry or MetricsRegistry()

    @property
    def registry(self) -> MetricsRegistry:
        return self._registry

    def record_scan(self, *, safe: bool, risk_level: str) -> None:
        self._registry.inc(SCANS_TOTAL, labels={"safe": str(safe).lower(), "risk": risk_level})

    def record_execution(self, result: ExecutionResult) -> None:
        self._registry.inc(EXECUTIONS_TOTAL)
        if result.success:
            self._registry.inc(EXECUTIONS_SUCCEEDED)
        else:
            self._registry.inc(EXECUTIONS_FAILED)
            kind = "unknown" if result.failure is None else result.failure.value
            self._registry.inc(EXECUTION_FAILURES, labels={"kind": kind})
        self._registry.observe(EXECUTION_DURATION_MS, result.duration_ms)

    def stats(self) -> dict[str, JSONValue]:
        total = int(self._registry.get_counter(EXECUTIONS_TOTAL))
        succeeded = int(self._registry.get_counter(EXECUTIONS_SUCCEEDED))
        failed = int(self._registry.get_counter(EXECUTIONS_FAILED))
        duration = self._registry.get_distribution(EXECUTION_DURATION_MS) or {}
        average = duration.get("avg", 0.0)

        by_failure: dict[str, JSONValue] = {}
        prefix = f"{EXECUTION_FAILURES}{{kind="
        for identifier, value in self._registry.counters_named(EXECUTION_FAILURES).items():
            by_failure[identifier.removeprefix(prefix).rstrip("}")] = int(value)

        return {
            "total_executions": total,
            "successful_executions": succeeded,
            "failed_executions": failed,
            "average_duration_ms": average if isinstance(average, float) else 0.0,
            "success_rate": (succeeded / total) if total else 0.0,
            "failures_by_kind": by_failure,
        }


def _metric_key(name: str, labels: Mapping[str, str] | None) -> _MetricKey:
    return _MetricKey(name=_validate_metric_name(name), labels=_normalize_labels(labels))


def _metric_identifier(key: _MetricKey) -> str:
    if not key.labels:
        return key.name
    labels = ",".join(f"{k}={v}" for k, v in key.labels)
    return f"{key.name}{{{labels}}}"


def _validate_metric_name(name: str) -> str:
    normalized = name.strip()
    if not normalized:
        raise ValueError("metric name must not be empty")
    if len(normalized) > _METRIC_NAME_MAX_LEN:
        raise ValueError(f"metric name must be <= {_METRIC_NAME_MAX_LEN} characters")
    return normalized


def _normalize_labels(labels: Mapping[str, str] | None) -> _MetricLabels:
    if labels is None:
        return ()

    out: list[tuple[str, str]] = []
    for key, value in labels.items():
        key_name = key.strip()
        val_name = value.strip()
        if not key_name:
            raise ValueError("label key must not be empty")
        if not val_name:
            raise ValueError(f"label value for {key!r} must not be empty")
        out.append((key_name, val_name))

    out.sort(key=lambda item: item[0])
    return tuple(out)


def _as_finite_float(value: float, *, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"{path} must be numeric, got {type(value).__name__}")
    parsed = float(value)
    if not math.isfinite(parsed):
        raise ValueError(f"{path} must be finite")
    return parsed


__all__ = ["ExecutionMetrics", "MetricsRegistry"]
