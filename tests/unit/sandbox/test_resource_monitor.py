"""Unit tests for the host resource admission gate."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import psutil
import pytest

from sandrun.sandbox.resource_monitor import (
    CHECK_FAILED,
    CPU_HIGH,
    DISK_CRITICAL,
    MEMORY_CRITICAL,
    HostSample,
    MetricsProvider,
    PsutilMetricsProvider,
    ResourceMonitor,
    ResourceThresholds,
)

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path


def test_sample_below_ceilings_is_safe(
    fixed_metrics: Callable[..., MetricsProvider],
) -> None:
    provider = fixed_metrics(cpu=10.0, memory=40.0, disk=50.0)
    monitor = ResourceMonitor(provider=provider)

    check = monitor.check_limits()

    assert check.safe
    assert check.violations == ()
    assert check.health is not None
    assert check.health.memory_percent == 40.0
    assert check.error is None


def test_sample_exactly_at_ceiling_is_still_safe(
    fixed_metrics: Callable[..., MetricsProvider],
) -> None:
    provider = fixed_metrics(cpu=98.0, memory=98.0, disk=98.0)
    monitor = ResourceMonitor(provider=provider)

    assert monitor.check_limits().safe


def test_each_exceeded_ceiling_is_reported_in_order(
    fixed_metrics: Callable[..., MetricsProvider],
) -> None:
    provider = fixed_metrics(cpu=99.5, memory=99.0, disk=100.0)
    monitor = ResourceMonitor(provider=provider)

    check = monitor.check_limits()

    assert not check.safe
    assert check.violations == (MEMORY_CRITICAL, CPU_HIGH, DISK_CRITICAL)


def test_per_call_thresholds_override_defaults(
    fixed_metrics: Callable[..., MetricsProvider],
) -> None:
    provider = fixed_metrics(cpu=60.0, memory=40.0, disk=50.0)
    monitor = ResourceMonitor(provider=provider)

    check = monitor.check_limits(ResourceThresholds(max_cpu_percent=50.0))

    assert check.violations == (CPU_HIGH,)
    assert monitor.check_limits().safe


def test_sampling_failure_fails_closed(
    fixed_metrics: Callable[..., MetricsProvider],
) -> None:
    provider = fixed_metrics(error=PermissionError("no /proc access"))
    monitor = ResourceMonitor(provider=provider)

    check = monitor.check_limits()

    assert not check.safe
    assert check.violations == (CHECK_FAILED,)
    assert check.health is None
    assert check.error == "no /proc access"
    assert check.to_dict()["error"] == "no /proc access"


def test_thresholds_from_config_and_validation() -> None:
    thresholds = ResourceThresholds.from_config(
        {"max_memory_percent": 90, "max_cpu_percent": 75.5, "max_disk_percent": 95.0}
    )

    assert thresholds == ResourceThresholds(90.0, 75.5, 95.0)
    with pytest.raises(ValueError, match="must be a number"):
        ResourceThresholds.from_config({"max_cpu_percent": "high"})
    with pytest.raises(ValueError, match=r"within \[0, 100\]"):
        ResourceThresholds(max_disk_percent=101.0)


def test_health_payload_marks_warning_levels() -> None:
    sample = HostSample(
        captured_at=datetime(2026, 2, 1, tzinfo=UTC),
        cpu_percent=85.0,
        memory_percent=20.0,
        disk_percent=80.0,
    )

    payload = sample.to_dict()

    assert payload["cpu"] == {"usage": 85.0, "status": "warning"}
    assert payload["memory"]["status"] == "healthy"  # type: ignore[index]
    assert payload["disk"]["status"] == "warning"  # type: ignore[index]


def test_psutil_provider_returns_bounded_percentages(tmp_path: Path) -> None:
    provider = PsutilMetricsProvider(disk_path=tmp_path)

    sample = provider.sample()

    for value in (sample.cpu_percent, sample.memory_percent, sample.disk_percent):
        assert 0.0 <= value <= 100.0
    assert sample.memory_total_bytes is not None and sample.memory_total_bytes > 0
    assert provider.disk_path == tmp_path.resolve()


def test_psutil_provider_measures_cpu_over_a_real_window(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    intervals: list[float | None] = []

    def fake_cpu_percent(interval: float | None = None) -> float:
        intervals.append(interval)
        return 12.5

    monkeypatch.setattr(psutil, "cpu_percent", fake_cpu_percent)
    provider = PsutilMetricsProvider(disk_path=tmp_path, cpu_interval=0.05)

    assert provider.sample().cpu_percent == 12.5
    assert provider.sample().cpu_percent == 12.5
    assert intervals == [0.05, 0.05]


def test_psutil_provider_rejects_non_positive_interval() -> None:
    with pytest.raises(ValueError, match="cpu_interval"):
        PsutilMetricsProvider(cpu_interval=0)


def test_fresh_default_monitor_admits_on_an_idle_host() -> None:
    monitor = ResourceMonitor()

    checks = [monitor.check_limits(ResourceThresholds(100.0, 99.9, 100.0)) for _ in range(3)]

    assert all(CPU_HIGH not in check.violations for check in checks)
