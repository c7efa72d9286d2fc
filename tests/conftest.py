"""Shared fixtures. Snippets run under a Python runtime profile so Node is not required."""

from __future__ import annotations

import logging
import sys
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest
import structlog

from sandrun.sandbox.resource_monitor import HostSample
from sandrun.sandbox.runtime import RuntimeProfile

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Mapping

PYTHON_RUNTIME = RuntimeProfile(
    name="python",
    executable=sys.executable,
    argv=("-I", "{entrypoint}"),
    entrypoint="generated.py",
    env={"HOME": "{sandbox}"},
)


class FixedMetricsProvider:
    """Host metrics provider returning a fixed sample (or raising ``error``)."""

    def __init__(
        self,
        *,
        cpu: float = 10.0,
        memory: float = 40.0,
        disk: float = 50.0,
        error: Exception | None = None,
    ) -> None:
        self.cpu = cpu
        self.memory = memory
        self.disk = disk
        self.error = error
        self.calls = 0

    def sample(self) -> HostSample:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return HostSample(
            captured_at=datetime(2026, 2, 1, 12, 0, 0, tzinfo=UTC),
            cpu_percent=self.cpu,
            memory_percent=self.memory,
            disk_percent=self.disk,
        )


class RecordingAuditSink:
    """In-memory audit sink; keeps every event in arrival order."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def log_security_event(self, kind: str, payload: Mapping[str, Any]) -> None:
        self.events.append((str(kind), dict(payload)))

    def kinds(self) -> list[str]:
        return [kind for kind, _ in self.events]


@pytest.fixture(autouse=True)
def _reset_logging() -> Iterator[None]:
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()
    logger = logging.getLogger("sandrun")
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)


@pytest.fixture()
def python_runtime() -> RuntimeProfile:
    return PYTHON_RUNTIME


@pytest.fixture()
def fixed_metrics() -> Callable[..., FixedMetricsProvider]:
    return FixedMetricsProvider


@pytest.fixture()
def recording_audit() -> Callable[[], RecordingAuditSink]:
    return RecordingAuditSink
