"""Execution engine: session registry, concurrency gate and the run pipeline."""

from sandrun.engine.engine import ExecutionEngine, ExecutionSettings
from sandrun.engine.registry import SessionRegistry, can_transition

__all__ = [
    "ExecutionEngine",
    "ExecutionSettings",
    "SessionRegistry",
    "can_transition",
]
