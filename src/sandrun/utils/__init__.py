"""Utility exports for filesystem and concurrency helpers."""

from sandrun.utils.concurrency import CancellationToken, run_with_timeout
from sandrun.utils.fs import atomic_write, is_within, remove_tree, safe_delete

__all__ = [
    "CancellationToken",
    "atomic_write",
    "is_within",
    "remove_tree",
    "run_with_timeout",
    "safe_delete",
]
