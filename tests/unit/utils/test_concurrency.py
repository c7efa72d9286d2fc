"""Regression tests for cancellation and deadline helpers."""

from __future__ import annotations

import asyncio
import gc
import sys
import threading
import warnings
from contextlib import contextmanager
from types import SimpleNamespace
from typing import TYPE_CHECKING

import pytest

from sandrun.utils.concurrency import CancellationToken, run_with_timeout

if TYPE_CHECKING:
    from collections.abc import Iterator


@contextmanager
def _capture_unraisable() -> Iterator[list[SimpleNamespace]]:
    captured: list[SimpleNamespace] = []
    original = sys.unraisablehook

    def hook(unraisable: object) -> None:
        captured.append(
            SimpleNamespace(
                exc_type=getattr(unraisable, "exc_type", None),
                err_msg=getattr(unraisable, "err_msg", None),
            )
        )

    sys.unraisablehook = hook
    try:
        yield captured
    finally:
        sys.unraisablehook = original


async def _slow() -> int:
    await asyncio.sleep(0.01)
    return 1


async def _slower() -> int:
    await asyncio.sleep(0.05)
    return 1


async def test_run_with_timeout_returns_value() -> None:
    assert await run_with_timeout(_slow(), 1.0) == 1


async def test_run_with_timeout_does_not_leak_coroutine_on_early_cancel() -> None:
    token = CancellationToken()
    token.cancel()

    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        coro = _slow()
        with pytest.raises(asyncio.CancelledError):
            await run_with_timeout(coro, 1.0, token)
        del coro
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_timeout_path_does_not_leak_coroutine() -> None:
    with _capture_unraisable() as leaked, warnings.catch_warnings():
        warnings.simplefilter("error", RuntimeWarning)
        with pytest.raises(TimeoutError):
            await run_with_timeout(_slower(), 0.001, None)
        gc.collect()

    assert leaked == []


async def test_run_with_timeout_rejects_non_positive_deadline() -> None:
    with pytest.raises(ValueError, match="timeout_seconds"):
        await run_with_timeout(_slow(), 0)


async def test_cancel_during_wait_interrupts_the_operation() -> None:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.call_later(0.01, token.cancel)

    with pytest.raises(asyncio.CancelledError):
        await run_with_timeout(asyncio.sleep(5), 2.0, token)
    assert token.is_cancelled


async def test_cancel_from_another_thread_wakes_waiter() -> None:
    token = CancellationToken()
    waiter = asyncio.create_task(token.wait())
    await asyncio.sleep(0)

    thread = threading.Thread(target=token.cancel)
    thread.start()
    thread.join()

    await asyncio.wait_for(waiter, timeout=1.0)
    assert token.is_cancelled
    with pytest.raises(asyncio.CancelledError):
        token.raise_if_cancelled()
