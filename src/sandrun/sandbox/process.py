"""Child process helpers shared by the installer and the execution supervisor."""

from __future__ import annotations

import asyncio
import contextlib
import os
import signal
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import structlog

from sandrun.utils.concurrency import CancellationToken, run_with_timeout

logger = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class CommandExecutionResult:
    command: tuple[str, ...]
    cwd: Path
    returncode: int
    stdout: str
    stderr: str


class CommandRunner(Protocol):
    """Injectable async command runner used for deterministic/offline testing.

    Implementations raise ``TimeoutError`` when ``timeout_seconds`` elapses and
    ``asyncio.CancelledError`` when ``cancel_token`` fires; the child is killed
    on both paths.
    """

    async def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout_seconds: float,
        cancel_token: CancellationToken | None = None,
    ) -> CommandExecutionResult: ...


class AsyncSubprocessCommandRunner:
    """Default command runner backed by ``asyncio.create_subprocess_exec``."""

    async def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        env: Mapping[str, str],
        timeout_seconds: float,
        cancel_token: CancellationToken | None = None,
    ) -> CommandExecutionResult:
        process = await asyncio.create_subprocess_exec(
            *command,
            cwd=str(cwd),
            env=dict(env),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=(os.name != "nt"),
        )
        try:
            stdout, stderr = await run_with_timeout(
                process.communicate(), timeout_seconds, cancel_token
            )
        except (TimeoutError, asyncio.CancelledError):
            await terminate(process)
            raise

        return CommandExecutionResult(
            command=tuple(command),
            cwd=cwd,
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )


def kill_process_group(process: asyncio.subprocess.Process) -> None:
    """Force-kill ``process`` and, on POSIX, every process in its group."""

    if process.returncode is not None:
        return
    if os.name != "nt":
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)
            return
    with contextlib.suppress(ProcessLookupError):
        process.kill()


async def terminate(process: asyncio.subprocess.Process) -> int | None:
    """Kill ``process`` and reap it. Returns the exit status."""

    kill_process_group(process)
    with contextlib.suppress(ProcessLookupError):
        return await process.wait()
    return process.returncode


__all__ = [
    "AsyncSubprocessCommandRunner",
    "CommandExecutionResult",
    "CommandRunner",
    "kill_process_group",
    "terminate",
]
