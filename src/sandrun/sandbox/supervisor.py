"""Resource-limited execution of one snippet inside its sandbox.

The child runs in its own process group with a closed stdin, a restricted
environment and the runtime's memory ceiling. stdout is read incrementally;
the moment the captured bytes would exceed ``max_output_bytes`` the whole
process group is killed. stderr is drained in parallel and truncated silently.
A wall-clock deadline and an optional cancellation token also force-kill the
group. Every path reaps the child before returning.
"""

from __future__ import annotations

import asyncio
import codecs
import contextlib
import os
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

import structlog

from sandrun.domain.models import ExecutionLimits, ExecutionResult, FailureKind
from sandrun.sandbox.process import kill_process_group, terminate
from sandrun.sandbox.runtime import NODE_RUNTIME, RuntimeProfile
from sandrun.utils.concurrency import CancellationToken, run_with_timeout
from sandrun.utils.fs import atomic_write

logger = structlog.get_logger(__name__)

DEFAULT_READ_CHUNK_BYTES: Final[int] = 64 * 1024
# Grace period for pipe readers to hit EOF after the group was killed.
_DRAIN_GRACE_SECONDS: Final[float] = 0.1


@dataclass(slots=True)
class _CappedBuffer:
    limit: int
    data: bytearray = field(default_factory=bytearray)
    overflowed: bool = False

    def append(self, chunk: bytes) -> bool:
        """Keep as much of ``chunk`` as fits; return ``True`` if anything was cut."""

        room = self.limit - len(self.data)
        if len(chunk) <= room:
            self.data.extend(chunk)
            return False
        if room > 0:
            self.data.extend(chunk[:room])
        self.overflowed = True
        return True

    def text(self) -> str:
        # A cut may split a multi-byte sequence; the incremental decoder drops the tail.
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        return decoder.decode(bytes(self.data), final=not self.overflowed)


class ExecutionSupervisor:
    """Run code under a :class:`RuntimeProfile` with time, memory and output caps."""

    def __init__(
        self,
        runtime: RuntimeProfile = NODE_RUNTIME,
        *,
        read_chunk_bytes: int = DEFAULT_READ_CHUNK_BYTES,
    ) -> None:
        if read_chunk_bytes <= 0:
            raise ValueError("read_chunk_bytes must be > 0")
        self._runtime = runtime
        self._read_chunk_bytes = read_chunk_bytes

    @property
    def runtime(self) -> RuntimeProfile:
        return self._runtime

    async def run(
        self,
        sandbox_path: Path,
        code: str,
        limits: ExecutionLimits,
        *,
        cancel_token: CancellationToken | None = None,
    ) -> ExecutionResult:
        started = time.monotonic()

        def elapsed_ms() -> float:
            return (time.monotonic() - started) * 1000.0

        if cancel_token is not None and cancel_token.is_cancelled:
            return _failure(
                FailureKind.CANCELLED, "execution cancelled before start", elapsed_ms()
            )

        try:
            atomic_write(sandbox_path / self._runtime.entrypoint, code)
        except OSError as exc:
            return _failure(
                FailureKind.SPAWN_ERROR, f"unable to write entrypoint: {exc}", elapsed_ms()
            )

        argv = self._runtime.build_argv(sandbox_path, memory_mb=limits.max_memory_mb)
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(sandbox_path),
                env=self._runtime.build_env(sandbox_path),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=(os.name != "nt"),
                preexec_fn=self._runtime.preexec_fn(memory_mb=limits.max_memory_mb),
            )
        except OSError as exc:
            logger.warning("execution_spawn_failed", executable=argv[0], error=str(exc))
            return _failure(
                FailureKind.SPAWN_ERROR, f"unable to start {argv[0]}: {exc}", elapsed_ms()
            )

        logger.info("execution_started", pid=process.pid, runtime=self._runtime.name)
        stdout = _CappedBuffer(limits.max_output_bytes)
        stderr = _CappedBuffer(limits.max_error_bytes)
        assert process.stdout is not None and process.stderr is not None
        pumps = {
            asyncio.create_task(self._pump(process, process.stdout, stdout, kill_on_overflow=True)),
            asyncio.create_task(self._pump(process, process.stderr, stderr, kill_on_overflow=False)),
        }

        async def _complete() -> int:
            await asyncio.wait(pumps)
            return await process.wait()

        failure: FailureKind | None = None
        message: str | None = None
        exit_code: int | None = None
        try:
            exit_code = await run_with_timeout(_complete(), limits.timeout_seconds, cancel_token)
        except TimeoutError:
            failure = FailureKind.EXECUTION_TIMEOUT
            message = f"execution timed out after {limits.timeout_ms} ms"
        except asyncio.CancelledError:
            if cancel_token is None or not cancel_token.is_cancelled:
                raise
            failure = FailureKind.CANCELLED
            message = "execution cancelled"
        finally:
            await self._reap(process, pumps)

        duration_ms = elapsed_ms()
        if stdout.overflowed:
            failure = FailureKind.OUTPUT_LIMIT_EXCEEDED
            message = f"output exceeded {limits.max_output_bytes} bytes"
            exit_code = None
        elif failure is not None:
            exit_code = None
        elif exit_code != 0:
            failure = FailureKind.NON_ZERO_EXIT
            message = f"process exited with code {exit_code}"

        errors_text = stderr.text()
        result = ExecutionResult(
            success=failure is None,
            output=stdout.text(),
            errors=errors_text or None,
            exit_code=exit_code,
            duration_ms=duration_ms,
            failure=failure,
            message=message,
        )
        logger.info(
            "execution_finished",
            success=result.success,
            failure=None if failure is None else failure.value,
            exit_code=exit_code,
            duration_ms=round(duration_ms, 3),
            output_bytes=len(stdout.data),
            stderr_truncated=stderr.overflowed,
        )
        return result

    async def _pump(
        self,
        process: asyncio.subprocess.Process,
        stream: asyncio.StreamReader,
        buffer: _CappedBuffer,
        *,
        kill_on_overflow: bool,
    ) -> None:
        while True:
            chunk = await stream.read(self._read_chunk_bytes)
            if not chunk:
                return
            if buffer.overflowed:
                continue
            if buffer.append(chunk) and kill_on_overflow:
                logger.warning("output_limit_exceeded", limit_bytes=buffer.limit, pid=process.pid)
                kill_process_group(process)
                return

    async def _reap(
        self, process: asyncio.subprocess.Process, pumps: set[asyncio.Task[None]]
    ) -> None:
        if process.returncode is None:
            await terminate(process)
        pending = {task for task in pumps if not task.done()}
        if pending:
            _, still_pending = await asyncio.wait(pending, timeout=_DRAIN_GRACE_SECONDS)
            for task in still_pending:
                task.cancel()
            for task in still_pending:
                with contextlib.suppress(asyncio.CancelledError):
                    await task


def _failure(kind: FailureKind, message: str, duration_ms: float) -> ExecutionResult:
    return ExecutionResult(
        success=False,
        errors=message,
        duration_ms=duration_ms,
        failure=kind,
        message=message,
    )


__all__ = ["DEFAULT_READ_CHUNK_BYTES", "ExecutionSupervisor"]
