"""Runtime profiles: how the child process for a snippet is launched.

A profile is data. It names the interpreter, an argv template, the entrypoint
file written into the sandbox, the per-sandbox module directory and a
restricted environment template. Placeholders ``{sandbox}``, ``{entrypoint}``,
``{module_dir}`` and ``{memory_mb}`` are expanded per execution.
"""

from __future__ import annotations

import os
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Final

_MIB: Final[int] = 1024 * 1024


@dataclass(frozen=True, slots=True)
class RuntimeProfile:
    name: str
    executable: str
    argv: tuple[str, ...]
    entrypoint: str
    module_dir: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    # Apply RLIMIT_AS = memory ceiling in the child (for runtimes without a heap flag).
    address_space_limit: bool = False

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("name must not be empty")
        if not self.executable.strip():
            raise ValueError("executable must not be empty")
        entry = Path(self.entrypoint)
        if entry.name != self.entrypoint or self.entrypoint in {"", ".", ".."}:
            raise ValueError("entrypoint must be a bare filename")
        object.__setattr__(self, "argv", tuple(self.argv))
        object.__setattr__(self, "env", dict(self.env))

    def with_executable(self, executable: str) -> RuntimeProfile:
        return replace(self, executable=executable)

    def build_argv(self, sandbox: Path, *, memory_mb: int) -> list[str]:
        values = self._placeholders(sandbox, memory_mb=memory_mb)
        return [self.executable, *(part.format_map(values) for part in self.argv)]

    def build_env(self, sandbox: Path) -> dict[str, str]:
        """Return the child environment: host ``PATH`` plus the expanded template only."""

        env: dict[str, str] = {}
        path_value = os.environ.get("PATH")
        if path_value:
            env["PATH"] = path_value
        values = self._placeholders(sandbox, memory_mb=0)
        for key, template in self.env.items():
            env[key] = template.format_map(values)
        return env

    def preexec_fn(self, *, memory_mb: int) -> Callable[[], None] | None:
        if not self.address_space_limit or os.name == "nt":
            return None
        limit_bytes = memory_mb * _MIB

        def _apply_limits() -> None:
            import resource

            if hasattr(resource, "RLIMIT_AS"):
                resource.setrlimit(resource.RLIMIT_AS, (limit_bytes, limit_bytes))
            elif hasattr(resource, "RLIMIT_DATA"):
                resource.setrlimit(resource.RLIMIT_DATA, (limit_bytes, limit_bytes))

        return _apply_limits

    def _placeholders(self, sandbox: Path, *, memory_mb: int) -> dict[str, str]:
        module_dir = "" if self.module_dir is None else str(sandbox / self.module_dir)
        return {
            "sandbox": str(sandbox),
            "entrypoint": self.entrypoint,
            "module_dir": module_dir,
            "memory_mb": str(memory_mb),
        }


NODE_RUNTIME: Final[RuntimeProfile] = RuntimeProfile(
    name="node",
    executable="node",
    argv=("--max-old-space-size={memory_mb}", "{entrypoint}"),
    entrypoint="generated.js",
    module_dir="node_modules",
    env={
        "NODE_PATH": "{module_dir}",
        "NODE_OPTIONS": "",
        "HOME": "{sandbox}",
        "npm_config_cache": "{sandbox}/.npm",
    },
)


__all__ = ["NODE_RUNTIME", "RuntimeProfile"]
