"""Per-session sandbox directories.

Each session owns ``<root>/<session_id>``, created exclusively and seeded with
a dependency manifest that declares no packages plus a registry config pinned
to one trusted registry. :meth:`SandboxProvisioner.sandbox` wraps
provision/teardown so teardown runs on every exit path.
"""

from __future__ import annotations

import contextlib
import json
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import structlog

from sandrun.constants import (
    DEFAULT_REGISTRY_URL,
    MANIFEST_FILENAME,
    REGISTRY_CONFIG_FILENAME,
    SANDBOX_DIR_NAME,
)
from sandrun.domain.errors import CleanupError, ProvisionError
from sandrun.domain.ids import validate_session_id
from sandrun.domain.models import CleanupResult
from sandrun.utils.fs import atomic_write, remove_tree

logger = structlog.get_logger(__name__)

_DIR_MODE = 0o700


def default_sandbox_root() -> Path:
    return Path(tempfile.gettempdir()) / SANDBOX_DIR_NAME


def build_manifest(session_id: str) -> dict[str, Any]:
    return {
        "name": f"sandbox-{session_id.lower()}",
        "version": "1.0.0",
        "private": True,
        "engines": {"node": ">=14.0.0"},
        "dependencies": {},
    }


def build_registry_config(registry_url: str) -> str:
    lines = (
        f"registry={registry_url}",
        "audit=false",
        "fund=false",
        "optional=false",
        "save-exact=true",
        "update-notifier=false",
        "ignore-scripts=true",
    )
    return "\n".join(lines) + "\n"


def read_manifest(sandbox_path: Path) -> dict[str, Any]:
    with (sandbox_path / MANIFEST_FILENAME).open("r", encoding="utf-8") as handle:
        payload = json.load(handle)
    if not isinstance(payload, dict):
        raise ValueError(f"{MANIFEST_FILENAME} root must be an object")
    return payload


def write_manifest(sandbox_path: Path, manifest: dict[str, Any]) -> None:
    atomic_write(sandbox_path / MANIFEST_FILENAME, json.dumps(manifest, indent=2) + "\n")


class SandboxProvisioner:
    """Create and destroy session sandboxes under one root directory."""

    def __init__(
        self,
        root: Path | str | None = None,
        *,
        registry_url: str = DEFAULT_REGISTRY_URL,
    ) -> None:
        self._root = (default_sandbox_root() if root is None else Path(root)).expanduser()
        self._registry_url = registry_url

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, session_id: str) -> Path:
        return self._root / validate_session_id(session_id)

    def provision(self, session_id: str) -> Path:
        """Create the sandbox for ``session_id`` and return its path.

        Raises ``ProvisionError`` if the directory exists already or cannot be
        seeded; a partially written sandbox is removed before raising.
        """

        path = self.path_for(session_id)
        try:
            self._root.mkdir(mode=_DIR_MODE, parents=True, exist_ok=True)
            path.mkdir(mode=_DIR_MODE, exist_ok=False)
        except FileExistsError as exc:
            raise ProvisionError(f"sandbox already exists for session {session_id!r}") from exc
        except OSError as exc:
            raise ProvisionError(f"unable to create sandbox {path}: {exc}") from exc

        try:
            write_manifest(path, build_manifest(session_id))
            atomic_write(path / REGISTRY_CONFIG_FILENAME, build_registry_config(self._registry_url))
        except OSError as exc:
            with contextlib.suppress(OSError, ValueError):
                remove_tree(path, self._root)
            raise ProvisionError(f"unable to seed sandbox {path}: {exc}") from exc

        logger.info("sandbox_provisioned", sandbox_path=str(path))
        return path

    def remove(self, sandbox_path: Path | str) -> bool:
        """Delete a sandbox directory; return ``False`` if it was already gone.

        Raises ``CleanupError`` for paths outside the root and for I/O failures.
        """

        path = Path(sandbox_path)
        try:
            return remove_tree(path, self._root)
        except (OSError, ValueError) as exc:
            raise CleanupError(f"unable to remove sandbox {path}: {exc}") from exc

    def teardown(self, sandbox_path: Path | str) -> CleanupResult:
        """Remove a sandbox. A missing path is success; other failures are reported."""

        try:
            removed = self.remove(sandbox_path)
        except CleanupError as exc:
            logger.error("sandbox_teardown_failed", sandbox_path=str(sandbox_path), error=str(exc))
            return CleanupResult(success=False, error=str(exc))
        if removed:
            logger.info("sandbox_removed", sandbox_path=str(sandbox_path))
        return CleanupResult(success=True)

    @contextlib.contextmanager
    def sandbox(self, session_id: str) -> Iterator[Path]:
        """Provision a sandbox for the block; tear it down however the block exits."""

        path = self.provision(session_id)
        try:
            yield path
        finally:
            self.teardown(path)


__all__ = [
    "SandboxProvisioner",
    "build_manifest",
    "build_registry_config",
    "default_sandbox_root",
    "read_manifest",
    "write_manifest",
]
