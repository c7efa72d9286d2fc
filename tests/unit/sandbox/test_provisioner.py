"""
sandrun — unit tests for sandbox provisioning

File: tests/unit/sandbox/test_provisioner.py

Purpose
- Validate exclusive sandbox creation, seeded manifest and registry config,
  idempotent teardown and the provision/teardown context manager.
"""

from __future__ import annotations

import json
import os
import stat
from pathlib import Path

import pytest

from sandrun.domain.errors import CleanupError, InvalidSessionIdError, ProvisionError
from sandrun.sandbox.provisioner import (
    SandboxProvisioner,
    build_registry_config,
    default_sandbox_root,
    read_manifest,
)


def test_provision_creates_seeded_sandbox(tmp_path: Path) -> None:
    provisioner = SandboxProvisioner(tmp_path / "root")

    path = provisioner.provision("Sess-1")

    assert path == tmp_path / "root" / "Sess-1"
    assert path.is_dir()
    manifest = json.loads((path / "package.json").read_text(encoding="utf-8"))
    assert manifest == {
        "name": "sandbox-sess-1",
        "version": "1.0.0",
        "private": True,
        "engines": {"node": ">=14.0.0"},
        "dependencies": {},
    }
    npmrc = (path / ".npmrc").read_text(encoding="utf-8").splitlines()
    assert npmrc[0] == "registry=https://registry.npmjs.org/"
    assert "ignore-scripts=true" in npmrc
    assert "audit=false" in npmrc
    if os.name == "posix":
        assert stat.S_IMODE(path.stat().st_mode) & 0o077 == 0


def test_custom_registry_is_pinned(tmp_path: Path) -> None:
    provisioner = SandboxProvisioner(tmp_path, registry_url="https://npm.internal.example/")

    path = provisioner.provision("s2")

    assert (path / ".npmrc").read_text(encoding="utf-8").startswith(
        "registry=https://npm.internal.example/\n"
    )
    assert build_registry_config("https://r.example/").endswith("\n")


def test_existing_sandbox_is_refused(tmp_path: Path) -> None:
    provisioner = SandboxProvisioner(tmp_path)
    provisioner.provision("dup")

    with pytest.raises(ProvisionError, match="already exists"):
        provisioner.provision("dup")


def test_unsafe_session_id_never_touches_filesystem(tmp_path: Path) -> None:
    provisioner = SandboxProvisioner(tmp_path / "root")

    with pytest.raises(InvalidSessionIdError):
        provisioner.provision("../escape")
    assert not (tmp_path / "root").exists()
    assert not (tmp_path / "escape").exists()


def test_unwritable_root_raises_provision_error(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("not a directory", encoding="utf-8")
    provisioner = SandboxProvisioner(blocker / "root")

    with pytest.raises(ProvisionError, match="unable to create sandbox"):
        provisioner.provision("s3")


def test_teardown_is_idempotent(tmp_path: Path) -> None:
    provisioner = SandboxProvisioner(tmp_path)
    path = provisioner.provision("s4")
    (path / "node_modules" / "pkg").mkdir(parents=True)

    first = provisioner.teardown(path)
    second = provisioner.teardown(path)

    assert first.success and first.error is None
    assert second.success
    assert not path.exists()


def test_teardown_refuses_paths_outside_root(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()
    provisioner = SandboxProvisioner(root)

    result = provisioner.teardown(outside)

    assert not result.success
    assert result.error is not None and "refusing" in result.error
    assert outside.exists()
    with pytest.raises(CleanupError, match="unable to remove sandbox"):
        provisioner.remove(outside)


def test_context_manager_tears_down_on_error(tmp_path: Path) -> None:
    provisioner = SandboxProvisioner(tmp_path)
    seen: list[Path] = []

    with pytest.raises(RuntimeError, match="boom"), provisioner.sandbox("s5") as path:
        seen.append(path)
        assert path.is_dir()
        raise RuntimeError("boom")

    assert seen and not seen[0].exists()


def test_read_manifest_requires_object(tmp_path: Path) -> None:
    (tmp_path / "package.json").write_text("[]", encoding="utf-8")

    with pytest.raises(ValueError, match="must be an object"):
        read_manifest(tmp_path)


def test_default_root_lives_under_temp_dir() -> None:
    assert default_sandbox_root().name == "sandrun"
