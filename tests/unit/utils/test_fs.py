"""Unit tests for sandbox filesystem helpers."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from sandrun.utils.fs import atomic_write, is_within, remove_tree, safe_delete


def test_atomic_write_replaces_content_and_leaves_no_temp_files(tmp_path: Path) -> None:
    target = tmp_path / "generated.js"

    atomic_write(target, "console.log('a')")
    atomic_write(target, b"console.log('b')")

    assert target.read_text(encoding="utf-8") == "console.log('b')"
    assert sorted(os.listdir(tmp_path)) == ["generated.js"]


def test_atomic_write_requires_existing_parent(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        atomic_write(tmp_path / "missing" / "file.txt", "x")


def test_is_within(tmp_path: Path) -> None:
    inner = tmp_path / "inner"
    inner.mkdir()

    assert is_within(inner, tmp_path)
    assert not is_within(tmp_path, inner)
    assert not is_within(tmp_path / "nope", tmp_path)


def test_safe_delete_refuses_root_and_outside_paths(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    outside = tmp_path / "outside"
    outside.mkdir()

    with pytest.raises(ValueError, match="outside sandbox root"):
        safe_delete(root, root)
    with pytest.raises(ValueError, match="outside sandbox root"):
        safe_delete(outside, root)
    assert outside.exists()


def test_safe_delete_unlinks_symlink_without_touching_target(tmp_path: Path) -> None:
    root = tmp_path / "root"
    root.mkdir()
    outside = tmp_path / "precious"
    outside.mkdir()
    (outside / "keep.txt").write_text("keep", encoding="utf-8")
    link = root / "link"
    link.symlink_to(outside, target_is_directory=True)

    safe_delete(link, root)

    assert not link.exists()
    assert (outside / "keep.txt").exists()


def test_remove_tree_is_idempotent(tmp_path: Path) -> None:
    root = tmp_path / "root"
    sandbox = root / "sess-1"
    (sandbox / "node_modules" / "pkg").mkdir(parents=True)
    (sandbox / "generated.js").write_text("1", encoding="utf-8")

    assert remove_tree(sandbox, root) is True
    assert not sandbox.exists()
    assert remove_tree(sandbox, root) is False
    assert remove_tree(tmp_path / "never" / "there", tmp_path / "never") is False
