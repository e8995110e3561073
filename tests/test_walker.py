"""Tests for the tree walker."""
from __future__ import annotations

import logging
import os
from pathlib import Path

import pytest

from conftest import write_tree
from deployctl.errors import WalkError
from deployctl.walker import link_escapes, walk


def test_walk_excludes_directory_and_skips_descent(tmp_path: Path) -> None:
    """An excluded directory yields nothing, including itself."""
    root = write_tree(tmp_path / "root", {"a.txt": "a", "node_modules/x/y.js": "y"})

    entries = list(walk(root, ["node_modules"]))

    assert [entry.relative_path for entry in entries] == ["a.txt"]
    assert entries[0].kind == "file"


def test_walk_is_pre_order_and_sorted(tmp_path: Path) -> None:
    """Parents precede children and siblings come out in name order."""
    root = write_tree(
        tmp_path / "root",
        {"b/two.txt": "2", "b/one.txt": "1", "a.txt": "a", "c/d/e.txt": "e"},
    )

    paths = [entry.relative_path for entry in walk(root)]

    assert paths == ["a.txt", "b", "b/one.txt", "b/two.txt", "c", "c/d", "c/d/e.txt"]


def test_walk_entries_expose_absolute_paths(tmp_path: Path) -> None:
    """Every entry carries the absolute source path next to its relative path."""
    root = write_tree(tmp_path / "root", {"app/Kernel.php": "<?php"})

    entries = {entry.relative_path: entry for entry in walk(root)}

    assert entries["app"].is_dir is True
    assert entries["app/Kernel.php"].absolute_path == root / "app" / "Kernel.php"


def test_walk_never_yields_excluded_paths(tmp_path: Path) -> None:
    """No yielded path equals a rule or lies below one."""
    root = write_tree(
        tmp_path / "root",
        {
            "storage/logs/a.log": "x",
            "storage/app/keep.txt": "k",
            ".git/HEAD": "ref",
            ".github/workflows/ci.yml": "on: push",
            ".gitignore": "vendor",
        },
    )
    rules = ["storage/logs", ".git"]

    paths = [entry.relative_path for entry in walk(root, rules)]

    for path in paths:
        assert not any(path == rule or path.startswith(f"{rule}/") for rule in rules)
    assert ".github/workflows/ci.yml" in paths
    assert ".gitignore" in paths
    assert "storage/app/keep.txt" in paths


def test_walk_missing_root_raises(tmp_path: Path) -> None:
    """A missing root is reported eagerly."""
    with pytest.raises(WalkError):
        walk(tmp_path / "missing")


def test_walk_file_root_raises(tmp_path: Path) -> None:
    """A regular file is not a valid walk root."""
    target = tmp_path / "file.txt"
    target.write_text("x", encoding="utf-8")

    with pytest.raises(WalkError):
        walk(target)


def test_walk_reports_links_without_following(tmp_path: Path) -> None:
    """Symlinks are yielded as links and never descended into."""
    root = write_tree(tmp_path / "root", {"real/file.txt": "data"})
    (root / "alias").symlink_to("real", target_is_directory=True)
    (root / "real" / "loop").symlink_to("..", target_is_directory=True)

    entries = {entry.relative_path: entry for entry in walk(root)}

    assert entries["alias"].is_link is True
    assert entries["alias"].kind == "link"
    assert entries["alias"].link_target == "real"
    assert "alias/file.txt" not in entries
    assert entries["real/loop"].is_link is True
    assert not any(path.startswith("real/loop/") for path in entries)


def test_walk_warns_about_links_leaving_the_root(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """A link resolving outside the root is reported, not followed."""
    outside = write_tree(tmp_path / "outside", {"secret.txt": "s"})
    root = write_tree(tmp_path / "root", {"a.txt": "a"})
    (root / "escape").symlink_to(outside, target_is_directory=True)

    with caplog.at_level(logging.WARNING, logger="deployctl.walker"):
        entries = {entry.relative_path: entry for entry in walk(root)}

    assert entries["escape"].is_link
    assert "escape/secret.txt" not in entries
    assert link_escapes(entries["escape"], root)
    assert not link_escapes(entries["a.txt"], root)
    assert "outside the walk root" in caplog.text


@pytest.mark.skipif(os.geteuid() == 0, reason="root can read any directory")
def test_walk_skips_unreadable_subdirectory(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """An unreadable directory below the root is skipped with a warning."""
    root = write_tree(tmp_path / "root", {"locked/inner.txt": "x", "open.txt": "o"})
    locked = root / "locked"
    locked.chmod(0o000)
    try:
        with caplog.at_level(logging.WARNING, logger="deployctl.walker"):
            paths = [entry.relative_path for entry in walk(root)]
    finally:
        locked.chmod(0o755)

    assert "open.txt" in paths
    assert "locked" in paths
    assert "locked/inner.txt" not in paths
    assert "Skipping unreadable directory" in caplog.text


def test_walk_never_opens_excluded_directories(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Excluded directories are pruned at descent instead of being listed and filtered."""
    root = write_tree(tmp_path / "root", {"a.txt": "a", "node_modules/x.js": "x", ".git/HEAD": "ref"})
    opened: list[Path] = []
    real_scandir = os.scandir

    def recording_scandir(path: Path) -> object:
        opened.append(Path(path))
        return real_scandir(path)

    monkeypatch.setattr(os, "scandir", recording_scandir)

    paths = [entry.relative_path for entry in walk(root, ["node_modules", ".git"])]

    assert paths == ["a.txt"]
    assert root / "node_modules" not in opened
    assert root / ".git" not in opened
    assert set(opened) == {root}


@pytest.mark.skipif(os.geteuid() == 0, reason="root can read any directory")
def test_walk_does_not_touch_unreadable_excluded_directory(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """An excluded directory that cannot be read produces no warning."""
    root = write_tree(tmp_path / "root", {"a.txt": "a", "node_modules/x.js": "x"})
    excluded = root / "node_modules"
    excluded.chmod(0o000)
    try:
        with caplog.at_level(logging.WARNING, logger="deployctl.walker"):
            paths = [entry.relative_path for entry in walk(root, ["node_modules"])]
    finally:
        excluded.chmod(0o755)

    assert paths == ["a.txt"]
    assert "Skipping unreadable directory" not in caplog.text
