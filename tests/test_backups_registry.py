"""Tests for the BackupsRegistry helpers."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from deployctl.backups import BackupRegistryError, BackupsRegistry


def _registry(tmp_path: Path) -> BackupsRegistry:
    return BackupsRegistry(tmp_path / "backups", tmp_path / "backups" / "backups.json")


def test_backups_registry_append_and_read(tmp_path: Path) -> None:
    """Append persists entries in backups.json."""
    registry = _registry(tmp_path)
    registry.ensure_root()

    registry.append({"id": "backup-20240101-000000", "label": "pre-update 2.0.0", "status": "available"})

    data = registry.read()
    assert "backups" in data
    assert data["backups"][0]["id"] == "backup-20240101-000000"
    assert data["backups"][0]["label"] == "pre-update 2.0.0"
    on_disk = json.loads((tmp_path / "backups" / "backups.json").read_text(encoding="utf-8"))
    assert on_disk == data


def test_backups_registry_read_missing_index(tmp_path: Path) -> None:
    """A missing index reads as an empty list."""
    assert _registry(tmp_path).list_entries() == []


def test_backups_registry_rejects_corrupt_index(tmp_path: Path) -> None:
    """A corrupt index raises BackupRegistryError."""
    registry = _registry(tmp_path)
    registry.ensure_root()
    registry.index.write_text("{broken", encoding="utf-8")

    with pytest.raises(BackupRegistryError):
        registry.read()


def test_backups_registry_generates_identifier() -> None:
    """Generated identifiers carry the prefix and a sortable timestamp."""
    first = BackupsRegistry.generate_identifier()
    second = BackupsRegistry.generate_identifier()

    assert first.startswith("backup-20")
    assert first != second


def test_backups_registry_update_entry(tmp_path: Path) -> None:
    """`update_entry` applies mutators and persists changes."""
    registry = _registry(tmp_path)
    registry.append({"id": "demo", "status": "available"})

    updated = registry.update_entry("demo", lambda payload: payload.update({"status": "removed"}))

    assert updated is not None and updated["status"] == "removed"
    assert registry.find_by_id("demo")["status"] == "removed"
    assert registry.update_entry("unknown", lambda payload: None) is None


def test_backups_registry_mark_removed(tmp_path: Path) -> None:
    """Removed entries keep their history with a timestamp."""
    registry = _registry(tmp_path)
    registry.append({"id": "demo", "status": "available"})

    registry.mark_removed("demo")

    entry = registry.find_by_id("demo")
    assert entry is not None
    assert entry["status"] == "removed"
    assert str(entry["removed_at"]).endswith("Z")
