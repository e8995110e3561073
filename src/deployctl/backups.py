"""Helpers for creating, indexing, restoring and pruning deployment backups."""
from __future__ import annotations

import json
import logging
import os
import re
import secrets
import tempfile
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .archive import ArchiveWriter, extract_archive, verify_archive, write_checksum_file
from .errors import ArchiveError, BackupError, WalkError
from .merge import PermissionMap
from .pathfilter import PathFilter, as_filter
from .walker import walk

LOGGER = logging.getLogger(__name__)

BACKUP_PREFIX = "backup-"
BACKUP_SUFFIX = ".zip"
DEFAULT_KEEP = 3
_STAMP_RE = re.compile(r"^backup-(?P<date>\d{8})-(?P<time>\d{6})(?:-(?P<micro>\d{6}))?")


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class BackupRecord:
    """A backup archive on disk, ordered by creation time."""

    path: Path
    created_at: datetime
    checksum: str = ""
    size_bytes: int = 0

    @property
    def id(self) -> str:
        """Return the archive stem used as backup identifier."""
        return self.path.name.removesuffix(BACKUP_SUFFIX)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "id": self.id,
            "path": str(self.path),
            "created_at": self.created_at.isoformat(),
            "checksum": self.checksum,
            "size_bytes": self.size_bytes,
        }


def backup_created_at(path: Path) -> datetime:
    """Return the creation time encoded in *path*'s name, else its mtime."""
    match = _STAMP_RE.match(path.name)
    if match:
        stamp = f"{match['date']}{match['time']}{match['micro'] or '000000'}"
        try:
            return datetime.strptime(stamp, "%Y%m%d%H%M%S%f").replace(tzinfo=UTC)
        except ValueError:
            LOGGER.debug("Ignoring invalid timestamp in %s", path.name)
    return datetime.fromtimestamp(path.stat().st_mtime, tz=UTC)


def list_backups(backups_dir: Path) -> list[BackupRecord]:
    """Return backups under *backups_dir*, newest first."""
    backups_dir = Path(backups_dir)
    if not backups_dir.is_dir():
        return []
    records = [
        BackupRecord(path=path, created_at=backup_created_at(path), size_bytes=path.stat().st_size)
        for path in backups_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}")
        if path.is_file()
    ]
    records.sort(key=lambda record: (record.created_at, record.path.name), reverse=True)
    return records


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = Path(self.root).expanduser()
        self.index = Path(self.index).expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        try:
            text = self.index.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {"backups": []}
        except OSError as exc:
            raise BackupRegistryError(f"Cannot read backup index {self.index}: {exc}") from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o640)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def list_entries(self) -> list[dict[str, object]]:
        """Return the backup entries recorded in the index."""
        backups = self.read().get("backups", [])
        if not isinstance(backups, list):
            return []
        return [dict(item) for item in backups if isinstance(item, Mapping)]

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        entries = self.list_entries()
        entries.append(dict(entry))
        self.write({"backups": entries})

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry for *backup_id* if present."""
        normalized = backup_id.strip()
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == normalized:
                return entry
        return None

    def update_entry(
        self,
        backup_id: str,
        mutator: Callable[[dict[str, object]], None],
    ) -> dict[str, object] | None:
        """Apply *mutator* to the entry for *backup_id*; return None when absent."""
        entries = self.list_entries()
        for index, entry in enumerate(entries):
            if str(entry.get("id", "")).strip() == backup_id.strip():
                mutator(entry)
                entries[index] = entry
                self.write({"backups": entries})
                return entry
        return None

    def mark_removed(self, backup_id: str) -> None:
        """Flag *backup_id* as removed, keeping its history in the index."""
        removed_at = _now_iso()

        def mutator(payload: dict[str, object]) -> None:
            payload["status"] = "removed"
            payload["removed_at"] = removed_at

        self.update_entry(backup_id, mutator)

    @staticmethod
    def generate_identifier() -> str:
        """Return a unique, time-ordered backup identifier."""
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S-%f")
        return f"{BACKUP_PREFIX}{timestamp}-{secrets.token_hex(3)}"


class BackupRetention:
    """Keep the *keep* most recent backups and delete the rest."""

    def __init__(self, keep: int = DEFAULT_KEEP, *, registry: BackupsRegistry | None = None) -> None:
        """Initialise the policy; *keep* must be zero or positive."""
        if keep < 0:
            raise ValueError("Backup retention must keep zero or more backups.")
        self.keep = keep
        self.registry = registry

    def candidates(
        self,
        backups_dir: Path,
        protected: Iterable[Path] = (),
    ) -> list[BackupRecord]:
        """Return the backups :meth:`prune` would delete, oldest last."""
        shielded = {Path(path).resolve() for path in protected}
        return [
            record
            for record in list_backups(backups_dir)[self.keep :]
            if record.path.resolve() not in shielded
        ]

    def prune(self, backups_dir: Path, protected: Iterable[Path] = ()) -> list[Path]:
        """Delete all but the newest backups, never touching *protected* paths."""
        removed: list[Path] = []
        for record in self.candidates(backups_dir, protected):
            try:
                record.path.unlink()
            except OSError as exc:
                LOGGER.warning("Failed to prune backup %s: %s", record.path, exc)
                continue
            record.path.with_name(f"{record.path.name}.sha256").unlink(missing_ok=True)
            removed.append(record.path)
            if self.registry is not None:
                try:
                    self.registry.mark_removed(record.id)
                except BackupRegistryError as exc:
                    LOGGER.warning("Backup index not updated for %s: %s", record.id, exc)
            LOGGER.info("Pruned backup %s", record.path)
        return removed


class BackupManager:
    """Create verified backups of a deployment and restore them."""

    def __init__(
        self,
        registry: BackupsRegistry,
        *,
        permissions: PermissionMap | None = None,
    ) -> None:
        """Initialise the manager around the backups *registry*."""
        self.registry = registry
        self.permissions = permissions or PermissionMap()
        self._writer = ArchiveWriter(strict=True)

    @property
    def root(self) -> Path:
        """Return the directory holding backup archives."""
        return self.registry.root

    def create(
        self,
        source_root: Path,
        exclusions: PathFilter | Iterable[str] | None = None,
        *,
        label: str = "manual",
    ) -> BackupRecord:
        """Archive *source_root* and return the verified, indexed backup.

        The archive must open cleanly and hold at least one file; anything else
        raises :class:`BackupError` and leaves no archive behind.
        """
        rules = as_filter(exclusions)
        self.registry.ensure_root()
        backup_id = self.registry.generate_identifier()
        archive_path = self.root / f"{backup_id}{BACKUP_SUFFIX}"
        try:
            result = self._writer.build(archive_path, [(walk(source_root, rules), "")])
            files = verify_archive(archive_path)
        except (ArchiveError, WalkError, OSError) as exc:
            archive_path.unlink(missing_ok=True)
            raise BackupError(f"Backup of {source_root} failed: {exc}") from exc
        if files == 0:
            archive_path.unlink(missing_ok=True)
            raise BackupError(f"Backup of {source_root} is empty; refusing to continue.")

        try:
            write_checksum_file(archive_path, result.checksum)
            os.chmod(archive_path, 0o440)
        except OSError as exc:
            archive_path.unlink(missing_ok=True)
            raise BackupError(f"Failed to finalise backup {archive_path}: {exc}") from exc

        record = BackupRecord(
            path=archive_path,
            created_at=backup_created_at(archive_path),
            checksum=result.checksum,
            size_bytes=result.size_bytes,
        )
        self.registry.append(
            {
                "id": backup_id,
                "created_at": _now_iso(),
                "path": str(archive_path),
                "source": str(source_root),
                "label": label,
                "files": files,
                "size_bytes": result.size_bytes,
                "checksum": {"algorithm": "sha256", "value": result.checksum},
                "exclusions": list(rules.rules),
                "status": "available",
            }
        )
        LOGGER.info("Created backup %s (%d files)", archive_path, files)
        return record

    def latest(self) -> BackupRecord | None:
        """Return the newest backup on disk, if any."""
        records = list_backups(self.root)
        return records[0] if records else None

    def restore(
        self,
        backup: BackupRecord | Path,
        destination: Path,
        exclusions: PathFilter | Iterable[str] | None = None,
    ) -> list[str]:
        """Extract *backup* over *destination* and drop files it does not contain.

        Existing files are overwritten unconditionally. Files under
        *destination* that the backup lacks are removed unless *exclusions*
        protect them, so the tree matches the moment the backup was taken.
        """
        archive_path = backup.path if isinstance(backup, BackupRecord) else Path(backup)
        rules = as_filter(exclusions)
        destination = Path(destination)
        verify_archive(archive_path)
        restored = extract_archive(archive_path, destination)
        members = set(restored)
        try:
            self._remove_extraneous(destination, members, rules)
            for relative in restored:
                path = destination / relative
                if path.exists() or path.is_symlink():
                    self.permissions.apply(path, is_dir=path.is_dir() and not path.is_symlink())
        except (OSError, WalkError) as exc:
            raise ArchiveError(f"Failed to finalise restore into {destination}: {exc}") from exc
        LOGGER.info("Restored %s into %s (%d entries)", archive_path, destination, len(restored))
        return restored

    def _remove_extraneous(self, destination: Path, members: set[str], rules: PathFilter) -> None:
        stale_dirs: list[Path] = []
        for entry in walk(destination, rules):
            if entry.relative_path in members:
                continue
            if entry.is_dir and not entry.is_link:
                stale_dirs.append(entry.absolute_path)
                continue
            entry.absolute_path.unlink()
            LOGGER.debug("Removed %s absent from backup", entry.relative_path)
        for directory in reversed(stale_dirs):
            try:
                directory.rmdir()
            except OSError:
                LOGGER.debug("Keeping non-empty directory %s", directory)


__all__ = [
    "BACKUP_PREFIX",
    "BACKUP_SUFFIX",
    "BackupManager",
    "BackupRecord",
    "BackupRegistryError",
    "BackupRetention",
    "BackupsRegistry",
    "DEFAULT_KEEP",
    "backup_created_at",
    "list_backups",
]
