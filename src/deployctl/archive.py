"""Archive helpers shared by packaging, backup and update workflows."""
from __future__ import annotations

import hashlib
import logging
import os
import shutil
import stat
import tempfile
import zipfile
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from .errors import ArchiveCorruptError, ArchiveError
from .pathfilter import normalize_relative
from .walker import WalkEntry

LOGGER = logging.getLogger(__name__)

_DIR_MODE = stat.S_IFDIR | 0o755
_FILE_MODE = stat.S_IFREG | 0o644
_LINK_MODE = stat.S_IFLNK | 0o777
_MSDOS_DIRECTORY = 0x10
_UNIX_SYSTEM = 3

WalkSource = tuple[Iterable[WalkEntry], str]


@dataclass(frozen=True, slots=True)
class ArchiveEntry:
    """A member scheduled for inclusion in an archive."""

    relative_path: str
    source_path: Path | None
    kind: str
    link_target: str | None = None

    @property
    def member_name(self) -> str:
        """Return the zip member name (directories carry a trailing slash)."""
        if self.kind == "dir":
            return f"{self.relative_path}/"
        return self.relative_path


@dataclass(slots=True)
class ArchiveBuildResult:
    """Metadata describing a completed archive build."""

    path: Path
    entries: list[ArchiveEntry]
    checksum: str
    size_bytes: int
    warnings: list[str] = field(default_factory=list)

    @property
    def files(self) -> int:
        """Return the number of regular files written."""
        return sum(1 for entry in self.entries if entry.kind == "file")

    @property
    def directories(self) -> int:
        """Return the number of directory entries written."""
        return sum(1 for entry in self.entries if entry.kind == "dir")

    @property
    def partial(self) -> bool:
        """Return True when some sources could not be read."""
        return bool(self.warnings)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable summary."""
        return {
            "path": str(self.path),
            "files": self.files,
            "directories": self.directories,
            "checksum": self.checksum,
            "size_bytes": self.size_bytes,
            "warnings": list(self.warnings),
        }


def _sort_key(entry: ArchiveEntry) -> tuple[str, ...]:
    return tuple(entry.relative_path.split("/"))


def _remap(label: str, relative: str) -> str:
    prefix = normalize_relative(label)
    path = normalize_relative(relative)
    if prefix and path:
        return f"{prefix}/{path}"
    return prefix or path


class ArchiveWriter:
    """Build a single zip archive from one or more walked trees.

    Each source is remapped under its own top-level label so split
    deployments (application code and public assets living in sibling
    directories) travel in one archive. Entries are sorted by path before
    writing, which places every directory ahead of its contents and keeps the
    member list independent of filesystem iteration order. The archive is
    written to a temporary sibling file and renamed into place only once
    complete.
    """

    def __init__(self, *, compression: int = zipfile.ZIP_DEFLATED, strict: bool = False) -> None:
        """Configure the zip compression method and per-file failure policy."""
        self.compression = compression
        self.strict = strict

    def collect(
        self,
        sources: Sequence[WalkSource],
        *,
        extra_directories: Iterable[str] = (),
    ) -> list[ArchiveEntry]:
        """Return the sorted entry list for *sources* without writing anything."""
        entries: dict[str, ArchiveEntry] = {}

        def _add(entry: ArchiveEntry) -> None:
            existing = entries.get(entry.relative_path)
            if existing is not None:
                if existing.kind == "dir" and entry.kind == "dir":
                    return
                raise ArchiveError(f"Duplicate archive member: {entry.relative_path}")
            entries[entry.relative_path] = entry

        def _add_parents(relative: str) -> None:
            parts = relative.split("/")[:-1]
            for index in range(1, len(parts) + 1):
                parent = "/".join(parts[:index])
                if parent not in entries:
                    _add(ArchiveEntry(relative_path=parent, source_path=None, kind="dir"))

        for walked, label in sources:
            label_path = normalize_relative(label)
            if label_path:
                _add_parents(f"{label_path}/_")
            for item in walked:
                relative = _remap(label_path, item.relative_path)
                _add_parents(relative)
                _add(
                    ArchiveEntry(
                        relative_path=relative,
                        source_path=item.absolute_path,
                        kind=item.kind,
                        link_target=item.link_target,
                    )
                )

        for directory in extra_directories:
            relative = normalize_relative(directory)
            if not relative:
                continue
            _add_parents(f"{relative}/_")

        return sorted(entries.values(), key=_sort_key)

    def build(
        self,
        archive_path: Path,
        sources: Sequence[WalkSource],
        *,
        extra_directories: Iterable[str] = (),
    ) -> ArchiveBuildResult:
        """Write *sources* into *archive_path* atomically and return metadata."""
        archive_path = Path(archive_path).expanduser()
        try:
            archive_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ArchiveError(f"Cannot create archive directory {archive_path.parent}: {exc}") from exc

        entries = self.collect(sources, extra_directories=extra_directories)

        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(archive_path.parent),
            prefix=f".{archive_path.name}.",
            suffix=".tmp",
        )
        os.close(tmp_fd)
        tmp_path = Path(tmp_name)
        warnings: list[str] = []
        written: list[ArchiveEntry] = []
        try:
            with zipfile.ZipFile(tmp_path, "w", compression=self.compression) as bundle:
                for entry in entries:
                    if self._write_entry(bundle, entry, warnings):
                        written.append(entry)
            os.replace(tmp_path, archive_path)
        except ArchiveError:
            raise
        except (OSError, zipfile.LargeZipFile) as exc:
            raise ArchiveError(f"Failed to write archive {archive_path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

        try:
            os.chmod(archive_path, 0o640)
        except OSError as exc:
            LOGGER.debug("Cannot restrict permissions on %s: %s", archive_path, exc)

        return ArchiveBuildResult(
            path=archive_path,
            entries=written,
            checksum=compute_checksum(archive_path),
            size_bytes=archive_path.stat().st_size,
            warnings=warnings,
        )

    def _write_entry(
        self,
        bundle: zipfile.ZipFile,
        entry: ArchiveEntry,
        warnings: list[str],
    ) -> bool:
        if entry.kind == "dir":
            info = zipfile.ZipInfo(entry.member_name)
            info.create_system = _UNIX_SYSTEM
            info.external_attr = (_DIR_MODE << 16) | _MSDOS_DIRECTORY
            bundle.writestr(info, b"")
            return True

        if entry.kind == "link":
            info = zipfile.ZipInfo(entry.member_name)
            info.create_system = _UNIX_SYSTEM
            info.external_attr = _LINK_MODE << 16
            bundle.writestr(info, (entry.link_target or "").encode("utf-8"))
            return True

        if entry.source_path is None:
            return False
        try:
            bundle.write(entry.source_path, entry.member_name)
        except OSError as exc:
            message = f"{entry.relative_path}: {exc}"
            if self.strict:
                raise ArchiveError(f"Failed to archive {message}") from exc
            LOGGER.warning("Skipping unreadable file %s", message)
            warnings.append(message)
            return False
        return True


def _member_mode(info: zipfile.ZipInfo) -> int:
    return (info.external_attr >> 16) & 0xFFFF


def _validated_name(info: zipfile.ZipInfo) -> str:
    raw = info.filename
    if raw.startswith(("/", "\\")) or PurePosixPath(raw.replace("\\", "/")).is_absolute():
        raise ArchiveCorruptError(f"Archive member uses an absolute path: {raw!r}")
    if len(raw) > 1 and raw[1] == ":":
        raise ArchiveCorruptError(f"Archive member uses a drive path: {raw!r}")
    try:
        name = normalize_relative(raw)
    except ValueError as exc:
        raise ArchiveCorruptError(f"Archive member escapes the destination: {raw!r}") from exc
    return name


def open_archive(path: Path) -> zipfile.ZipFile:
    """Open *path* for reading, translating failures to :class:`ArchiveCorruptError`."""
    try:
        bundle = zipfile.ZipFile(path)
    except (zipfile.BadZipFile, OSError, EOFError) as exc:
        raise ArchiveCorruptError(f"Cannot open archive {path}: {exc}") from exc
    return bundle


def list_archive(path: Path) -> list[str]:
    """Return the normalised member names stored in *path*."""
    with open_archive(path) as bundle:
        return [name for name in (_validated_name(info) for info in bundle.infolist()) if name]


def verify_archive(path: Path) -> int:
    """Check CRCs of every member and return the number of regular files."""
    with open_archive(path) as bundle:
        try:
            broken = bundle.testzip()
        except (zipfile.BadZipFile, OSError, EOFError) as exc:
            raise ArchiveCorruptError(f"Archive {path} is unreadable: {exc}") from exc
        if broken is not None:
            raise ArchiveCorruptError(f"Archive {path} has a corrupt member: {broken}")
        files = 0
        for info in bundle.infolist():
            _validated_name(info)
            if not info.is_dir() and not stat.S_ISLNK(_member_mode(info)):
                files += 1
        return files


def extract_archive(archive: Path, destination: Path) -> list[str]:
    """Extract *archive* over *destination*, overwriting existing files.

    Member names are validated before anything is written: absolute paths and
    ``..`` segments raise :class:`ArchiveCorruptError`. Symlink members whose
    target would land outside *destination* are skipped with a warning.
    """
    destination = Path(destination)
    with open_archive(archive) as bundle:
        members = [(info, _validated_name(info)) for info in bundle.infolist()]
        extracted: list[str] = []
        try:
            destination.mkdir(parents=True, exist_ok=True)
            resolved_root = destination.resolve()
            for info, name in members:
                if not name:
                    continue
                target = destination / name
                mode = _member_mode(info)
                if info.is_dir():
                    if target.is_symlink() or (target.exists() and not target.is_dir()):
                        target.unlink()
                    target.mkdir(parents=True, exist_ok=True)
                elif stat.S_ISLNK(mode):
                    link_target = bundle.read(info).decode("utf-8")
                    landing = (target.parent / link_target).resolve()
                    if not landing.is_relative_to(resolved_root):
                        LOGGER.warning("Skipping symlink %s escaping %s", name, destination)
                        continue
                    target.parent.mkdir(parents=True, exist_ok=True)
                    if target.is_symlink() or target.is_file():
                        target.unlink()
                    target.symlink_to(link_target)
                else:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    if target.is_symlink():
                        target.unlink()
                    with bundle.open(info) as source, target.open("wb") as sink:
                        shutil.copyfileobj(source, sink)
                extracted.append(name)
        except (zipfile.BadZipFile, EOFError) as exc:
            raise ArchiveCorruptError(f"Archive {archive} is corrupt: {exc}") from exc
        except OSError as exc:
            raise ArchiveError(f"Failed to extract {archive} into {destination}: {exc}") from exc
    return extracted


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = archive_path.with_name(f"{archive_path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    try:
        os.chmod(checksum_path, 0o640)
    except OSError as exc:
        LOGGER.debug("Cannot restrict permissions on %s: %s", checksum_path, exc)
    return checksum_path


__all__ = [
    "ArchiveBuildResult",
    "ArchiveEntry",
    "ArchiveWriter",
    "WalkSource",
    "compute_checksum",
    "extract_archive",
    "list_archive",
    "open_archive",
    "verify_archive",
    "write_checksum_file",
]
