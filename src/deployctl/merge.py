"""Merge an extracted payload into a live deployment tree."""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import MergeError, PayloadStructureError, WalkError
from .pathfilter import PathFilter, as_filter
from .walker import WalkEntry, link_escapes, walk

LOGGER = logging.getLogger(__name__)

DEFAULT_LOCATE_DEPTH = 2


class ConflictPolicy(str, Enum):
    """How to treat destination files that already exist."""

    OVERWRITE = "overwrite"
    SKIP_EXISTING = "skip_existing"


@dataclass(frozen=True, slots=True)
class PermissionMap:
    """Fixed modes reapplied after a merge; archive permission bits are not trusted."""

    directory: int = 0o755
    file: int = 0o644

    def apply(self, path: Path, *, is_dir: bool) -> None:
        """Apply the directory or file mode to *path* (symlinks are left alone)."""
        if path.is_symlink():
            return
        os.chmod(path, self.directory if is_dir else self.file)


@dataclass(slots=True)
class MergeResult:
    """Summary of a completed merge."""

    copied: list[str] = field(default_factory=list)
    directories_created: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable summary."""
        return {
            "copied": len(self.copied),
            "directories_created": len(self.directories_created),
            "skipped": len(self.skipped),
        }


FileCallback = Callable[[str, int], None]


def locate_root(
    extract_dir: Path,
    markers: Sequence[str],
    *,
    max_depth: int = DEFAULT_LOCATE_DEPTH,
) -> Path:
    """Return the directory holding one of *markers* inside *extract_dir*.

    Release packages sometimes wrap the payload in one or two extra
    directories. The search is breadth-first: *extract_dir* itself, then its
    subdirectories, then theirs, down to *max_depth* levels. Candidates on one
    level are visited in sorted order, so the shallowest match wins.
    """
    if not markers:
        raise PayloadStructureError("No marker files configured to recognise the payload root.")
    level: list[Path] = [Path(extract_dir)]
    for depth in range(max_depth + 1):
        for candidate in level:
            for marker in markers:
                if (candidate / marker).is_file():
                    LOGGER.debug("Located payload root %s at depth %d", candidate, depth)
                    return candidate
        if depth == max_depth:
            break
        next_level: list[Path] = []
        for candidate in level:
            try:
                children = sorted(candidate.iterdir())
            except OSError:
                continue
            next_level.extend(
                child for child in children if child.is_dir() and not child.is_symlink()
            )
        level = next_level
    joined = ", ".join(markers)
    raise PayloadStructureError(
        f"No marker file ({joined}) found within {max_depth} levels of {extract_dir}."
    )


class DirectoryMerger:
    """Copy a source tree into a destination tree honouring exclusion rules.

    Paths matched by the exclusion rules are neither read from the source nor
    touched in the destination, which protects local configuration and
    persisted data that a package never ships.
    """

    def __init__(self, permissions: PermissionMap | None = None) -> None:
        """Initialise the merger with the permission map to reapply."""
        self.permissions = permissions or PermissionMap()

    def merge(
        self,
        source_root: Path,
        dest_root: Path,
        exclusions: PathFilter | Iterable[str] | None = None,
        conflict_policy: ConflictPolicy = ConflictPolicy.OVERWRITE,
        *,
        on_file: FileCallback | None = None,
    ) -> MergeResult:
        """Copy every non-excluded file from *source_root* into *dest_root*."""
        rules = as_filter(exclusions)
        source_root = Path(source_root)
        dest_root = Path(dest_root)
        policy = ConflictPolicy(conflict_policy)
        result = MergeResult()
        touched: list[tuple[Path, bool]] = []

        try:
            entries = walk(source_root, rules)
            dest_root.mkdir(parents=True, exist_ok=True)
            for entry in entries:
                target = dest_root / entry.relative_path
                if entry.is_link:
                    self._merge_link(entry, source_root, target, policy, result)
                    continue
                if entry.is_dir:
                    if target.is_symlink() or (target.exists() and not target.is_dir()):
                        target.unlink()
                    if not target.exists():
                        target.mkdir(parents=True)
                        result.directories_created.append(entry.relative_path)
                    touched.append((target, True))
                    continue
                if policy is ConflictPolicy.SKIP_EXISTING and (
                    target.exists() or target.is_symlink()
                ):
                    result.skipped.append(entry.relative_path)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                if target.is_symlink():
                    target.unlink()
                shutil.copy2(entry.absolute_path, target)
                touched.append((target, False))
                result.copied.append(entry.relative_path)
                if on_file is not None:
                    on_file(entry.relative_path, len(result.copied))

            for path, is_dir in touched:
                self.permissions.apply(path, is_dir=is_dir)
        except WalkError as exc:
            raise MergeError(f"Cannot read payload {source_root}: {exc}") from exc
        except (OSError, shutil.Error) as exc:
            raise MergeError(
                f"Merge into {dest_root} failed after {len(result.copied)} files: {exc}"
            ) from exc
        return result

    def _merge_link(
        self,
        entry: WalkEntry,
        source_root: Path,
        target: Path,
        policy: ConflictPolicy,
        result: MergeResult,
    ) -> None:
        if link_escapes(entry, source_root) or entry.link_target is None:
            LOGGER.warning("Not recreating symlink %s outside the payload", entry.relative_path)
            result.skipped.append(entry.relative_path)
            return
        if target.exists() or target.is_symlink():
            if policy is ConflictPolicy.SKIP_EXISTING:
                result.skipped.append(entry.relative_path)
                return
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.symlink_to(entry.link_target)
        result.copied.append(entry.relative_path)


__all__ = [
    "ConflictPolicy",
    "DEFAULT_LOCATE_DEPTH",
    "DirectoryMerger",
    "MergeResult",
    "PermissionMap",
    "locate_root",
]
