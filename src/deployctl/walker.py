"""Pre-order directory enumeration honouring exclusion rules."""
from __future__ import annotations

import logging
import os
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from pathlib import Path

from .errors import WalkError
from .pathfilter import PathFilter, as_filter

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class WalkEntry:
    """A single filesystem node discovered beneath a walk root."""

    absolute_path: Path
    relative_path: str
    is_dir: bool
    is_link: bool = False
    link_target: str | None = None

    @property
    def kind(self) -> str:
        """Return ``dir``, ``file`` or ``link``."""
        if self.is_link:
            return "link"
        return "dir" if self.is_dir else "file"


def walk(
    root: Path,
    exclusions: PathFilter | Iterable[str] | None = None,
) -> Iterator[WalkEntry]:
    """Yield every non-excluded node below *root*, parents before children.

    Excluded directories are never entered. Siblings are yielded in sorted
    name order so the sequence is stable across filesystems. Symbolic links
    are reported as link entries and never followed; links resolving outside
    *root* additionally log a warning. An unreadable subdirectory is skipped
    with a warning, while a missing or unreadable *root* raises
    :class:`WalkError` immediately.
    """
    root = Path(root).expanduser()
    rules = as_filter(exclusions)
    if not root.is_dir():
        raise WalkError(f"Walk root is not a directory: {root}")
    try:
        with os.scandir(root):
            pass
    except OSError as exc:
        raise WalkError(f"Walk root is not readable: {root}: {exc}") from exc
    return _walk_directory(root, root.resolve(), "", rules)


def _walk_directory(
    directory: Path,
    resolved_root: Path,
    prefix: str,
    rules: PathFilter,
) -> Iterator[WalkEntry]:
    try:
        with os.scandir(directory) as iterator:
            children = sorted(iterator, key=lambda item: item.name)
    except OSError as exc:
        LOGGER.warning("Skipping unreadable directory %s: %s", directory, exc)
        return

    for child in children:
        relative = f"{prefix}/{child.name}" if prefix else child.name
        if rules.excluded(relative):
            continue
        path = Path(child.path)

        if child.is_symlink():
            yield _link_entry(path, relative, resolved_root)
            continue

        try:
            is_dir = child.is_dir(follow_symlinks=False)
        except OSError as exc:
            LOGGER.warning("Skipping unreadable entry %s: %s", path, exc)
            continue

        yield WalkEntry(absolute_path=path, relative_path=relative, is_dir=is_dir)
        if is_dir:
            yield from _walk_directory(path, resolved_root, relative, rules)


def _link_entry(path: Path, relative: str, resolved_root: Path) -> WalkEntry:
    try:
        target = os.readlink(path)
    except OSError:
        target = None
    resolved = path.resolve()
    if not resolved.is_relative_to(resolved_root):
        LOGGER.warning(
            "Symlink %s points outside the walk root (%s); storing the link only.",
            path,
            resolved,
        )
    return WalkEntry(
        absolute_path=path,
        relative_path=relative,
        is_dir=resolved.is_dir(),
        is_link=True,
        link_target=target,
    )


def link_escapes(entry: WalkEntry, root: Path) -> bool:
    """Return True when the symlink *entry* resolves outside *root*."""
    if not entry.is_link:
        return False
    return not entry.absolute_path.resolve().is_relative_to(Path(root).resolve())


__all__ = ["WalkEntry", "link_escapes", "walk"]
