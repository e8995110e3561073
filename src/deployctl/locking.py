"""Filesystem lock guarding the deployment tree against concurrent updates."""
from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .errors import ConcurrentUpdateError, DeployError

LOGGER = logging.getLogger(__name__)

LOCK_NAME = "update.lock"


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int
    metadata: dict[str, object]


def _pid_alive(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


class LockManager:
    """Create and release the update lock under the runtime directory.

    The lock is a file created with ``O_EXCL``: while it exists every other
    invocation fails fast with :class:`ConcurrentUpdateError` instead of
    waiting. The file carries JSON metadata about its holder; a lock whose
    holder process no longer exists is reclaimed with a warning.
    """

    def __init__(self, runtime_dir: Path, *, reclaim_stale: bool = True) -> None:
        """Initialise the manager rooted at *runtime_dir*."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.reclaim_stale = reclaim_stale

    @property
    def lock_path(self) -> Path:
        """Return the path of the update lock file."""
        return self.runtime_dir / LOCK_NAME

    def holder(self) -> dict[str, object] | None:
        """Return the metadata of the current holder, or None when unlocked."""
        path = self.lock_path
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {"path": str(path)}
        return data if isinstance(data, dict) else {"path": str(path)}

    def is_locked(self) -> bool:
        """Return True when the lock file exists."""
        return self.lock_path.exists()

    @contextmanager
    def update_lock(self, operation: str = "update") -> Iterator[LockHandle]:
        """Hold the update lock for the duration of the ``with`` block."""
        handle = self.acquire(operation)
        try:
            yield handle
        finally:
            self.release(handle)

    def acquire(self, operation: str = "update") -> LockHandle:
        """Create the lock file or raise :class:`ConcurrentUpdateError`."""
        started = time.monotonic()
        path = self.lock_path
        try:
            self.runtime_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DeployError(f"Cannot prepare runtime directory {self.runtime_dir}: {exc}") from exc

        metadata: dict[str, object] = {
            "pid": os.getpid(),
            "path": str(path),
            "operation": operation,
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds").replace(
                "+00:00", "Z"
            ),
        }
        for attempt in range(2):
            try:
                fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o640)
            except FileExistsError as exc:
                if attempt == 0 and self._reclaim_if_stale():
                    continue
                holder = self.holder() or {}
                detail = f" (pid {holder['pid']})" if "pid" in holder else ""
                raise ConcurrentUpdateError(
                    f"Another update is in progress{detail}; lock held at {path}."
                ) from exc
            except OSError as exc:
                raise DeployError(f"Cannot create lock file {path}: {exc}") from exc
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(metadata, handle)
                handle.write("\n")
            break

        wait_ms = int((time.monotonic() - started) * 1000)
        LOGGER.debug("Acquired update lock %s", path)
        return LockHandle(path=path, wait_ms=wait_ms, metadata=metadata)

    def release(self, handle: LockHandle) -> None:
        """Remove the lock file owned by *handle*."""
        try:
            handle.path.unlink(missing_ok=True)
        except OSError as exc:
            LOGGER.warning("Failed to remove lock file %s: %s", handle.path, exc)

    def _reclaim_if_stale(self) -> bool:
        if not self.reclaim_stale:
            return False
        holder = self.holder()
        if holder is None:
            return True
        pid = holder.get("pid")
        if not isinstance(pid, int) or _pid_alive(pid):
            return False
        LOGGER.warning("Reclaiming stale update lock %s left by pid %s", self.lock_path, pid)
        self.lock_path.unlink(missing_ok=True)
        return True


__all__ = ["LOCK_NAME", "LockHandle", "LockManager"]
