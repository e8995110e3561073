"""Error taxonomy shared by every deployctl stage.

Each stage translates its own low-level failures (``OSError``,
``zipfile.BadZipFile``, ``httpx`` transport errors) into one of the classes
below before returning, so callers only ever reason about this hierarchy.
"""
from __future__ import annotations

from pathlib import Path

from .exit_codes import ExitCode


class DeployError(RuntimeError):
    """Base class for every failure raised by deployctl."""

    retryable: bool = False
    exit_code: ExitCode = ExitCode.FAILURE


class ConfigError(DeployError):
    """Raised when configuration parsing fails."""

    exit_code = ExitCode.VALIDATION


class NetworkError(DeployError):
    """Raised when the release feed cannot be reached or answers badly."""

    retryable = True
    exit_code = ExitCode.NETWORK


class RequestTimeoutError(NetworkError):
    """Raised when a metadata or payload request exceeds its timeout."""


class NotFoundError(DeployError):
    """Raised when no release or no downloadable asset exists."""

    exit_code = ExitCode.NETWORK


class WalkError(DeployError):
    """Raised when a tree root cannot be enumerated."""

    exit_code = ExitCode.ENVIRONMENT


class ArchiveError(DeployError):
    """Raised when an archive cannot be written."""

    exit_code = ExitCode.ENVIRONMENT


class ArchiveCorruptError(ArchiveError):
    """Raised when an archive cannot be read or contains unsafe members."""


class BackupError(DeployError):
    """Raised when a backup cannot be created, verified or located."""

    exit_code = ExitCode.ENVIRONMENT


class DownloadError(DeployError):
    """Raised when the update payload cannot be downloaded."""

    exit_code = ExitCode.NETWORK


class PayloadStructureError(DeployError):
    """Raised when no marker file identifies the application root."""


class MergeError(DeployError):
    """Raised when copying the payload into the deployment fails."""


class RollbackError(DeployError):
    """Raised when restoring the pre-update backup fails.

    The message always names the backup archive so an operator can recover
    the deployment manually.
    """

    exit_code = ExitCode.ROLLBACK_FAILED

    def __init__(self, message: str, *, backup_path: Path | None) -> None:
        """Attach *backup_path* to the error and embed it in the message."""
        self.backup_path = backup_path
        location = str(backup_path) if backup_path is not None else "<no backup captured>"
        super().__init__(f"{message} Manual recovery required from backup: {location}")


class ConcurrentUpdateError(DeployError):
    """Raised when another invocation already holds the update lock."""

    exit_code = ExitCode.LOCKED


class BuildError(DeployError):
    """Raised when a deployable package cannot be assembled."""


__all__ = [
    "ArchiveCorruptError",
    "ArchiveError",
    "BackupError",
    "BuildError",
    "ConcurrentUpdateError",
    "ConfigError",
    "DeployError",
    "DownloadError",
    "MergeError",
    "NetworkError",
    "NotFoundError",
    "PayloadStructureError",
    "RequestTimeoutError",
    "RollbackError",
    "WalkError",
]
