"""Operation entry points used by the CLI and by embedding applications.

Each operation returns an :class:`OperationResult` instead of raising, so a
caller such as a web controller can relay the outcome directly.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .config import AppConfig
from .errors import DeployError, RollbackError
from .pipeline import PipelineResult, UpdatePipeline
from .releases import compare

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Outcome of one service operation."""

    success: bool
    message: str
    data: dict[str, object] = field(default_factory=dict)
    error: DeployError | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        payload: dict[str, object] = {"success": self.success, "message": self.message}
        if self.data:
            payload["data"] = self.data
        return payload


class UpdateService:
    """Check for updates, install them and restore backups."""

    def __init__(self, config: AppConfig, *, pipeline: UpdatePipeline | None = None) -> None:
        """Bind the service to *config*, building a pipeline when none is given."""
        self.config = config
        self.pipeline = pipeline or UpdatePipeline(config)

    def check_for_updates(self) -> OperationResult:
        """Compare the installed version against the latest published release."""
        current = self.pipeline.current_version()
        try:
            release = self.pipeline.client.fetch_latest()
            available = compare(current, release.version)
        except DeployError as exc:
            return self._failure(f"Failed to check for updates: {exc}", exc)
        except ValueError as exc:
            return self._failure(f"Failed to check for updates: {exc}", DeployError(str(exc)))

        data: dict[str, object] = {
            "current_version": current,
            "latest_version": release.version,
            "update_available": available,
            "release": release.to_dict(),
        }
        if available:
            return OperationResult(True, f"Version {release.version} is available.", data)
        return OperationResult(True, f"Version {current} is up to date.", data)

    def perform_update(self, url: str | None = None, version: str | None = None) -> OperationResult:
        """Install *url* as *version*, or the latest release when both are omitted."""
        if bool(url) != bool(version):
            return self._failure(
                "Both a package URL and a version are required for a direct install.",
                DeployError("Incomplete update request."),
            )
        try:
            if url and version:
                result = self.pipeline.install(url, version)
            else:
                result = self.pipeline.run()
        except OSError as exc:
            return self._failure(f"Update failed: {exc}", DeployError(str(exc)))
        return self._from_pipeline(result)

    def restore_latest_backup(self) -> OperationResult:
        """Restore the newest backup over the deployment under the update lock."""
        backups = self.pipeline.backups
        try:
            with self.pipeline.locks.update_lock("restore"):
                record = backups.latest()
                if record is None:
                    return OperationResult(False, "No backup available to restore.")
                restored = backups.restore(
                    record,
                    self.config.deployment.code_root,
                    self.pipeline.backup_rules(),
                )
        except DeployError as exc:
            return self._failure(f"Restore failed: {exc}", exc)
        except OSError as exc:
            return self._failure(f"Restore failed: {exc}", DeployError(str(exc)))
        LOGGER.info("Restored backup %s", record.path)
        return OperationResult(
            True,
            f"Restored backup {record.id}.",
            {"backup": record.to_dict(), "entries": len(restored)},
        )

    @staticmethod
    def _from_pipeline(result: PipelineResult) -> OperationResult:
        data = result.to_dict()
        if result.exception is not None:
            if isinstance(result.exception, RollbackError):
                message = f"Update failed and rollback did not complete: {result.exception}"
            elif result.rolled_back:
                message = f"Update failed and was rolled back: {result.exception}"
            else:
                message = f"Update failed: {result.exception}"
            return OperationResult(False, message, data, result.exception)
        if not result.updated:
            return OperationResult(True, f"Version {result.current_version} is up to date.", data)
        message = f"Updated to version {result.target_version}."
        if result.warnings:
            message += f" {len(result.warnings)} post-update warning(s)."
        return OperationResult(True, message, data)

    @staticmethod
    def _failure(message: str, error: DeployError) -> OperationResult:
        LOGGER.error(message)
        return OperationResult(False, message, error=error)


__all__ = ["OperationResult", "UpdateService"]
