"""Self-update pipeline with backup and rollback.

One invocation walks the states below and never keeps state between runs::

    Idle -> CheckingUpdate -> BackingUp -> Downloading -> Extracting
         -> LocatingRoot -> Merging -> RunningPostTasks -> CleaningUp -> Done

Failures before ``Merging`` end in ``Failed`` with the deployment untouched.
A failure while merging restores the backup taken at ``BackingUp`` (state
``RolledBack``) and then ends in ``Failed``. If the restore itself fails the
pipeline reports :class:`~deployctl.errors.RollbackError`, which names the
backup to recover from manually.
"""
from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .archive import extract_archive
from .backups import BackupManager, BackupRecord, BackupRetention, BackupsRegistry
from .config import AppConfig
from .errors import DeployError, MergeError, RollbackError
from .locking import LockManager
from .merge import DirectoryMerger, FileCallback, MergeResult, locate_root
from .pathfilter import PathFilter
from .processes import CommandRunner
from .releases import (
    ReleaseClient,
    ReleaseDescriptor,
    compare,
    read_current_version,
    write_current_version,
)

LOGGER = logging.getLogger(__name__)

PACKAGE_NAME = "package.zip"
EXTRACT_DIR = "extracted"


class PipelineState(str, Enum):
    """States of one update pipeline invocation."""

    IDLE = "Idle"
    CHECKING_UPDATE = "CheckingUpdate"
    BACKING_UP = "BackingUp"
    DOWNLOADING = "Downloading"
    EXTRACTING = "Extracting"
    LOCATING_ROOT = "LocatingRoot"
    MERGING = "Merging"
    RUNNING_POST_TASKS = "RunningPostTasks"
    CLEANING_UP = "CleaningUp"
    DONE = "Done"
    FAILED = "Failed"
    ROLLED_BACK = "RolledBack"


StateCallback = Callable[[PipelineState], None]


@dataclass(slots=True)
class PipelineResult:
    """Outcome of a pipeline invocation."""

    current_version: str
    target_version: str | None = None
    state: PipelineState = PipelineState.IDLE
    history: list[PipelineState] = field(default_factory=lambda: [PipelineState.IDLE])
    backup: BackupRecord | None = None
    release: ReleaseDescriptor | None = None
    merge: MergeResult | None = None
    warnings: list[str] = field(default_factory=list)
    pruned: list[Path] = field(default_factory=list)
    exception: DeployError | None = None
    lock_wait_ms: int | None = None

    @property
    def error(self) -> str | None:
        """Return the failure message, if any."""
        return str(self.exception) if self.exception is not None else None

    @property
    def succeeded(self) -> bool:
        """Return True when the run ended in ``Done`` or ``Idle``."""
        return self.state in (PipelineState.DONE, PipelineState.IDLE)

    @property
    def updated(self) -> bool:
        """Return True when a new version was installed."""
        return self.state is PipelineState.DONE

    @property
    def rolled_back(self) -> bool:
        """Return True when a failed merge was reverted from the backup."""
        return PipelineState.ROLLED_BACK in self.history

    def raise_for_error(self) -> None:
        """Re-raise the failure recorded on this result."""
        if self.exception is not None:
            raise self.exception

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "state": self.state.value,
            "history": [state.value for state in self.history],
            "current_version": self.current_version,
            "target_version": self.target_version,
            "backup": self.backup.to_dict() if self.backup else None,
            "release": self.release.to_dict() if self.release else None,
            "merge": self.merge.to_dict() if self.merge else None,
            "warnings": list(self.warnings),
            "pruned": [str(path) for path in self.pruned],
            "error": self.error,
            "rolled_back": self.rolled_back,
            "lock_wait_ms": self.lock_wait_ms,
        }


class UpdatePipeline:
    """Check for, download and install a release over the live deployment."""

    def __init__(
        self,
        config: AppConfig,
        *,
        client: ReleaseClient | None = None,
        backups: BackupManager | None = None,
        merger: DirectoryMerger | None = None,
        retention: BackupRetention | None = None,
        locks: LockManager | None = None,
        runner: CommandRunner | None = None,
        on_state: StateCallback | None = None,
        on_merge_file: FileCallback | None = None,
    ) -> None:
        """Wire the pipeline collaborators, building defaults from *config*."""
        self.config = config
        release = config.release
        self.client = client or ReleaseClient(
            release.repo,
            api_base=release.api_base,
            token=release.token,
            metadata_timeout=release.metadata_timeout,
            download_timeout=release.download_timeout,
            asset_marker=release.asset_marker,
            asset_extension=release.asset_extension,
        )
        registry = BackupsRegistry(config.backups.root, config.backups.index)
        self.backups = backups or BackupManager(registry, permissions=config.update.permissions)
        self.merger = merger or DirectoryMerger(config.update.permissions)
        self.retention = retention or BackupRetention(config.backups.keep, registry=registry)
        self.locks = locks or LockManager(config.runtime_dir)
        self.runner = runner or CommandRunner()
        self.on_state = on_state
        self.on_merge_file = on_merge_file

    # Entry points -----------------------------------------------------
    def run(self) -> PipelineResult:
        """Check the release feed and install the latest release when newer."""
        result = PipelineResult(current_version=self.current_version())
        self._enter(result, PipelineState.CHECKING_UPDATE)
        try:
            release = self.client.fetch_latest()
        except DeployError as exc:
            return self._fail(result, exc)
        result.release = release
        result.target_version = release.version
        try:
            newer = compare(result.current_version, release.version)
        except ValueError as exc:
            return self._fail(result, DeployError(f"Cannot compare versions: {exc}"))
        if not newer:
            LOGGER.info("Version %s is current; nothing to do.", result.current_version)
            self._enter(result, PipelineState.IDLE)
            return result
        return self._install(result, release.asset_url, release.version)

    def install(self, url: str, version: str) -> PipelineResult:
        """Install the package at *url* as *version* without checking the feed."""
        result = PipelineResult(current_version=self.current_version(), target_version=version)
        return self._install(result, url, version)

    # Exclusion sets ---------------------------------------------------
    def backup_rules(self) -> PathFilter:
        """Return the backup rules the merge also honours, plus internal directories.

        A backup rule the merge does not share is dropped, so every path the
        merge may write is captured and can be rolled back.
        """
        exclusions = self.config.exclusions
        shared = exclusions.filter_for("backup").intersection(exclusions.filter_for("merge"))
        return shared.extended(self._internal_rules())

    def merge_rules(self) -> PathFilter:
        """Return the merge rule set plus the tool's own working directories."""
        return self.config.exclusions.filter_for("merge").extended(self._internal_rules())

    def _internal_rules(self) -> list[str]:
        root = self._code_root.resolve()
        rules: list[str] = []
        for path in (
            self.backups.root,
            self.config.update.work_dir,
            self.config.logs_dir,
            self.config.runtime_dir,
        ):
            try:
                relative = Path(path).resolve().relative_to(root).as_posix()
            except ValueError:
                continue
            if relative not in ("", "."):
                rules.append(relative)
        return rules

    # Stages -----------------------------------------------------------
    @property
    def _code_root(self) -> Path:
        return self.config.deployment.code_root

    def current_version(self) -> str:
        """Return the version recorded in the deployment manifest."""
        return read_current_version(self.config.deployment.manifest_path)

    def _install(self, result: PipelineResult, url: str, version: str) -> PipelineResult:
        self._enter(result, PipelineState.BACKING_UP)
        try:
            handle = self.locks.acquire("update")
        except DeployError as exc:
            return self._fail(result, exc)
        result.lock_wait_ms = handle.wait_ms
        try:
            return self._install_locked(result, url, version)
        finally:
            self.locks.release(handle)

    def _install_locked(self, result: PipelineResult, url: str, version: str) -> PipelineResult:
        work_dir = self.config.update.work_dir / BackupsRegistry.generate_identifier().replace(
            "backup-", "update-", 1
        )
        try:
            try:
                work_dir.mkdir(parents=True, exist_ok=False)
                result.backup = self.backups.create(
                    self._code_root, self.backup_rules(), label=f"pre-update {version}"
                )
            except OSError as exc:
                return self._fail(result, DeployError(f"Cannot prepare {work_dir}: {exc}"))
            except DeployError as exc:
                return self._fail(result, exc)

            self._enter(result, PipelineState.DOWNLOADING)
            package = work_dir / PACKAGE_NAME
            try:
                self.client.download(url, package)
            except DeployError as exc:
                return self._fail(result, exc)

            self._enter(result, PipelineState.EXTRACTING)
            extract_dir = work_dir / EXTRACT_DIR
            try:
                extract_archive(package, extract_dir)
            except DeployError as exc:
                return self._fail(result, exc)

            self._enter(result, PipelineState.LOCATING_ROOT)
            try:
                payload_root = locate_root(
                    extract_dir,
                    self.config.deployment.markers,
                    max_depth=self.config.update.locate_depth,
                )
            except DeployError as exc:
                return self._fail(result, exc)

            self._enter(result, PipelineState.MERGING)
            try:
                result.merge = self.merger.merge(
                    payload_root,
                    self._code_root,
                    self.merge_rules(),
                    on_file=self.on_merge_file,
                )
                write_current_version(self.config.deployment.manifest_path, version)
            except Exception as exc:  # noqa: BLE001 - every merge failure must roll back
                error = exc if isinstance(exc, MergeError) else MergeError(f"Merge failed: {exc}")
                if error is not exc:
                    error.__cause__ = exc
                return self._rollback(result, error)

            result.current_version = version
            self._enter(result, PipelineState.RUNNING_POST_TASKS)
            self._run_post_tasks(result)

            self._enter(result, PipelineState.CLEANING_UP)
            self._remove_work_dir(work_dir, result)
            self._prune(result)
            self._enter(result, PipelineState.DONE)
            LOGGER.info("Updated to %s", version)
            return result
        finally:
            if work_dir.exists():
                self._remove_work_dir(work_dir, result)

    def _rollback(self, result: PipelineResult, error: MergeError) -> PipelineResult:
        backup = result.backup
        if backup is None:
            return self._fail(result, error)
        LOGGER.error("Merge failed, restoring %s: %s", backup.path, error)
        try:
            self.backups.restore(backup, self._code_root, self.backup_rules())
        except (DeployError, OSError) as exc:
            rollback = RollbackError(
                f"Rollback after failed merge ({error}) did not complete: {exc}.",
                backup_path=backup.path,
            )
            rollback.__cause__ = exc
            return self._fail(result, rollback)
        self._enter(result, PipelineState.ROLLED_BACK)
        return self._fail(result, error)

    def _run_post_tasks(self, result: PipelineResult) -> None:
        settings = self.config.update
        for task in settings.post_tasks:
            outcome = self.runner.run(task, cwd=self._code_root, timeout=settings.post_task_timeout)
            if outcome.ok:
                LOGGER.info("Post-update task '%s' completed.", " ".join(task))
                continue
            message = (
                f"Post-update task '{' '.join(task)}' failed (exit {outcome.returncode}): "
                f"{outcome.summary()}"
            )
            LOGGER.warning(message)
            result.warnings.append(message)

    def _prune(self, result: PipelineResult) -> None:
        protected = [result.backup.path] if result.backup else []
        try:
            result.pruned = self.retention.prune(self.backups.root, protected=protected)
        except OSError as exc:
            message = f"Backup retention failed: {exc}"
            LOGGER.warning(message)
            result.warnings.append(message)

    def _remove_work_dir(self, work_dir: Path, result: PipelineResult) -> None:
        try:
            shutil.rmtree(work_dir)
        except FileNotFoundError:
            return
        except OSError as exc:
            message = f"Failed to remove working directory {work_dir}: {exc}"
            LOGGER.warning(message)
            result.warnings.append(message)

    # State bookkeeping ------------------------------------------------
    def _enter(self, result: PipelineResult, state: PipelineState) -> None:
        result.state = state
        result.history.append(state)
        LOGGER.debug("Update pipeline entered %s", state.value)
        if self.on_state is not None:
            self.on_state(state)

    def _fail(self, result: PipelineResult, exc: DeployError) -> PipelineResult:
        result.exception = exc
        LOGGER.error("Update failed during %s: %s", result.state.value, exc)
        self._enter(result, PipelineState.FAILED)
        return result


__all__ = ["PipelineResult", "PipelineState", "UpdatePipeline"]
