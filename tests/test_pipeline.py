"""Tests for the self-update pipeline."""
from __future__ import annotations

import json
import os
import stat
from collections.abc import Callable, Sequence
from pathlib import Path

import httpx
import pytest

from conftest import (
    API_BASE,
    ASSET_URL,
    PAYLOAD_FILES,
    REPO,
    release_payload,
    release_transport,
    snapshot,
    zip_bytes,
)
from deployctl.backups import list_backups
from deployctl.config import AppConfig
from deployctl.errors import (
    ArchiveCorruptError,
    ArchiveError,
    ConcurrentUpdateError,
    DeployError,
    MergeError,
    NetworkError,
    PayloadStructureError,
    RollbackError,
)
from deployctl.exit_codes import ExitCode
from deployctl.locking import LockManager
from deployctl.pipeline import PipelineState, UpdatePipeline
from deployctl.processes import CommandResult
from deployctl.releases import ReleaseClient, read_current_version

S = PipelineState

FULL_RUN = [
    S.IDLE,
    S.CHECKING_UPDATE,
    S.BACKING_UP,
    S.DOWNLOADING,
    S.EXTRACTING,
    S.LOCATING_ROOT,
    S.MERGING,
    S.RUNNING_POST_TASKS,
    S.CLEANING_UP,
    S.DONE,
]


def _pipeline(
    config: AppConfig,
    transport: httpx.MockTransport | None = None,
    **kwargs: object,
) -> UpdatePipeline:
    client = ReleaseClient(
        REPO,
        api_base=API_BASE,
        client=httpx.Client(transport=transport or release_transport()),
    )
    return UpdatePipeline(config, client=client, **kwargs)  # type: ignore[arg-type]


class RecordingRunner:
    """Stand-in command runner returning canned exit codes."""

    def __init__(self, returncode: int = 0, stderr: str = "") -> None:
        self.returncode = returncode
        self.stderr = stderr
        self.calls: list[tuple[tuple[str, ...], Path | None]] = []

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        self.calls.append((tuple(argv), cwd))
        return CommandResult(tuple(argv), self.returncode, "", self.stderr)


def test_full_update_reaches_done(app_root: Path, make_config: Callable[..., AppConfig]) -> None:
    """A newer release is backed up, merged and recorded."""
    config = make_config()
    seen: list[PipelineState] = []
    pipeline = _pipeline(config, on_state=seen.append)

    result = pipeline.run()

    assert result.exception is None
    assert result.history == FULL_RUN
    assert seen == FULL_RUN[1:]
    assert result.succeeded and result.updated
    assert result.current_version == "2.0.0"
    assert result.target_version == "2.0.0"
    assert read_current_version(config.deployment.manifest_path) == "2.0.0"
    assert (app_root / "app" / "Http" / "Kernel.php").read_text(encoding="utf-8") == "<?php // kernel v2\n"
    assert (app_root / "app" / "Models" / "Payment.php").exists()
    assert (app_root / "routes" / "api.php").exists()
    assert (app_root / "vendor" / "autoload.php").exists()
    assert stat.S_IMODE((app_root / "routes" / "api.php").stat().st_mode) == 0o644
    assert result.merge is not None and len(result.merge.copied) == 8
    assert result.backup is not None and result.backup.path.exists()
    assert list(config.update.work_dir.iterdir()) == []
    assert not LockManager(config.runtime_dir).is_locked()


def test_update_preserves_protected_paths(app_root: Path, make_config: Callable[..., AppConfig]) -> None:
    """Local configuration and user data survive an update byte for byte."""
    env_before = (app_root / ".env").read_bytes()
    upload_before = (app_root / "storage" / "app" / "uploads" / "invoice-1.pdf").read_bytes()

    result = _pipeline(make_config()).run()

    assert result.updated
    assert (app_root / ".env").read_bytes() == env_before
    assert (app_root / "storage" / "app" / "uploads" / "invoice-1.pdf").read_bytes() == upload_before


def test_second_run_is_idle(app_root: Path, make_config: Callable[..., AppConfig]) -> None:
    """Once the release is installed, another run changes nothing."""
    config = make_config()
    assert _pipeline(config).run().updated
    backups_after_first = list_backups(config.backups.root)
    before = snapshot(app_root)

    result = _pipeline(config).run()

    assert result.history == [S.IDLE, S.CHECKING_UPDATE, S.IDLE]
    assert result.succeeded and not result.updated
    assert result.backup is None
    assert list_backups(config.backups.root) == backups_after_first
    assert snapshot(app_root) == before


def test_merge_failure_rolls_back(app_root: Path, make_config: Callable[..., AppConfig]) -> None:
    """A fault half-way through the merge restores the deployment."""
    config = make_config()

    def explode(relative: str, count: int) -> None:
        if count == 4:
            raise RuntimeError("disk vanished")

    pipeline = _pipeline(config, on_merge_file=explode)
    protected = pipeline.backup_rules().rules
    before = snapshot(app_root, exclude=protected)

    result = pipeline.run()

    assert result.state is S.FAILED
    assert result.history[-3:] == [S.MERGING, S.ROLLED_BACK, S.FAILED]
    assert result.rolled_back
    assert isinstance(result.exception, MergeError)
    assert isinstance(result.exception.__cause__, RuntimeError)
    assert snapshot(app_root, exclude=protected) == before
    assert read_current_version(config.deployment.manifest_path) == "1.0.0"
    assert not (app_root / "app" / "Models" / "Payment.php").exists()
    with pytest.raises(MergeError):
        result.raise_for_error()


def test_rollback_restores_shipped_dependencies(
    app_root: Path,
    make_config: Callable[..., AppConfig],
) -> None:
    """Dependencies the payload ships are rolled back even though plain backups skip them."""
    config = make_config()
    payload = {
        **PAYLOAD_FILES,
        "vendor/autoload.php": "<?php // autoload v2\n",
        "vendor/zz/new.php": "<?php // new dependency\n",
    }
    transport = release_transport(package=zip_bytes(payload, wrapper="billing-2.0.0"))

    def explode(relative: str, count: int) -> None:
        if relative == "vendor/zz/new.php":
            raise RuntimeError("disk vanished")

    pipeline = _pipeline(config, transport, on_merge_file=explode)
    assert "vendor" in config.exclusions.backup
    assert not pipeline.backup_rules().excluded("vendor/autoload.php")
    before = snapshot(app_root, exclude=pipeline.backup_rules().rules)

    result = pipeline.run()

    assert result.history[-3:] == [S.MERGING, S.ROLLED_BACK, S.FAILED]
    assert (app_root / "vendor" / "autoload.php").read_text(encoding="utf-8") == "<?php // composer autoload\n"
    assert not (app_root / "vendor" / "zz").exists()
    assert snapshot(app_root, exclude=pipeline.backup_rules().rules) == before


def test_rollback_failure_names_backup(
    app_root: Path,
    make_config: Callable[..., AppConfig],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """When the restore fails the operator is told which backup to use."""
    def explode(relative: str, count: int) -> None:
        raise RuntimeError("boom")

    pipeline = _pipeline(make_config(), on_merge_file=explode)

    def broken_restore(*args: object, **kwargs: object) -> list[str]:
        raise ArchiveError("backup unreadable")

    monkeypatch.setattr(pipeline.backups, "restore", broken_restore)

    result = pipeline.run()

    assert result.state is S.FAILED
    assert S.ROLLED_BACK not in result.history
    assert isinstance(result.exception, RollbackError)
    assert result.backup is not None
    assert str(result.backup.path) in str(result.exception)
    assert result.exception.exit_code == ExitCode.ROLLBACK_FAILED


def test_concurrent_update_is_rejected(app_root: Path, make_config: Callable[..., AppConfig]) -> None:
    """A held lock stops the second invocation before any write."""
    config = make_config()
    before = snapshot(app_root)

    with LockManager(config.runtime_dir).update_lock():
        result = _pipeline(config).run()

    assert result.history == [S.IDLE, S.CHECKING_UPDATE, S.BACKING_UP, S.FAILED]
    assert isinstance(result.exception, ConcurrentUpdateError)
    assert result.backup is None
    assert list_backups(config.backups.root) == []
    assert snapshot(app_root) == before


def test_post_task_failures_are_warnings(app_root: Path, make_config: Callable[..., AppConfig]) -> None:
    """A failing post-update task does not undo a completed merge."""
    config = make_config(update={"post_tasks": ["php artisan migrate --force", "php artisan view:clear"]})
    runner = RecordingRunner(returncode=1, stderr="SQLSTATE[HY000] connection refused")

    result = _pipeline(config, runner=runner).run()

    assert result.state is S.DONE
    assert [argv for argv, _ in runner.calls] == [
        ("php", "artisan", "migrate", "--force"),
        ("php", "artisan", "view:clear"),
    ]
    assert all(cwd == app_root for _, cwd in runner.calls)
    assert len(result.warnings) == 2
    assert "SQLSTATE[HY000]" in result.warnings[0]
    assert read_current_version(config.deployment.manifest_path) == "2.0.0"


def test_network_failure_leaves_deployment_untouched(
    app_root: Path,
    make_config: Callable[..., AppConfig],
) -> None:
    """A feed outage fails at CheckingUpdate with nothing written."""
    config = make_config()
    before = snapshot(app_root)
    transport = httpx.MockTransport(lambda request: httpx.Response(502, text="bad gateway"))

    result = _pipeline(config, transport).run()

    assert result.history == [S.IDLE, S.CHECKING_UPDATE, S.FAILED]
    assert isinstance(result.exception, NetworkError)
    assert result.exception.retryable
    assert snapshot(app_root) == before
    assert list_backups(config.backups.root) == []


def test_unparseable_release_version_fails(app_root: Path, make_config: Callable[..., AppConfig]) -> None:
    """A tag that is not a version cannot be compared."""
    transport = release_transport(release=release_payload(tag="nightly"))

    result = _pipeline(make_config(), transport).run()

    assert result.state is S.FAILED
    assert isinstance(result.exception, DeployError)
    assert "compare" in str(result.exception)


def test_corrupt_package_fails_before_merge(app_root: Path, make_config: Callable[..., AppConfig]) -> None:
    """A download that is not a zip fails at Extracting."""
    config = make_config()
    before = snapshot(app_root)

    result = _pipeline(config, release_transport(package=b"definitely not a zip")).run()

    assert result.history[-2:] == [S.EXTRACTING, S.FAILED]
    assert isinstance(result.exception, ArchiveCorruptError)
    assert snapshot(app_root) == before
    assert list(config.update.work_dir.iterdir()) == []


def test_payload_without_marker_fails(app_root: Path, make_config: Callable[..., AppConfig]) -> None:
    """A package lacking the marker file is rejected at LocatingRoot."""
    files = {name: content for name, content in PAYLOAD_FILES.items() if name != "artisan"}

    result = _pipeline(make_config(), release_transport(package=zip_bytes(files, wrapper="x"))).run()

    assert result.history[-2:] == [S.LOCATING_ROOT, S.FAILED]
    assert isinstance(result.exception, PayloadStructureError)


def test_retention_protects_current_backup(app_root: Path, make_config: Callable[..., AppConfig]) -> None:
    """Old backups are pruned after success but the pre-update one stays."""
    config = make_config(backups={"keep": 0})
    config.backups.root.mkdir(parents=True)
    old = config.backups.root / "backup-20200101-000000.zip"
    old.write_bytes(b"PK")
    os.utime(old, (0, 0))

    result = _pipeline(config).run()

    assert result.updated
    assert result.pruned == [old]
    assert not old.exists()
    assert result.backup is not None and result.backup.path.exists()


def test_install_skips_release_check(app_root: Path, make_config: Callable[..., AppConfig]) -> None:
    """Installing an explicit package never queries the release feed."""
    calls: list[str] = []
    pipeline = _pipeline(make_config(), release_transport(calls=calls))

    result = pipeline.install(ASSET_URL, "v2.0.0")

    assert result.updated
    assert S.CHECKING_UPDATE not in result.history
    assert calls == [ASSET_URL]
    manifest = json.loads((app_root / "composer.json").read_text(encoding="utf-8"))
    assert manifest["version"] == "2.0.0"


def test_internal_directories_are_excluded(tmp_path: Path, make_config: Callable[..., AppConfig]) -> None:
    """Working directories kept inside the deployment are never backed up or merged."""
    config = make_config(
        backups={"root": str(tmp_path / "app" / "storage" / "deploy-backups")},
        update={"work_dir": str(tmp_path / "app" / "storage" / "deploy-work")},
    )
    pipeline = _pipeline(config)

    assert "storage/deploy-backups" in pipeline.backup_rules()
    assert "storage/deploy-work" in pipeline.merge_rules()
    assert "logs" not in pipeline.backup_rules()
