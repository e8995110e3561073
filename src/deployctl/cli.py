"""Typer-powered command line interface for ``deployctl``.

Every command runs inside a :class:`~deployctl.logging.StructuredLogger`
operation so ``operations.jsonl`` records what was attempted and how it
ended. Failures terminate with the exit code attached to the error class
(see :mod:`deployctl.exit_codes`).
"""
from __future__ import annotations

import json
import textwrap
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .backups import BackupManager, BackupRegistryError, BackupRetention, BackupsRegistry
from .build import PackageBuilder
from .config import AppConfig, load_config
from .errors import ConfigError, DeployError, RollbackError
from .exit_codes import ExitCode
from .locking import LockManager
from .logging import OperationScope, StructuredLogger
from .pipeline import PipelineState, UpdatePipeline
from .service import OperationResult, UpdateService

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config",
    "--config-file",
    dir_okay=False,
    help="Override the path to deployctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit the result as JSON.",
)

OUTPUT_OPTION = typer.Option(
    None,
    "--output",
    "-o",
    dir_okay=False,
    help="Write the package to this path instead of the configured output directory.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Package, back up and self-update an application deployment.

        Updates are installed from the configured release feed. A verified
        backup is taken before any file is replaced and restored automatically
        when the merge fails.
        """
    ).strip(),
)

build_app = typer.Typer(help="Build deployable packages.")
backups_app = typer.Typer(help="Create, list and prune deployment backups.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(build_app, name="build")
app.add_typer(backups_app, name="backup")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger
    locks: LockManager
    backups_registry: BackupsRegistry
    backups: BackupManager
    pipeline: UpdatePipeline
    service: UpdateService
    builder: PackageBuilder


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    config = load_config(config_file=config_file)
    logger = StructuredLogger(config.logs_dir)
    locks = LockManager(config.runtime_dir)
    registry = BackupsRegistry(config.backups.root, config.backups.index)
    backups = BackupManager(registry, permissions=config.update.permissions)
    pipeline = UpdatePipeline(
        config,
        backups=backups,
        retention=BackupRetention(config.backups.keep, registry=registry),
        locks=locks,
    )
    runtime = RuntimeContext(
        config=config,
        logger=logger,
        locks=locks,
        backups_registry=registry,
        backups=backups,
        pipeline=pipeline,
        service=UpdateService(config, pipeline=pipeline),
        builder=PackageBuilder(config),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the deployctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    try:
        runtime = _ensure_runtime(ctx, config_file)
    except ConfigError as exc:
        console.print(f"[red]Configuration error: {exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    if version:
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"deployctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.FAILURE),
    context: dict[str, object] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=[message], rc=rc, context=context)
    raise typer.Exit(code=rc)


def _exit_code_for(result: OperationResult) -> int:
    error = result.error
    if error is None:
        return int(ExitCode.FAILURE)
    if not isinstance(error, RollbackError) and result.data.get("rolled_back"):
        return int(ExitCode.ROLLED_BACK)
    return int(error.exit_code)


def _emit_result(op: OperationScope, result: OperationResult, *, json_output: bool) -> None:
    """Render a service result and record it on *op*, exiting on failure."""
    if json_output:
        console.print_json(data=result.to_dict())
    if not result.success:
        rc = _exit_code_for(result)
        if not json_output:
            console.print(f"[red]{result.message}[/red]")
        op.error(result.message, errors=[result.message], rc=rc, context=result.data)
        raise typer.Exit(code=rc)

    warnings = [str(item) for item in result.data.get("warnings", []) or []]
    if not json_output:
        console.print(f"[green]{result.message}[/green]")
        for warning in warnings:
            console.print(f"[yellow]warning:[/yellow] {warning}")
    if warnings:
        op.warning(result.message, warnings=warnings, changed=1, context=result.data)
    else:
        changed = 1 if result.data.get("state") == PipelineState.DONE.value else 0
        op.success(result.message, changed=changed, context=result.data)


@app.command()
def check(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Report whether a newer release is available."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "check",
        args={"json": json_output},
        target={"kind": "release", "repo": runtime.config.release.repo},
    ) as op:
        result = runtime.service.check_for_updates()
        _emit_result(op, result, json_output=json_output)


@app.command()
def update(
    ctx: typer.Context,
    url: str | None = typer.Option(
        None,
        "--url",
        help="Install this package URL instead of the latest release (requires --version).",
    ),
    version: str | None = typer.Option(
        None,
        "--version",
        help="Version recorded for the package given with --url.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Back up the deployment and install the latest (or given) release."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "update",
        args={"url": url, "version": version, "json": json_output},
        target={"kind": "deployment", "path": runtime.config.deployment.code_root},
    ) as op:
        if bool(url) != bool(version):
            _command_error(op, "--url and --version must be given together.", rc=int(ExitCode.VALIDATION))

        def _on_state(state: PipelineState) -> None:
            op.add_step(f"pipeline.{state.value}")
            if not json_output and state not in (PipelineState.IDLE, PipelineState.FAILED):
                console.print(f"[dim]{state.value}…[/dim]")

        runtime.pipeline.on_state = _on_state
        try:
            result = runtime.service.perform_update(url, version)
        finally:
            runtime.pipeline.on_state = None
        lock_wait = result.data.get("lock_wait_ms")
        if isinstance(lock_wait, int):
            op.set_lock_wait_ms(lock_wait)
        _emit_result(op, result, json_output=json_output)


@app.command()
def restore(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Restore the most recent backup over the deployment."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "restore",
        args={"json": json_output},
        target={"kind": "deployment", "path": runtime.config.deployment.code_root},
    ) as op:
        result = runtime.service.restore_latest_backup()
        _emit_result(op, result, json_output=json_output)


@build_app.command("production")
def build_production(
    ctx: typer.Context,
    output: Path | None = OUTPUT_OPTION,
    skip_assets: bool = typer.Option(
        False,
        "--skip-assets",
        help="Do not run the configured asset build command first.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Build the split code/public production package."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "build production",
        args={"output": output, "skip_assets": skip_assets, "json": json_output},
        target={"kind": "package", "flavour": "production"},
    ) as op:
        try:
            result = runtime.builder.build_production(output, skip_assets=skip_assets)
        except DeployError as exc:
            _command_error(op, f"Build failed: {exc}", rc=int(exc.exit_code))
        _report_package(op, result.to_dict(), result.warnings, json_output=json_output)


@build_app.command("installable")
def build_installable(
    ctx: typer.Context,
    output: Path | None = OUTPUT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Build the single-root installable package."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "build installable",
        args={"output": output, "json": json_output},
        target={"kind": "package", "flavour": "installable"},
    ) as op:
        try:
            result = runtime.builder.build_installable(output)
        except DeployError as exc:
            _command_error(op, f"Build failed: {exc}", rc=int(exc.exit_code))
        _report_package(op, result.to_dict(), result.warnings, json_output=json_output)


def _report_package(
    op: OperationScope,
    data: dict[str, object],
    warnings: list[str],
    *,
    json_output: bool,
) -> None:
    message = f"Package written to {data['path']}."
    if json_output:
        console.print_json(data=data)
    else:
        console.print(f"[green]{message}[/green]")
        console.print(
            f"  files: {data['files']}  directories: {data['directories']}  "
            f"size: {data['size_bytes']} bytes"
        )
        console.print(f"  sha256: {data['checksum']}")
        for warning in warnings:
            console.print(f"[yellow]warning:[/yellow] {warning}")
    if warnings:
        op.warning("Package built with skipped files.", warnings=warnings, changed=1, context=data)
    else:
        op.success(message, changed=1, context=data)


@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    label: str = typer.Option(
        "manual",
        "--label",
        "-l",
        help="Free-form label stored with the backup.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Take a backup of the deployment now."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup create",
        args={"label": label, "json": json_output},
        target={"kind": "backup", "path": runtime.config.deployment.code_root},
    ) as op:
        try:
            with runtime.locks.update_lock("backup") as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                record = runtime.backups.create(
                    runtime.config.deployment.code_root,
                    runtime.pipeline.backup_rules(),
                    label=label,
                )
        except DeployError as exc:
            _command_error(op, f"Backup failed: {exc}", rc=int(exc.exit_code))

        data = record.to_dict()
        if json_output:
            console.print_json(data=data)
        else:
            console.print(f"[green]Backup {record.id} written to {record.path}.[/green]")
        op.success("Backup created.", changed=1, backups=[record.id], context=data)


@backups_app.command("list")
def backup_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List known backups from the index."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"json": json_output},
        target={"kind": "backup", "scope": "registry"},
    ) as op:
        try:
            entries = runtime.backups_registry.list_entries()
        except BackupRegistryError as exc:
            _command_error(op, f"Failed to read backup index: {exc}", rc=int(exc.exit_code))

        entries.sort(key=lambda item: str(item.get("created_at", "")), reverse=True)

        if json_output:
            console.print_json(data={"backups": entries})
            op.success("Reported backup list (JSON).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("ID", style="bold")
        table.add_column("Created At")
        table.add_column("Label")
        table.add_column("Files", justify="right")
        table.add_column("Status")

        if not entries:
            table.add_row("(none)", "", "", "", "")
        else:
            for entry in entries:
                table.add_row(
                    str(entry.get("id", "")),
                    str(entry.get("created_at", "")),
                    str(entry.get("label", "")),
                    str(entry.get("files", "")),
                    str(entry.get("status", "")),
                )

        console.print(table)
        op.success("Reported backup list.", changed=0)


@backups_app.command("prune")
def backup_prune(
    ctx: typer.Context,
    keep: int | None = typer.Option(
        None,
        "--keep",
        "-k",
        help="Retain the most recent N backups (defaults to backups.keep).",
    ),
    dry_run: bool = typer.Option(
        False,
        "--dry-run",
        help="Preview the prune actions without deleting archives.",
    ),
    json_output: bool = JSON_OPTION,
) -> None:
    """Remove all but the most recent backups."""
    runtime = _get_runtime(ctx)
    retain = runtime.config.backups.keep if keep is None else keep
    with runtime.logger.operation(
        "backup prune",
        args={"keep": retain, "dry_run": dry_run, "json": json_output},
        target={"kind": "backup", "scope": "prune"},
    ) as op:
        if retain < 0:
            _command_error(op, "--keep must be zero or a positive integer.", rc=int(ExitCode.VALIDATION))

        retention = BackupRetention(retain, registry=runtime.backups_registry)
        root = runtime.backups.root
        if dry_run:
            paths = [record.path for record in retention.candidates(root)]
        else:
            try:
                with runtime.locks.update_lock("backup prune") as handle:
                    op.set_lock_wait_ms(handle.wait_ms)
                    paths = retention.prune(root)
            except DeployError as exc:
                _command_error(op, f"Prune failed: {exc}", rc=int(exc.exit_code))

        data = {"keep": retain, "dry_run": dry_run, "removed": [str(path) for path in paths]}
        if json_output:
            console.print_json(data=data)
        elif not paths:
            console.print("No backups to prune.")
        else:
            verb = "Would remove" if dry_run else "Removed"
            for path in paths:
                console.print(f"{verb} {path}")
        op.success(
            f"{'Planned' if dry_run else 'Pruned'} {len(paths)} backup(s).",
            changed=0 if dry_run else len(paths),
            context=data,
        )


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:  # pragma: no cover - thin wrapper for console_scripts
    app()


__all__ = ["app", "main"]
