"""Configuration loader for deployctl.

Values are resolved from four layers, later layers winning:

1. Built-in defaults.
2. ``/etc/deployctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``DEPLOYCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DEPLOYCTL_RELEASE__REPO=acme/billing
    export DEPLOYCTL_BACKUPS__KEEP=5

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The resolved configuration is exposed as frozen
dataclasses and handed explicitly to every component; nothing is cached at
module level.
"""
from __future__ import annotations

import os
import shlex
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load deployctl configuration. Install with "
        "`pip install deployctl` or ensure PyYAML>=6.0 is available."
    ) from exc

from .errors import ConfigError
from .merge import DEFAULT_LOCATE_DEPTH, PermissionMap
from .pathfilter import PathFilter, normalize_relative

ENV_PREFIX = "DEPLOYCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

EXCLUSION_SETS = ("build_code", "build_public", "installable", "backup", "merge")


@dataclass(frozen=True)
class DeploymentConfig:
    """Layout of the live deployment."""

    code_root: Path
    public_root: Path | None = None
    manifest: str = "composer.json"
    markers: tuple[str, ...] = ("artisan",)
    code_label: str = "laravel"
    public_label: str = "public_html"

    @property
    def manifest_path(self) -> Path:
        """Return the absolute path of the version manifest."""
        return self.code_root / self.manifest

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "code_root": str(self.code_root),
            "public_root": str(self.public_root) if self.public_root else None,
            "manifest": self.manifest,
            "markers": list(self.markers),
            "code_label": self.code_label,
            "public_label": self.public_label,
        }


@dataclass(frozen=True)
class ExclusionConfig:
    """Exclusion rule sets, one per operation."""

    build_code: tuple[str, ...]
    build_public: tuple[str, ...]
    installable: tuple[str, ...]
    backup: tuple[str, ...]
    merge: tuple[str, ...]

    def filter_for(self, operation: str) -> PathFilter:
        """Return the :class:`PathFilter` for *operation*."""
        if operation not in EXCLUSION_SETS:
            raise ConfigError(f"Unknown exclusion set '{operation}'.")
        return PathFilter(getattr(self, operation))

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {name: list(getattr(self, name)) for name in EXCLUSION_SETS}


@dataclass(frozen=True)
class ReleaseConfig:
    """Release feed settings."""

    repo: str = ""
    api_base: str = "https://api.github.com"
    token: str | None = None
    asset_marker: str = "package"
    asset_extension: str = ".zip"
    metadata_timeout: float = 10.0
    download_timeout: float = 120.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (the token is masked)."""
        return {
            "repo": self.repo,
            "api_base": self.api_base,
            "token": "***" if self.token else None,
            "asset_marker": self.asset_marker,
            "asset_extension": self.asset_extension,
            "metadata_timeout": self.metadata_timeout,
            "download_timeout": self.download_timeout,
        }


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and retention defaults."""

    root: Path
    index: Path
    keep: int = 3

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "index": str(self.index), "keep": self.keep}


@dataclass(frozen=True)
class UpdateConfig:
    """Self-update pipeline settings."""

    work_dir: Path
    post_tasks: tuple[tuple[str, ...], ...] = ()
    post_task_timeout: float = 300.0
    locate_depth: int = DEFAULT_LOCATE_DEPTH
    permissions: PermissionMap = PermissionMap()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "work_dir": str(self.work_dir),
            "post_tasks": [shlex.join(task) for task in self.post_tasks],
            "post_task_timeout": self.post_task_timeout,
            "locate_depth": self.locate_depth,
            "permissions": {
                "directory": f"{self.permissions.directory:04o}",
                "file": f"{self.permissions.file:04o}",
            },
        }


@dataclass(frozen=True)
class BuildConfig:
    """Package build settings."""

    output_dir: Path
    asset_command: tuple[str, ...] | None = ("npm", "run", "build")
    asset_timeout: float = 600.0
    skeleton_dirs: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "output_dir": str(self.output_dir),
            "asset_command": shlex.join(self.asset_command) if self.asset_command else None,
            "asset_timeout": self.asset_timeout,
            "skeleton_dirs": list(self.skeleton_dirs),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for deployctl."""

    config_file: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    deployment: DeploymentConfig
    exclusions: ExclusionConfig
    release: ReleaseConfig
    backups: BackupConfig
    update: UpdateConfig
    build: BuildConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "deployment": self.deployment.to_dict(),
            "exclusions": self.exclusions.to_dict(),
            "release": self.release.to_dict(),
            "backups": self.backups.to_dict(),
            "update": self.update.to_dict(),
            "build": self.build.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/deployctl/config.yml",
    "state_dir": "/var/lib/deployctl",
    "logs_dir": "/var/log/deployctl",
    "runtime_dir": "/run/deployctl",
    "deployment": {
        "code_root": "/srv/app",
        "public_root": None,
        "manifest": "composer.json",
        "markers": ["artisan"],
        "code_label": "laravel",
        "public_label": "public_html",
    },
    "exclusions": {
        "build_code": [
            "public",
            "node_modules",
            ".git",
            ".env",
            ".env.example",
            "dist",
            "storage/logs",
            "storage/framework/cache",
            "storage/framework/sessions",
            "storage/framework/views",
            "tests",
            "phpunit.xml",
            "vite.config.js",
            "package.json",
            "package-lock.json",
            ".gitignore",
            ".editorconfig",
            ".styleci.yml",
            "README.md",
        ],
        "build_public": ["hot"],
        "installable": [
            ".git",
            "node_modules",
            "tests",
            "storage/logs",
            "dist",
            ".env",
            "package-lock.json",
            "composer.lock",
            "BUILD.md",
            "README.md",
        ],
        "backup": [
            "node_modules",
            "vendor",
            "storage/logs",
            "storage/app/updates",
            "storage/app/backups",
        ],
        "merge": [
            "storage/app",
            "storage/logs",
            ".env",
            "composer.lock",
            "package-lock.json",
        ],
    },
    "release": {
        "repo": "",
        "api_base": "https://api.github.com",
        "token": None,
        "asset_marker": "package",
        "asset_extension": ".zip",
        "metadata_timeout": 10.0,
        "download_timeout": 120.0,
    },
    "backups": {
        "root": None,  # derived from state_dir when absent
        "index": None,
        "keep": 3,
    },
    "update": {
        "work_dir": None,  # derived from state_dir when absent
        "post_tasks": [
            "php artisan config:clear",
            "php artisan route:clear",
            "php artisan view:clear",
            "php artisan migrate --force",
        ],
        "post_task_timeout": 300.0,
        "locate_depth": DEFAULT_LOCATE_DEPTH,
        "permissions": {"directory": "0755", "file": "0644"},
    },
    "build": {
        "output_dir": "dist",
        "asset_command": "npm run build",
        "asset_timeout": 600.0,
        "skeleton_dirs": [
            "storage/app/public",
            "storage/framework/cache/data",
            "storage/framework/sessions",
            "storage/framework/views",
            "storage/logs",
            "bootstrap/cache",
        ],
    },
}

SECTION_KEYS: dict[str, set[str]] = {
    section: set(cast(Mapping[str, object], value).keys())
    for section, value in DEFAULTS.items()
    if isinstance(value, Mapping)
}
ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(str(merged["config_file"]), config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    permissions = _as_dict(_as_dict(raw.get("update"), "update").get("permissions"), "permissions")
    unknown_perms = set(permissions.keys()) - {"directory", "file"}
    if unknown_perms:
        joined = ", ".join(sorted(unknown_perms))
        raise ConfigError(f"Unknown update.permissions keys: {joined}.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _to_path(raw.get("state_dir"))

    deployment_map = _as_dict(raw.get("deployment"), "deployment")
    code_root = _to_path(deployment_map.get("code_root"))
    public_value = deployment_map.get("public_root")
    markers = _string_tuple(deployment_map.get("markers"), "deployment.markers")
    if not markers:
        raise ConfigError("deployment.markers must list at least one marker file.")
    deployment = DeploymentConfig(
        code_root=code_root,
        public_root=_to_path(public_value) if public_value else None,
        manifest=str(deployment_map.get("manifest") or "composer.json"),
        markers=markers,
        code_label=str(deployment_map.get("code_label", "laravel")),
        public_label=str(deployment_map.get("public_label", "public_html")),
    )

    exclusions_map = _as_dict(raw.get("exclusions"), "exclusions")
    exclusions = ExclusionConfig(
        **{
            name: _rule_tuple(exclusions_map.get(name), f"exclusions.{name}")
            for name in EXCLUSION_SETS
        }
    )

    release_map = _as_dict(raw.get("release"), "release")
    token_value = release_map.get("token")
    release = ReleaseConfig(
        repo=str(release_map.get("repo") or ""),
        api_base=str(release_map.get("api_base") or "https://api.github.com"),
        token=str(token_value) if token_value else None,
        asset_marker=str(release_map.get("asset_marker") or "package"),
        asset_extension=str(release_map.get("asset_extension") or ".zip"),
        metadata_timeout=_expect_positive_float(
            release_map.get("metadata_timeout"), "release.metadata_timeout", default=10.0
        ),
        download_timeout=_expect_positive_float(
            release_map.get("download_timeout"), "release.download_timeout", default=120.0
        ),
    )

    backups_map = _as_dict(raw.get("backups"), "backups")
    backups_root_value = backups_map.get("root")
    backups_root = _to_path(backups_root_value) if backups_root_value else state_dir / "backups"
    index_value = backups_map.get("index")
    keep = _expect_int(backups_map.get("keep"), "backups.keep", default=3)
    if keep < 0:
        raise ConfigError("backups.keep must be zero or a positive integer.")
    backups = BackupConfig(
        root=backups_root,
        index=_to_path(index_value) if index_value else backups_root / "backups.json",
        keep=keep,
    )

    update_map = _as_dict(raw.get("update"), "update")
    work_dir_value = update_map.get("work_dir")
    permissions_map = _as_dict(update_map.get("permissions"), "update.permissions")
    locate_depth = _expect_int(update_map.get("locate_depth"), "update.locate_depth", default=2)
    if locate_depth < 0:
        raise ConfigError("update.locate_depth must be zero or a positive integer.")
    update = UpdateConfig(
        work_dir=_to_path(work_dir_value) if work_dir_value else state_dir / "updates",
        post_tasks=tuple(
            _command(item, f"update.post_tasks[{index}]")
            for index, item in enumerate(_as_sequence(update_map.get("post_tasks") or [], "update.post_tasks"))
        ),
        post_task_timeout=_expect_positive_float(
            update_map.get("post_task_timeout"), "update.post_task_timeout", default=300.0
        ),
        locate_depth=locate_depth,
        permissions=PermissionMap(
            directory=_parse_mode(permissions_map.get("directory", "0755"), "update.permissions.directory"),
            file=_parse_mode(permissions_map.get("file", "0644"), "update.permissions.file"),
        ),
    )

    build_map = _as_dict(raw.get("build"), "build")
    output_value = _to_path(build_map.get("output_dir") or "dist")
    asset_value = build_map.get("asset_command")
    build = BuildConfig(
        output_dir=output_value if output_value.is_absolute() else code_root / output_value,
        asset_command=_command(asset_value, "build.asset_command") if asset_value else None,
        asset_timeout=_expect_positive_float(
            build_map.get("asset_timeout"), "build.asset_timeout", default=600.0
        ),
        skeleton_dirs=_rule_tuple(build_map.get("skeleton_dirs"), "build.skeleton_dirs"),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        state_dir=state_dir,
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        deployment=deployment,
        exclusions=exclusions,
        release=release,
        backups=backups,
        update=update,
        build=build,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        path_segments = [segment.lower() for segment in key[len(ENV_PREFIX) :].split("__") if segment]
        if path_segments:
            _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            child: MutableMapping[str, object] = {}
            current[segment] = child
            current = child
        elif isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
        else:
            raise ConfigError(
                f"Environment overrides conflict with existing scalar value at {'.'.join(path)}"
            )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
        else:
            target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _string_tuple(value: object, label: str) -> tuple[str, ...]:
    if value is None:
        return ()
    items: list[str] = []
    for item in _as_sequence(value, label):
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{label} entries must be non-empty strings.")
        items.append(item.strip())
    return tuple(items)


def _rule_tuple(value: object, label: str) -> tuple[str, ...]:
    rules: list[str] = []
    for item in _string_tuple(value, label):
        try:
            rule = normalize_relative(item)
        except ValueError as exc:
            raise ConfigError(f"{label}: {exc}") from exc
        if rule:
            rules.append(rule)
    return tuple(rules)


def _command(value: object, label: str) -> tuple[str, ...]:
    if isinstance(value, str):
        try:
            argv = shlex.split(value)
        except ValueError as exc:
            raise ConfigError(f"{label} is not a valid command line: {exc}") from exc
    else:
        argv = list(_string_tuple(value, label))
    if not argv:
        raise ConfigError(f"{label} must not be empty.")
    return tuple(argv)


def _parse_mode(value: object, label: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"{label} must be an octal integer string. Got boolean {value!r}.")
    if isinstance(value, int):
        mode = value
    elif isinstance(value, str):
        text = value.strip().lower().removeprefix("0o")
        try:
            mode = int(text, 8)
        except ValueError as exc:
            raise ConfigError(f"{label} must be an octal integer string.") from exc
    else:
        raise ConfigError(f"{label} must be an octal integer or string.")
    if mode < 0 or mode > 0o777:
        raise ConfigError(f"{label} must be between 0000 and 0777 inclusive.")
    return mode


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, (str, Path)):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "BuildConfig",
    "ConfigError",
    "DeploymentConfig",
    "EXCLUSION_SETS",
    "ExclusionConfig",
    "ReleaseConfig",
    "UpdateConfig",
    "load_config",
]
