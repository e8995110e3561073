"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import io
import json
import os
import zipfile
from collections.abc import Callable, Mapping
from pathlib import Path

import httpx
import pytest

from deployctl.config import AppConfig, load_config

REPO = "acme/billing"
API_BASE = "https://api.github.test"
ASSET_URL = "https://downloads.test/app-package-v2.zip"


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


def write_tree(root: Path, files: Mapping[str, str | bytes]) -> Path:
    """Create *files* (relative path -> content) below *root*."""
    root.mkdir(parents=True, exist_ok=True)
    for relative, content in files.items():
        path = root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            path.write_bytes(content)
        else:
            path.write_text(content, encoding="utf-8")
    return root


def zip_bytes(files: Mapping[str, str | bytes], *, wrapper: str = "") -> bytes:
    """Return a zip archive holding *files*, optionally nested under *wrapper*."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as bundle:
        for relative, content in files.items():
            name = f"{wrapper}/{relative}" if wrapper else relative
            bundle.writestr(name, content)
    return buffer.getvalue()


def snapshot(root: Path, exclude: tuple[str, ...] = ()) -> dict[str, bytes | str]:
    """Return ``{relative_path: content}`` for every node below *root*."""
    result: dict[str, bytes | str] = {}
    for path in sorted(root.rglob("*")):
        relative = path.relative_to(root).as_posix()
        if any(relative == rule or relative.startswith(f"{rule}/") for rule in exclude):
            continue
        if path.is_symlink():
            result[relative] = f"-> {os.readlink(path)}"
        elif path.is_dir():
            result[relative] = "<dir>"
        else:
            result[relative] = path.read_bytes()
    return result


APP_FILES: dict[str, str] = {
    "artisan": "#!/usr/bin/env php\n",
    "composer.json": json.dumps({"name": "acme/billing", "version": "1.0.0"}),
    "app/Http/Kernel.php": "<?php // kernel v1\n",
    "app/Models/Invoice.php": "<?php // invoice v1\n",
    "routes/web.php": "<?php // routes v1\n",
    "public/index.php": "<?php // front controller\n",
    ".env": "APP_KEY=base64:secret\n",
    "storage/app/uploads/invoice-1.pdf": "%PDF-1.4 customer data",
    "storage/logs/laravel.log": "[2024-01-01] local.INFO: boot\n",
    "vendor/autoload.php": "<?php // composer autoload\n",
}

PAYLOAD_FILES: dict[str, str] = {
    "artisan": "#!/usr/bin/env php\n",
    "composer.json": json.dumps({"name": "acme/billing", "version": "2.0.0"}),
    "app/Http/Kernel.php": "<?php // kernel v2\n",
    "app/Models/Invoice.php": "<?php // invoice v2\n",
    "app/Models/Payment.php": "<?php // payment v2\n",
    "routes/web.php": "<?php // routes v2\n",
    "routes/api.php": "<?php // api v2\n",
    "public/index.php": "<?php // front controller v2\n",
    ".env": "APP_KEY=shipped-default\n",
    "storage/app/uploads/invoice-1.pdf": "blank",
}


@pytest.fixture()
def app_root(tmp_path: Path) -> Path:
    """A small live deployment tree."""
    return write_tree(tmp_path / "app", APP_FILES)


@pytest.fixture()
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a factory building an :class:`AppConfig` rooted in ``tmp_path``."""

    def _factory(**overrides: object) -> AppConfig:
        values: dict[str, object] = {
            "state_dir": str(tmp_path / "state"),
            "logs_dir": str(tmp_path / "logs"),
            "runtime_dir": str(tmp_path / "run"),
            "deployment": {"code_root": str(tmp_path / "app")},
            "release": {"repo": REPO, "api_base": API_BASE},
            "update": {"post_tasks": []},
            "build": {"asset_command": None},
        }
        for key, value in overrides.items():
            current = values.get(key)
            if isinstance(current, dict) and isinstance(value, dict):
                values[key] = {**current, **value}
            else:
                values[key] = value
        return load_config(config_file=tmp_path / "absent.yml", env={}, overrides=values)

    return _factory


def release_payload(
    tag: str = "v2.0.0",
    *,
    assets: list[dict[str, object]] | None = None,
    zipball_url: str | None = "https://api.github.test/repos/acme/billing/zipball/v2.0.0",
) -> dict[str, object]:
    """Return a GitHub-style ``releases/latest`` document."""
    if assets is None:
        assets = [
            {"name": "checksums.txt", "browser_download_url": "https://downloads.test/checksums.txt"},
            {"name": "app-package-v2.zip", "browser_download_url": ASSET_URL},
        ]
    return {
        "tag_name": tag,
        "body": "Bug fixes and a new payments module.",
        "published_at": "2024-05-01T12:00:00Z",
        "assets": assets,
        "zipball_url": zipball_url,
    }


def release_transport(
    *,
    release: Mapping[str, object] | None = None,
    package: bytes | None = None,
    calls: list[str] | None = None,
) -> httpx.MockTransport:
    """Serve one release document and one package download."""
    document = dict(release or release_payload())
    body = package if package is not None else zip_bytes(PAYLOAD_FILES, wrapper="billing-2.0.0")

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(str(request.url))
        if request.url.path == f"/repos/{REPO}/releases/latest":
            return httpx.Response(200, json=document)
        if str(request.url) == ASSET_URL:
            return httpx.Response(200, content=body)
        return httpx.Response(404, json={"message": "Not Found"})

    return httpx.MockTransport(handler)
