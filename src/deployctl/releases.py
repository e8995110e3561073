"""Release feed client: latest-release lookup, asset resolution and download."""
from __future__ import annotations

import json
import logging
import os
import tempfile
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx
from packaging.version import InvalidVersion, Version

from . import __version__
from .errors import DownloadError, NetworkError, NotFoundError, RequestTimeoutError

LOGGER = logging.getLogger(__name__)

DEFAULT_API_BASE = "https://api.github.com"
DEFAULT_VERSION = "1.0.0"
_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True, slots=True)
class ReleaseDescriptor:
    """The parts of a published release the update pipeline needs."""

    version: str
    asset_url: str
    published_at: str
    notes: str
    tag: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "version": self.version,
            "tag": self.tag,
            "asset_url": self.asset_url,
            "published_at": self.published_at,
            "notes": self.notes,
        }


def parse_version(value: str) -> Version:
    """Parse *value* as a semantic version, tolerating a leading ``v``."""
    text = str(value).strip()
    if text[:1] in ("v", "V"):
        text = text[1:]
    try:
        return Version(text)
    except InvalidVersion as exc:
        raise ValueError(f"Not a valid version: {value!r}") from exc


def normalize_version(value: str) -> str:
    """Return *value* without surrounding whitespace or a leading ``v``."""
    text = str(value).strip()
    return text[1:] if text[:1] in ("v", "V") else text


def compare(current: str, latest: str) -> bool:
    """Return True when *latest* is strictly newer than *current*.

    Ordering is semantic, so ``1.10.0`` is newer than ``1.9.0`` and ``v10``
    is newer than ``v2``.
    """
    return parse_version(latest) > parse_version(current)


def read_current_version(manifest_path: Path) -> str:
    """Return the ``version`` field of the JSON manifest, or ``1.0.0``."""
    try:
        payload = json.loads(Path(manifest_path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        return DEFAULT_VERSION
    except (OSError, json.JSONDecodeError) as exc:
        LOGGER.warning("Cannot read version manifest %s: %s", manifest_path, exc)
        return DEFAULT_VERSION
    if not isinstance(payload, Mapping):
        return DEFAULT_VERSION
    version = payload.get("version")
    if isinstance(version, str) and version.strip():
        return version.strip()
    return DEFAULT_VERSION


def write_current_version(manifest_path: Path, version: str) -> None:
    """Record *version* in the manifest, preserving its other fields."""
    manifest_path = Path(manifest_path)
    payload: dict[str, Any] = {}
    if manifest_path.exists():
        try:
            loaded = json.loads(manifest_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            loaded = {}
        if isinstance(loaded, Mapping):
            payload = dict(loaded)
    payload["version"] = normalize_version(version)

    manifest_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(
        dir=str(manifest_path.parent),
        prefix=f".{manifest_path.name}.",
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=4)
            handle.write("\n")
        os.replace(tmp_path, manifest_path)
    finally:
        tmp_path.unlink(missing_ok=True)


class ReleaseClient:
    """Query a GitHub-style release feed.

    Metadata requests use the short *metadata_timeout*; payload downloads use
    the long *download_timeout*. Timeouts surface as
    :class:`RequestTimeoutError`, other transport failures as
    :class:`NetworkError`, so callers can decide whether to retry.
    """

    def __init__(
        self,
        repo: str,
        *,
        api_base: str = DEFAULT_API_BASE,
        token: str | None = None,
        metadata_timeout: float = 10.0,
        download_timeout: float = 120.0,
        asset_marker: str = "package",
        asset_extension: str = ".zip",
        client: httpx.Client | None = None,
    ) -> None:
        """Initialise the client; *client* lets callers inject a transport."""
        self.repo = repo
        self.api_base = api_base.rstrip("/")
        self.token = token
        self.metadata_timeout = metadata_timeout
        self.download_timeout = download_timeout
        self.asset_marker = asset_marker
        self.asset_extension = asset_extension
        self._client = client

    # Public API -----------------------------------------------------
    def fetch_latest(self, repo_id: str | None = None) -> ReleaseDescriptor:
        """Return the latest published release for *repo_id* (default: configured repo)."""
        repo = (repo_id or self.repo).strip().strip("/")
        if not repo:
            raise NotFoundError("No release repository configured.")
        url = f"{self.api_base}/repos/{repo}/releases/latest"

        with self._session() as client:
            try:
                response = client.get(url, headers=self._headers(), timeout=self.metadata_timeout)
            except httpx.TimeoutException as exc:
                raise RequestTimeoutError(
                    f"Release feed did not answer within {self.metadata_timeout:g}s: {url}"
                ) from exc
            except httpx.HTTPError as exc:
                raise NetworkError(f"Release feed request failed: {exc}") from exc

        if response.status_code == 404:
            raise NotFoundError(f"No published release found for {repo}.")
        if not response.is_success:
            raise NetworkError(f"Release feed returned HTTP {response.status_code} for {url}.")
        try:
            data = response.json()
        except ValueError as exc:
            raise NetworkError(f"Release feed returned invalid JSON: {exc}") from exc
        if not isinstance(data, Mapping) or not str(data.get("tag_name") or "").strip():
            raise NetworkError("Release feed payload is missing 'tag_name'.")

        tag = str(data["tag_name"]).strip()
        return ReleaseDescriptor(
            version=normalize_version(tag),
            tag=tag,
            asset_url=self.resolve_asset_url(data),
            published_at=str(data.get("published_at") or ""),
            notes=str(data.get("body") or ""),
        )

    def resolve_asset_url(self, release: Mapping[str, Any]) -> str:
        """Select the packaged asset, falling back to the source archive URL."""
        assets = release.get("assets") or []
        if isinstance(assets, list):
            asset = self._matching_asset(assets)
            if asset is not None and asset.get("browser_download_url"):
                return str(asset["browser_download_url"])
        fallback = release.get("zipball_url")
        if fallback:
            return str(fallback)
        raise NotFoundError("Release has neither a package asset nor a source archive URL.")

    def select_asset_name(self, assets: list[Mapping[str, Any]]) -> str | None:
        """Return the name of the asset :meth:`resolve_asset_url` would pick."""
        asset = self._matching_asset(assets)
        return None if asset is None else str(asset.get("name"))

    def download(self, url: str, destination: Path) -> Path:
        """Stream *url* into *destination* atomically and return the path."""
        destination = Path(destination)
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(destination.parent),
                prefix=f".{destination.name}.",
                suffix=".part",
            )
        except OSError as exc:
            raise DownloadError(f"Cannot prepare download directory: {exc}") from exc
        tmp_path = Path(tmp_name)
        written = 0
        try:
            with os.fdopen(tmp_fd, "wb") as handle, self._session() as client:
                with client.stream(
                    "GET",
                    url,
                    headers=self._headers(accept="application/octet-stream"),
                    timeout=self.download_timeout,
                    follow_redirects=True,
                ) as response:
                    if not response.is_success:
                        raise DownloadError(
                            f"Download of {url} failed with HTTP {response.status_code}."
                        )
                    for chunk in response.iter_bytes(_CHUNK_SIZE):
                        handle.write(chunk)
                        written += len(chunk)
            if written == 0:
                raise DownloadError(f"Download of {url} returned an empty payload.")
            os.replace(tmp_path, destination)
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(
                f"Download did not complete within {self.download_timeout:g}s: {url}"
            ) from exc
        except httpx.HTTPError as exc:
            raise DownloadError(f"Download of {url} failed: {exc}") from exc
        except OSError as exc:
            raise DownloadError(f"Cannot write download to {destination}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        LOGGER.info("Downloaded %s (%d bytes) to %s", url, written, destination)
        return destination

    # Internal helpers -----------------------------------------------
    def _matching_asset(self, assets: list[Any]) -> Mapping[str, Any] | None:
        for asset in assets:
            if not isinstance(asset, Mapping):
                continue
            name = str(asset.get("name") or "")
            if self.asset_marker in name and name.endswith(self.asset_extension):
                return asset
        return None

    def _headers(self, *, accept: str = "application/vnd.github+json") -> dict[str, str]:
        headers = {"Accept": accept, "User-Agent": f"deployctl/{__version__}"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    @contextmanager
    def _session(self) -> Iterator[httpx.Client]:
        if self._client is not None:
            yield self._client
            return
        with httpx.Client() as client:
            yield client


__all__ = [
    "DEFAULT_VERSION",
    "ReleaseClient",
    "ReleaseDescriptor",
    "compare",
    "normalize_version",
    "parse_version",
    "read_current_version",
    "write_current_version",
]
