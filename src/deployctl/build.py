"""Build deployable packages from the application source tree."""
from __future__ import annotations

import logging
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path

from .archive import ArchiveBuildResult, ArchiveWriter, WalkSource, write_checksum_file
from .config import AppConfig
from .errors import ArchiveError, BuildError, WalkError
from .pathfilter import PathFilter
from .processes import CommandRunner
from .releases import read_current_version
from .walker import WalkEntry, walk

LOGGER = logging.getLogger(__name__)


class PackageBuilder:
    """Assemble production and installable packages.

    Both flavours walk the source tree through the same exclusion machinery
    and are written by :class:`ArchiveWriter`:

    * ``production`` carries the code root and the public root under two
      separate top-level labels, for hosts where the web root is a sibling of
      the application directory.
    * ``installable`` carries the code root at the archive root, ready to be
      unpacked by an installer.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        runner: CommandRunner | None = None,
        writer: ArchiveWriter | None = None,
    ) -> None:
        """Initialise the builder from the resolved *config*."""
        self.config = config
        self.runner = runner or CommandRunner()
        self.writer = writer or ArchiveWriter()

    @property
    def code_root(self) -> Path:
        """Return the application code root being packaged."""
        return self.config.deployment.code_root

    @property
    def public_root(self) -> Path:
        """Return the public web root, defaulting to ``<code_root>/public``."""
        return self.config.deployment.public_root or self.code_root / "public"

    def default_output(self, flavour: str) -> Path:
        """Return ``<output_dir>/<name>-<flavour>-<version>-<stamp>.zip``."""
        version = read_current_version(self.config.deployment.manifest_path)
        stamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        name = self.code_root.name or "app"
        return self.config.build.output_dir / f"{name}-{flavour}-{version}-{stamp}.zip"

    def build_assets(self) -> None:
        """Run the configured front-end build command, if any."""
        command = self.config.build.asset_command
        if not command:
            LOGGER.debug("No asset build command configured; skipping.")
            return
        LOGGER.info("Building assets with %s", " ".join(command))
        result = self.runner.run(command, cwd=self.code_root, timeout=self.config.build.asset_timeout)
        if not result.ok:
            raise BuildError(
                f"Asset build '{' '.join(command)}' failed (exit {result.returncode}): "
                f"{result.summary()}"
            )

    def build_production(
        self,
        output: Path | None = None,
        *,
        skip_assets: bool = False,
    ) -> ArchiveBuildResult:
        """Build the split code/public package."""
        if not skip_assets:
            self.build_assets()
        deployment = self.config.deployment
        exclusions = self.config.exclusions
        target = Path(output) if output else self.default_output("production")
        code_rules = exclusions.filter_for("build_code").extended(
            self._output_rules(target, self.code_root)
        )
        sources: list[WalkSource] = [(_walk(self.code_root, code_rules), deployment.code_label)]
        if self.public_root.is_dir():
            sources.append(
                (_walk(self.public_root, exclusions.filter_for("build_public")), deployment.public_label)
            )
        else:
            LOGGER.warning("Public root %s does not exist; packaging code only.", self.public_root)
        skeleton = [f"{deployment.code_label}/{path}" for path in self.config.build.skeleton_dirs]
        return self._write(target, sources, skeleton)

    def build_installable(self, output: Path | None = None) -> ArchiveBuildResult:
        """Build the single-root package consumed by installers."""
        target = Path(output) if output else self.default_output("installable")
        rules = self.config.exclusions.filter_for("installable").extended(
            self._output_rules(target, self.code_root)
        )
        return self._write(target, [(_walk(self.code_root, rules), "")], self.config.build.skeleton_dirs)

    def _write(
        self,
        target: Path,
        sources: list[WalkSource],
        skeleton: Iterable[str],
    ) -> ArchiveBuildResult:
        try:
            result = self.writer.build(target, sources, extra_directories=skeleton)
            write_checksum_file(result.path, result.checksum)
        except (ArchiveError, WalkError) as exc:
            raise BuildError(f"Packaging {target.name} failed: {exc}") from exc
        except OSError as exc:
            raise BuildError(f"Cannot write checksum for {target}: {exc}") from exc
        for warning in result.warnings:
            LOGGER.warning("Package %s: %s", target.name, warning)
        LOGGER.info(
            "Built %s (%d files, %d directories, %d bytes)",
            result.path,
            result.files,
            result.directories,
            result.size_bytes,
        )
        return result

    @staticmethod
    def _output_rules(target: Path, root: Path) -> list[str]:
        """Exclude the output directory when it lives inside *root*."""
        try:
            relative = target.resolve().parent.relative_to(root.resolve())
        except ValueError:
            return []
        text = relative.as_posix()
        if text in ("", "."):
            raise BuildError(f"Package output {target} must not be placed directly in {root}.")
        return [text]


def _walk(root: Path, rules: PathFilter) -> Iterator[WalkEntry]:
    try:
        return walk(root, rules)
    except WalkError as exc:
        raise BuildError(f"Cannot package {root}: {exc}") from exc


__all__ = ["PackageBuilder"]
