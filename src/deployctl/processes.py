"""External process execution used by asset builds and post-update tasks."""
from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

LOGGER = logging.getLogger(__name__)

NOT_FOUND_RC = 127
TIMEOUT_RC = 124
NOT_EXECUTABLE_RC = 126


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Captured outcome of an external command."""

    argv: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return True when the command exited with status zero."""
        return self.returncode == 0

    def summary(self) -> str:
        """Return the most useful single line of output for error messages."""
        text = (self.stderr or self.stdout or "no output").strip()
        lines = text.splitlines()
        return lines[-1] if lines else "no output"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "argv": list(self.argv),
            "returncode": self.returncode,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


class CommandRunner:
    """Run commands without raising on failure.

    A missing executable yields return code 127, a file without execute
    permission 126 and a timeout 124, mirroring the shell, so callers only
    inspect ``returncode``.
    """

    def __init__(self, *, env: Mapping[str, str] | None = None) -> None:
        """Initialise the runner; *env* entries are added to the inherited environment."""
        self.env = dict(env or {})

    def run(
        self,
        argv: Sequence[str],
        *,
        cwd: Path | None = None,
        timeout: float | None = None,
    ) -> CommandResult:
        """Execute *argv* and capture its output."""
        command = tuple(str(part) for part in argv)
        if not command:
            raise ValueError("Command must not be empty.")
        environment = {**os.environ, **self.env} if self.env else None
        LOGGER.debug("Running %s (cwd=%s)", " ".join(command), cwd)
        try:
            completed = subprocess.run(  # noqa: S603 - argv comes from configuration
                list(command),
                cwd=str(cwd) if cwd is not None else None,
                capture_output=True,
                text=True,
                check=False,
                timeout=timeout,
                env=environment,
            )
        except FileNotFoundError as exc:
            return CommandResult(command, NOT_FOUND_RC, "", f"{command[0]} not found: {exc}")
        except subprocess.TimeoutExpired as exc:
            return CommandResult(
                command,
                TIMEOUT_RC,
                _as_text(exc.stdout),
                f"{command[0]} timed out after {timeout:g}s",
            )
        except PermissionError as exc:
            return CommandResult(command, NOT_EXECUTABLE_RC, "", f"{command[0]} is not executable: {exc}")
        return CommandResult(command, completed.returncode, completed.stdout or "", completed.stderr or "")


def _as_text(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = ["CommandResult", "CommandRunner", "NOT_EXECUTABLE_RC", "NOT_FOUND_RC", "TIMEOUT_RC"]
