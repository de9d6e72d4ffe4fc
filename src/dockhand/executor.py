"""External process execution for dockhand.

All container-runtime, git and archive invocations go through
:class:`CommandRunner`. The runner never retries; callers decide what a failed
:class:`ProcessResult` means for their operation.
"""
from __future__ import annotations

import logging
import shlex
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

NOT_FOUND_RC = 127
TIMEOUT_RC = 124


class CommandError(RuntimeError):
    """Base error for a failed external command; carries the captured result."""

    def __init__(self, message: str, result: ProcessResult | None = None) -> None:
        super().__init__(message)
        self.result = result


@dataclass(frozen=True, slots=True)
class ProcessResult:
    """Outcome of a single external process invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    marker_seen: bool = False

    @property
    def success(self) -> bool:
        """Return ``True`` when the process exited cleanly without a failure marker."""
        return self.returncode == 0 and not self.timed_out and not self.marker_seen

    @property
    def message(self) -> str:
        """Return the most useful captured output for error reporting."""
        if self.timed_out:
            return f"{self.command} timed out"
        return self.stderr.strip() or self.stdout.strip() or f"exit status {self.returncode}"

    @property
    def command(self) -> str:
        """Return the shell-quoted command line."""
        return shlex.join(self.args)


class CommandRunner:
    """Run commands with captured output and an optional timeout."""

    def __init__(
        self,
        *,
        timeout: float | None = None,
        failure_marker: str | None = None,
    ) -> None:
        self.timeout = timeout
        self.failure_marker = failure_marker or None

    def run(
        self,
        args: Sequence[str | Path],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        """Execute *args* and return a :class:`ProcessResult`; never raises on failure."""
        argv = tuple(str(part) for part in args)
        limit = self.timeout if timeout is None else timeout
        logger.debug("Running %s", shlex.join(argv))
        try:
            completed = subprocess.run(  # noqa: S603, S607
                list(argv),
                capture_output=True,
                text=True,
                check=False,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
                timeout=limit,
            )
        except FileNotFoundError as exc:
            logger.error("Executable not found for %s: %s", argv[0], exc)
            return ProcessResult(argv, NOT_FOUND_RC, "", f"{argv[0]} not found: {exc}")
        except subprocess.TimeoutExpired as exc:
            logger.error("Command timed out after %ss: %s", limit, shlex.join(argv))
            return ProcessResult(
                argv,
                TIMEOUT_RC,
                _decode(exc.stdout),
                _decode(exc.stderr),
                timed_out=True,
            )

        stdout = completed.stdout or ""
        stderr = completed.stderr or ""
        marker_seen = bool(self.failure_marker and self.failure_marker in stderr)
        result = ProcessResult(argv, completed.returncode, stdout, stderr, marker_seen=marker_seen)
        if not result.success:
            logger.debug("Command failed (%s): %s", result.returncode, result.message)
        return result


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


__all__ = ["CommandError", "CommandRunner", "ProcessResult"]
