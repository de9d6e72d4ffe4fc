"""Tests for the external command runner."""
from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from dockhand.executor import CommandRunner, ProcessResult

pytestmark = pytest.mark.skipif(shutil.which("sh") is None, reason="sh is not installed")


def test_run_captures_output(tmp_path: Path) -> None:
    """Successful commands expose stdout and honour cwd."""
    runner = CommandRunner()

    result = runner.run(["sh", "-c", "pwd; echo done"], cwd=tmp_path)

    assert result.success is True
    assert result.stdout.splitlines() == [str(tmp_path), "done"]


def test_nonzero_exit_is_reported_not_raised() -> None:
    """Failures return a result carrying stderr."""
    runner = CommandRunner()

    result = runner.run(["sh", "-c", "echo nope >&2; exit 3"])

    assert result.success is False
    assert result.returncode == 3
    assert result.message == "nope"


def test_missing_executable_maps_to_127() -> None:
    """An absent binary does not raise."""
    result = CommandRunner().run(["dockhand-definitely-missing-binary"])

    assert result.returncode == 127
    assert "not found" in result.message


def test_timeout_is_reported() -> None:
    """Commands exceeding the timeout are killed and flagged."""
    runner = CommandRunner(timeout=0.2)

    result = runner.run(["sleep", "5"])

    assert result.timed_out is True
    assert result.success is False
    assert result.message.endswith("timed out")


def test_failure_marker_fails_zero_exit() -> None:
    """A configured marker in stderr fails an otherwise successful command."""
    runner = CommandRunner(failure_marker="Command failed:")

    result = runner.run(["sh", "-c", "echo 'Command failed: pull' >&2; exit 0"])

    assert result.returncode == 0
    assert result.marker_seen is True
    assert result.success is False


def test_command_property_quotes_arguments() -> None:
    """The printable command line is shell-quoted."""
    result = ProcessResult(("docker", "compose", "--env-file", "/a b/app.env"), 0)

    assert result.command == "docker compose --env-file '/a b/app.env'"
