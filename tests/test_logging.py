"""Tests for the JSONL operation log."""
from __future__ import annotations

import json
import logging
from pathlib import Path

import pytest

from dockhand.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    lines = logger.operations_log_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_unusable_log_dir_drops_records(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    """A log dir that cannot be created turns the operation log off."""
    blocker = tmp_path / "logs"
    blocker.write_text("not a directory", encoding="utf-8")

    with caplog.at_level(logging.WARNING, logger="dockhand.operations"):
        logger = StructuredLogger(blocker / "nested")
        with logger.operation("app.start", args={"app": "gitea"}) as op:
            op.success("started")

    assert not logger.operations_log_path.exists()
    assert "Operation log disabled" in caplog.text


def test_write_failure_stops_further_writes(tmp_path: Path) -> None:
    """After one failed append the logger stops touching the file."""
    logger = StructuredLogger(tmp_path / "logs")
    logger.operations_log_path.mkdir()

    with logger.operation("app.stop") as op:
        op.success("stopped")

    logger.operations_log_path.rmdir()
    with logger.operation("app.stop") as op:
        op.success("stopped")

    assert not logger.operations_log_path.exists()


def test_operation_records_steps_and_lock_wait(tmp_path: Path) -> None:
    """Steps, target and lock wait time are persisted with the result."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "app.install",
        args={"app": "gitea"},
        target={"kind": "app", "name": "gitea"},
    ) as op:
        op.set_lock_wait_ms(12)
        op.add_step("files.copy")
        op.add_step("compose.up", detail="up --detach")
        op.success("installed", changed=1)

    (record,) = _records(logger)
    assert record["op"] == "app.install"
    assert record["target"] == {"kind": "app", "name": "gitea"}
    assert record["lock_wait_ms"] == 12
    assert [step["name"] for step in record["steps"]] == ["files.copy", "compose.up"]
    assert record["result"]["status"] == "success"
    assert record["result"]["changed"] == 1


def test_operation_records_uncaught_exception(tmp_path: Path) -> None:
    """An exception escaping the block is recorded as an error and re-raised."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError, match="kaput"):
        with logger.operation("app.update"):
            raise ValueError("kaput")

    (record,) = _records(logger)
    assert record["result"]["status"] == "error"
    assert record["result"]["message"] == "kaput"


def test_operation_scope_warning_sanitises_context(tmp_path: Path) -> None:
    """Warnings should be recorded with JSON-safe context values."""
    logger = StructuredLogger(tmp_path / "logs")

    class Custom:
        def __str__(self) -> str:
            return "<custom>"

    with logger.operation("app.uninstall", args={"path": Path("apps")}) as op:
        op.warning(
            "warned",
            warnings=("images in use",),
            errors=("err",),
            changed=1,
            backups=["gitea-1.tar.gz"],
            context={"path": Path("/opt/dockhand"), "obj": Custom()},
        )

    (record,) = _records(logger)
    result = record["result"]
    assert record["args"] == {"path": "apps"}
    assert result["status"] == "warning"
    assert result["warnings"] == ["images in use"]
    assert result["errors"] == ["err"]
    assert result["backups"] == ["gitea-1.tar.gz"]
    assert result["context"] == {"path": "/opt/dockhand", "obj": "<custom>"}


def test_operation_scope_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors should default to the message when not provided."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("app.reset") as op:
        op.error("boom", errors=None, context={"value": {1, 2}}, rc=4)

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"
    assert result["errors"] == ["boom"]
    assert result["rc"] == 4
    assert result["context"] == {"value": "{1, 2}"}
