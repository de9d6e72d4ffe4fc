"""Structured operation logging for dockhand.

Every mutating command opens an :class:`OperationScope` through
:meth:`StructuredLogger.operation`. When the scope closes a single JSON record
is appended to ``operations.jsonl`` inside the configured log directory and a
one-line summary is mirrored to the standard library logger
``dockhand.operations``.

The logger never raises on I/O problems: when the log directory cannot be
created, or a write fails, it disables itself and subsequent records are
dropped.
"""
from __future__ import annotations

import json
import logging as _logging
import os
import time
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from threading import Lock

OPERATIONS_LOG_NAME = "operations.jsonl"
_MIRROR = _logging.getLogger("dockhand.operations")


def _utc_now() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


def _sanitise(value: object) -> object:
    """Return a JSON-safe copy of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitise(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitise(item) for item in value]
    return str(value)


@dataclass(slots=True)
class OperationScope:
    """Collect the steps and outcome of a single operation."""

    logger: StructuredLogger
    name: str
    args: Mapping[str, object]
    target: Mapping[str, object] | None
    operation_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    started_at: str = field(default_factory=_utc_now)
    steps: list[dict[str, object]] = field(default_factory=list)
    lock_wait_ms: int | None = None
    result: dict[str, object] | None = None
    _start: float = field(default_factory=time.monotonic)

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = detail
        self.steps.append(step)

    def set_lock_wait_ms(self, value: int) -> None:
        """Record how long the operation waited on locks."""
        self.lock_wait_ms = int(value)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result("success", message, changed=changed, backups=backups, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=list(warnings or [message]),
            errors=errors,
            changed=changed,
            backups=backups,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Sequence[str] | None = None,
        warnings: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 1,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=list(errors or [message]),
            warnings=warnings,
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Sequence[str] | None = None,
        errors: Sequence[str] | None = None,
        changed: int = 0,
        backups: Sequence[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int = 0,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "changed": changed,
            "rc": rc,
        }
        if warnings:
            result["warnings"] = list(warnings)
        if errors:
            result["errors"] = list(errors)
        if backups:
            result["backups"] = [str(item) for item in backups]
        if context:
            result["context"] = _sanitise(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON record for this operation."""
        duration_ms = int((time.monotonic() - self._start) * 1000)
        record: dict[str, object] = {
            "id": self.operation_id,
            "op": self.name,
            "pid": os.getpid(),
            "started_at": self.started_at,
            "finished_at": _utc_now(),
            "duration_ms": duration_ms,
            "args": _sanitise(self.args),
            "steps": list(self.steps),
            "result": self.result or {"status": "unknown", "message": "", "changed": 0, "rc": 0},
        }
        if self.target:
            record["target"] = _sanitise(self.target)
        if self.lock_wait_ms is not None:
            record["lock_wait_ms"] = self.lock_wait_ms
        return record


class StructuredLogger:
    """Append operation records to a JSONL file under *log_dir*."""

    def __init__(self, log_dir: Path) -> None:
        self._log_dir = Path(log_dir)
        self._operations_log_path = self._log_dir / OPERATIONS_LOG_NAME
        self._write_lock = Lock()
        self._enabled = True
        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            _MIRROR.warning("Operation log disabled; cannot create %s: %s", self._log_dir, exc)
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the JSONL log path."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        name: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an operation scope and persist it when the block exits."""
        scope = OperationScope(logger=self, name=name, args=dict(args or {}), target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or exc.__class__.__name__, rc=1)
            raise
        finally:
            self._emit(scope)

    def _emit(self, scope: OperationScope) -> None:
        record = scope.to_record()
        result = record["result"]
        status = result.get("status") if isinstance(result, dict) else "unknown"
        message = result.get("message") if isinstance(result, dict) else ""
        level = _logging.ERROR if status == "error" else _logging.INFO
        if status == "warning":
            level = _logging.WARNING
        _MIRROR.log(level, "%s %s: %s", scope.name, status, message)

        if not self._enabled:
            return
        line = json.dumps(record, sort_keys=True)
        with self._write_lock:
            try:
                with self._operations_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError as exc:
                _MIRROR.warning("Operation log disabled after write failure: %s", exc)
                self._enabled = False


__all__ = ["OPERATIONS_LOG_NAME", "OperationScope", "StructuredLogger"]
