"""File-based advisory locks for dockhand.

Locks are ``fcntl.flock`` exclusive locks on files under the runtime
directory:

* ``dockhand.lock`` guards host-wide mutations (repository sync, start-all).
* ``registry.lock`` serialises read-modify-write cycles on ``apps.yml``.
* ``domains.lock`` serialises domain collision checks with the writes that
  claim a domain.
* ``apps/<app_id>.lock`` serialises the check-and-claim step of lifecycle
  commands for a single app.

Each lock file records the holder's pid and path for diagnostics and is left
in place after release. ``flock`` locks belong to the open file description,
so two threads of one process contend for the same lock just like two
processes do.
"""
from __future__ import annotations

import errno
import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "dockhand.lock"
REGISTRY_LOCK_NAME = "registry.lock"
DOMAIN_LOCK_NAME = "domains.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""

    def __init__(self, path: Path, timeout: float) -> None:
        super().__init__(f"Timed out after {timeout:.1f}s waiting for lock {path}.")
        self.path = path
        self.timeout = timeout


@dataclass(slots=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire named advisory locks below *root*."""

    def __init__(self, root: Path, default_timeout: float = 30.0) -> None:
        self.root = Path(root)
        self.default_timeout = float(default_timeout)

    # Paths --------------------------------------------------------------
    def global_lock_path(self) -> Path:
        """Return the path of the host-wide lock."""
        return self.root / GLOBAL_LOCK_NAME

    def registry_lock_path(self) -> Path:
        """Return the path of the registry lock."""
        return self.root / REGISTRY_LOCK_NAME

    def domain_lock_path(self) -> Path:
        """Return the path of the domain lock."""
        return self.root / DOMAIN_LOCK_NAME

    def app_lock_path(self, app_id: str) -> Path:
        """Return the lock path for *app_id*."""
        safe = app_id.replace("/", "_")
        return self.root / "apps" / f"{safe}.lock"

    # Context managers ---------------------------------------------------
    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the host-wide lock."""
        with self._acquire(self.global_lock_path(), timeout) as handle:
            yield handle

    @contextmanager
    def registry_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the registry lock."""
        with self._acquire(self.registry_lock_path(), timeout) as handle:
            yield handle

    @contextmanager
    def domain_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the domain lock."""
        with self._acquire(self.domain_lock_path(), timeout) as handle:
            yield handle

    @contextmanager
    def app_lock(self, app_id: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single app."""
        with self._acquire(self.app_lock_path(app_id), timeout) as handle:
            yield handle

    # Internals ----------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else float(timeout)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as exc:
                    if exc.errno not in (errno.EAGAIN, errno.EACCES, errno.EWOULDBLOCK):
                        raise
                    if time.monotonic() - start >= limit:
                        raise LockTimeoutError(path, limit) from exc
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = json.dumps(
        {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(),
        }
    ).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, payload)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
