"""Backup archive storage: naming, listing, pagination and deletion."""
from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass
from pathlib import Path

from .layout import validate_app_id

ARCHIVE_SUFFIX = ".tar.gz"
CHECKSUM_SUFFIX = ".sha256"


class BackupError(RuntimeError):
    """Raised when backup storage operations fail."""


@dataclass(frozen=True, slots=True)
class BackupInfo:
    """A stored backup archive."""

    filename: str
    path: Path
    size: int
    created_at_ms: int

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "filename": self.filename,
            "path": str(self.path),
            "size": self.size,
            "created_at_ms": self.created_at_ms,
        }


def _now_ms() -> int:
    return int(time.time() * 1000)


def validate_filename(filename: str) -> str:
    """Return *filename* if it names a plain archive file."""
    if (
        not filename
        or "/" in filename
        or "\\" in filename
        or ".." in filename
        or filename.startswith(".")
        or not filename.endswith(ARCHIVE_SUFFIX)
    ):
        raise BackupError(f"Invalid backup filename {filename!r}.")
    return filename


@dataclass(slots=True)
class BackupStore:
    """Manage ``<root>/<app_id>/<app_id>-<millis>.tar.gz`` archives."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        self.root = Path(self.root).expanduser()

    # Basic helpers -------------------------------------------------
    def ensure_root(self) -> None:
        """Ensure the backup root directory exists with safe permissions."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o750)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def archive_directory(self, app_id: str) -> Path:
        """Return the directory that holds archives for *app_id*."""
        return self.root / validate_app_id(app_id)

    def archive_path(self, app_id: str, filename: str) -> Path:
        """Return the path of *filename* for *app_id* (which may not exist)."""
        return self.archive_directory(app_id) / validate_filename(filename)

    def new_archive_path(self, app_id: str, *, now_ms: int | None = None) -> Path:
        """Return an unused ``{app_id}-{millis}.tar.gz`` path."""
        directory = self.archive_directory(app_id)
        stamp = _now_ms() if now_ms is None else now_ms
        candidate = directory / f"{app_id}-{stamp}{ARCHIVE_SUFFIX}"
        while candidate.exists():
            stamp += 1
            candidate = directory / f"{app_id}-{stamp}{ARCHIVE_SUFFIX}"
        return candidate

    # Checksums ------------------------------------------------------
    def write_checksum(self, archive_path: Path, checksum: str) -> Path:
        """Write ``<archive>.sha256`` next to *archive_path*."""
        checksum_path = archive_path.with_name(f"{archive_path.name}{CHECKSUM_SUFFIX}")
        checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
        os.chmod(checksum_path, 0o640)
        return checksum_path

    def read_checksum(self, archive_path: Path) -> str | None:
        """Return the recorded checksum for *archive_path*, if any."""
        checksum_path = archive_path.with_name(f"{archive_path.name}{CHECKSUM_SUFFIX}")
        try:
            content = checksum_path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        return content.split()[0] if content else None

    # Listing --------------------------------------------------------
    def list_backups(
        self,
        app_id: str,
        *,
        page: int = 1,
        page_size: int = 10,
    ) -> dict[str, object]:
        """Return ``{"data": [BackupInfo, ...], "total": n}``, newest first."""
        if page < 1 or page_size < 1:
            raise BackupError("page and page_size must be positive.")
        entries = self._scan(app_id)
        start = (page - 1) * page_size
        return {"data": entries[start : start + page_size], "total": len(entries)}

    def delete_backup(self, app_id: str, filename: str) -> None:
        """Delete *filename* and its checksum file."""
        path = self.archive_path(app_id, filename)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise BackupError(f"Backup {filename} does not exist for {app_id}.") from exc
        except OSError as exc:
            raise BackupError(f"Failed to delete {path}: {exc}") from exc
        path.with_name(f"{path.name}{CHECKSUM_SUFFIX}").unlink(missing_ok=True)

    def _scan(self, app_id: str) -> list[BackupInfo]:
        directory = self.archive_directory(app_id)
        if not directory.is_dir():
            return []
        pattern = re.compile(rf"^{re.escape(app_id)}-(\d+){re.escape(ARCHIVE_SUFFIX)}$")
        entries: list[BackupInfo] = []
        for path in directory.iterdir():
            if not path.is_file() or not path.name.endswith(ARCHIVE_SUFFIX):
                continue
            if path.name.startswith("."):
                continue
            stat = path.stat()
            match = pattern.match(path.name)
            created = int(match.group(1)) if match else int(stat.st_mtime * 1000)
            entries.append(BackupInfo(path.name, path, stat.st_size, created))
        entries.sort(key=lambda info: (info.created_at_ms, info.filename), reverse=True)
        return entries


__all__ = ["ARCHIVE_SUFFIX", "BackupError", "BackupInfo", "BackupStore", "validate_filename"]
