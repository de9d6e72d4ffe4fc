"""Tarball helpers used by backup and restore."""
from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tempfile
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from .executor import CommandRunner
from .layout import LayoutError, copy_tree, remove_tree

logger = logging.getLogger(__name__)

EXCLUDED_DIR_NAMES = ("backups",)


class ArchiveError(RuntimeError):
    """Raised when an archive cannot be created or extracted."""


@dataclass(frozen=True, slots=True)
class ArchiveSource:
    """A directory stored under *name* at the root of an archive."""

    name: str
    path: Path
    required: bool = True


def _tar_binary() -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise ArchiveError("The 'tar' command is required to create archives.")
    return tar_bin


def create_archive(
    sources: Sequence[ArchiveSource],
    archive_path: Path,
    *,
    compression_level: int | None = None,
    exclude_names: Iterable[str] = EXCLUDED_DIR_NAMES,
    extra_files: Mapping[str, str] | None = None,
    runner: CommandRunner | None = None,
) -> Path:
    """Pack *sources* into a gzip tarball at *archive_path*.

    Every source lands in a top-level directory named after ``source.name``;
    *extra_files* maps top-level file names to their text content.
    Directories named in *exclude_names* are skipped at any depth. A missing
    required source raises :class:`ArchiveError` before anything is written.
    """
    for source in sources:
        if source.required and not source.path.is_dir():
            raise ArchiveError(f"Archive source '{source.name}' is missing: {source.path}")

    tar_bin = _tar_binary()
    runner = runner or CommandRunner()
    archive_path.parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=".stage-", dir=archive_path.parent))
    partial = archive_path.with_name(f".{archive_path.name}.partial")
    try:
        members: list[str] = []
        for source in sources:
            if not source.path.is_dir():
                continue
            try:
                copy_tree(source.path, staging / source.name, exclude_names=exclude_names)
            except LayoutError as exc:
                raise ArchiveError(str(exc)) from exc
            members.append(source.name)
        for name, content in (extra_files or {}).items():
            if not name or "/" in name or name.startswith("."):
                raise ArchiveError(f"Invalid archive member name {name!r}")
            (staging / name).write_text(content, encoding="utf-8")
            members.append(name)

        compress = ["-z"]
        if compression_level is not None:
            compress = ["--use-compress-program", f"gzip -{compression_level}"]
        result = runner.run(
            [tar_bin, *compress, "-cf", str(partial), "-C", str(staging), *members],
        )
        if not result.success:
            raise ArchiveError(f"tar failed: {result.message}")
        os.replace(partial, archive_path)
        os.chmod(archive_path, 0o640)
    finally:
        partial.unlink(missing_ok=True)
        remove_tree(staging)
    logger.info("Created archive %s", archive_path)
    return archive_path


def extract_archive(
    archive_path: Path,
    destination: Path,
    *,
    runner: CommandRunner | None = None,
) -> Path:
    """Extract *archive_path* into the fresh directory *destination*.

    On failure *destination* is removed again so callers never observe a
    partially extracted tree.
    """
    if not archive_path.is_file():
        raise ArchiveError(f"Archive {archive_path} does not exist.")
    tar_bin = _tar_binary()
    runner = runner or CommandRunner()
    remove_tree(destination)
    destination.mkdir(parents=True)
    result = runner.run([tar_bin, "-xzf", str(archive_path), "-C", str(destination)])
    if not result.success:
        remove_tree(destination)
        raise ArchiveError(f"Failed to extract {archive_path.name}: {result.message}")
    return destination


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


__all__ = [
    "ArchiveError",
    "ArchiveSource",
    "compute_checksum",
    "create_archive",
    "extract_archive",
]
