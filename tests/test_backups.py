"""Tests for the backup archive store."""
from __future__ import annotations

from pathlib import Path

import pytest

from dockhand.backups import BackupError, BackupStore, validate_filename


def _touch(store: BackupStore, app_id: str, stamp: int, size: int = 4) -> Path:
    path = store.archive_directory(app_id) / f"{app_id}-{stamp}.tar.gz"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return path


def test_new_archive_path_is_unique(tmp_path: Path) -> None:
    """Timestamp collisions bump the millisecond suffix."""
    store = BackupStore(tmp_path / "backups")
    _touch(store, "gitea", 1000)

    path = store.new_archive_path("gitea", now_ms=1000)

    assert path == tmp_path / "backups" / "gitea" / "gitea-1001.tar.gz"


def test_list_backups_newest_first_with_paging(tmp_path: Path) -> None:
    """Listings are sorted by creation time and paginated."""
    store = BackupStore(tmp_path / "backups")
    for stamp in (1000, 3000, 2000):
        _touch(store, "gitea", stamp)
    _touch(store, "nextcloud", 5000)
    (store.archive_directory("gitea") / "notes.txt").write_text("ignore", encoding="utf-8")

    first = store.list_backups("gitea", page=1, page_size=2)
    second = store.list_backups("gitea", page=2, page_size=2)

    assert first["total"] == 3
    assert [info.filename for info in first["data"]] == [  # type: ignore[attr-defined]
        "gitea-3000.tar.gz",
        "gitea-2000.tar.gz",
    ]
    assert [info.created_at_ms for info in second["data"]] == [1000]  # type: ignore[attr-defined]


def test_list_backups_for_unknown_app_is_empty(tmp_path: Path) -> None:
    """Apps without a backup directory have no backups."""
    store = BackupStore(tmp_path / "backups")

    assert store.list_backups("gitea") == {"data": [], "total": 0}


def test_checksum_sidecar_round_trip(tmp_path: Path) -> None:
    """Checksums are stored next to the archive and removed with it."""
    store = BackupStore(tmp_path / "backups")
    archive = _touch(store, "gitea", 1000)

    sidecar = store.write_checksum(archive, "abc123")

    assert sidecar.name == "gitea-1000.tar.gz.sha256"
    assert store.read_checksum(archive) == "abc123"

    store.delete_backup("gitea", archive.name)
    assert not archive.exists()
    assert not sidecar.exists()
    assert store.read_checksum(archive) is None


def test_delete_missing_backup_raises(tmp_path: Path) -> None:
    """Deleting an unknown archive is an error."""
    store = BackupStore(tmp_path / "backups")

    with pytest.raises(BackupError, match="does not exist"):
        store.delete_backup("gitea", "gitea-1.tar.gz")


@pytest.mark.parametrize(
    "filename",
    ["", "../gitea-1.tar.gz", "sub/gitea-1.tar.gz", ".hidden.tar.gz", "gitea-1.zip"],
)
def test_unsafe_filenames_rejected(filename: str) -> None:
    """Only plain archive names are accepted."""
    with pytest.raises(BackupError):
        validate_filename(filename)


def test_invalid_page_raises(tmp_path: Path) -> None:
    """Pages start at one."""
    store = BackupStore(tmp_path / "backups")

    with pytest.raises(BackupError):
        store.list_backups("gitea", page=0)
