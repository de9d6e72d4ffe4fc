"""State registry helpers tests."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest

from dockhand.locking import LockManager
from dockhand.state import (
    TERMINAL_STATUSES,
    AppForm,
    AppRecord,
    AppStatus,
    StateRegistry,
    StateRegistryError,
)


def test_read_missing_files_returns_default(tmp_path: Path) -> None:
    """Missing files return the provided default structure."""
    registry = StateRegistry(tmp_path)

    result = registry.read("apps.yml", default={"apps": []})

    assert result == {"apps": []}
    assert registry.get_apps() == []


def test_write_and_read_roundtrip(tmp_path: Path) -> None:
    """Writing a registry file and reading it back succeeds."""
    registry = StateRegistry(tmp_path)
    payload = {"apps": [{"id": "nextcloud", "status": "running"}]}

    registry.write("apps.yml", payload)

    path = tmp_path / "apps.yml"
    assert (path.stat().st_mode & 0o777) == 0o640
    assert registry.read("apps.yml") == payload
    assert registry.get_app("nextcloud").status is AppStatus.RUNNING  # type: ignore[union-attr]


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a StateRegistryError."""
    registry = StateRegistry(tmp_path)
    (tmp_path / "apps.yml").write_text("::: not yaml :::\n")

    with pytest.raises(StateRegistryError):
        registry.read("apps.yml")


def test_unknown_status_raises(tmp_path: Path) -> None:
    """Records with an unknown status are rejected."""
    registry = StateRegistry(tmp_path)
    registry.write("apps.yml", {"apps": [{"id": "nextcloud", "status": "sleeping"}]})

    with pytest.raises(StateRegistryError, match="unknown status"):
        registry.get_apps()


def test_create_and_update_app(tmp_path: Path) -> None:
    """Created records persist and updates refresh ``updated_at``."""
    registry = StateRegistry(tmp_path, locks=LockManager(tmp_path / "run", 1.0))
    created = registry.create_app(
        AppRecord(id="gitea", status=AppStatus.INSTALLING, config={"PORT": 3000}, version=4)
    )

    updated = registry.update_app("gitea", status=AppStatus.RUNNING, domain="git.example.com")

    assert updated.status is AppStatus.RUNNING
    assert updated.config == {"PORT": 3000}
    assert updated.created_at == created.created_at
    stored = registry.get_app("gitea")
    assert stored == updated


def test_create_rejects_installed_duplicate(tmp_path: Path) -> None:
    """An installed record cannot be created twice."""
    registry = StateRegistry(tmp_path)
    registry.create_app(AppRecord(id="gitea", status=AppStatus.RUNNING))

    with pytest.raises(StateRegistryError, match="already exists"):
        registry.create_app(AppRecord(id="gitea", status=AppStatus.INSTALLING))


def test_missing_record_counts_as_absent(tmp_path: Path) -> None:
    """A ``missing`` record is hidden from installed lookups and can be replaced."""
    registry = StateRegistry(tmp_path)
    registry.create_app(AppRecord(id="gitea", status=AppStatus.MISSING))

    assert registry.get_app("gitea") is not None
    assert registry.get_installed_app("gitea") is None

    registry.create_app(AppRecord(id="gitea", status=AppStatus.INSTALLING))
    replaced = registry.get_installed_app("gitea")
    assert replaced is not None
    assert replaced.status is AppStatus.INSTALLING


def test_update_unknown_app_raises(tmp_path: Path) -> None:
    """Updating an absent record fails."""
    registry = StateRegistry(tmp_path)

    with pytest.raises(StateRegistryError, match="not found"):
        registry.set_status("ghost", AppStatus.RUNNING)


def test_delete_app(tmp_path: Path) -> None:
    """Deletion reports whether a record was removed."""
    registry = StateRegistry(tmp_path)
    registry.create_app(AppRecord(id="gitea", status=AppStatus.STOPPED))

    assert registry.delete_app("gitea") is True
    assert registry.delete_app("gitea") is False
    assert registry.get_apps() == []


def test_query_helpers(tmp_path: Path) -> None:
    """Status and domain queries only see matching installed records."""
    registry = StateRegistry(tmp_path)
    registry.create_app(AppRecord(id="a", status=AppStatus.RUNNING, domain="Apps.Example.com"))
    registry.create_app(AppRecord(id="b", status=AppStatus.STOPPED, domain="apps.example.com"))
    registry.create_app(AppRecord(id="c", status=AppStatus.MISSING, domain="apps.example.com"))

    assert [r.id for r in registry.get_apps_by_status(AppStatus.RUNNING)] == ["a"]
    by_domain = registry.get_apps_by_domain("apps.example.com", exclude_id="b")
    assert [r.id for r in by_domain] == ["a"]


def test_update_apps_by_status_not_in(tmp_path: Path) -> None:
    """Bulk updates skip records whose status is in the keep-set."""
    registry = StateRegistry(tmp_path)
    registry.create_app(AppRecord(id="a", status=AppStatus.RUNNING))
    registry.create_app(AppRecord(id="b", status=AppStatus.INSTALLING))
    registry.create_app(AppRecord(id="c", status=AppStatus.BACKING_UP))

    changed = registry.update_apps_by_status_not_in(TERMINAL_STATUSES, status=AppStatus.STOPPED)

    assert changed == ["b", "c"]
    statuses = {record.id: record.status for record in registry.get_apps()}
    assert statuses == {"a": AppStatus.RUNNING, "b": AppStatus.STOPPED, "c": AppStatus.STOPPED}


def test_concurrent_updates_are_not_lost(tmp_path: Path) -> None:
    """Parallel read-modify-write cycles on different records all persist."""
    registry = StateRegistry(tmp_path, locks=LockManager(tmp_path / "run", 5.0))
    ids = [f"app{index}" for index in range(8)]
    for app_id in ids:
        registry.create_app(AppRecord(id=app_id, status=AppStatus.STOPPED))

    threads = [
        threading.Thread(target=registry.set_status, args=(app_id, AppStatus.RUNNING))
        for app_id in ids
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert {record.status for record in registry.get_apps()} == {AppStatus.RUNNING}


def test_status_classification() -> None:
    """Only missing, running and stopped are terminal."""
    assert {status for status in AppStatus if status.is_terminal} == {
        AppStatus.MISSING,
        AppStatus.RUNNING,
        AppStatus.STOPPED,
    }
    assert AppStatus.RESTORING.in_progress is True


def test_form_round_trips_through_record() -> None:
    """The persisted form fields rebuild the same form."""
    form = AppForm(
        values={"ADMIN": "root", "WORKERS": 2, "DEBUG": False},
        exposed=True,
        domain="cloud.example.com",
        open_port=False,
    )
    record = AppRecord(id="nextcloud", status=AppStatus.RUNNING, **form.record_fields())

    assert AppForm.from_record(record) == form
    assert AppRecord.from_mapping(record.to_dict()) == record
