"""YAML-backed store of app records.

``apps.yml`` under the registry directory (``/var/lib/dockhand/registry`` by
default) is the single source of truth for installed apps. Every rewrite goes
through a temporary file and ``os.replace``. Read-modify-write cycles hold an
in-process lock plus, when a :class:`~dockhand.locking.LockManager` is given,
the registry file lock shared by every dockhand process on the host.
"""
from __future__ import annotations

import os
import tempfile
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping
from contextlib import contextmanager, nullcontext
from copy import deepcopy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from ..locking import LockManager
from .models import AppRecord, AppStatus

APPS_FILE = "apps.yml"
FILE_MODE = 0o640


class StateRegistryError(RuntimeError):
    """Registry file unreadable or holding malformed records."""


@dataclass(frozen=True)
class StateRegistry:
    """App records stored as YAML under ``root``."""

    root: Path
    locks: LockManager | None = None
    _guard: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "root", Path(self.root).expanduser())

    # Files ------------------------------------------------------------

    def path_for(self, name: str) -> Path:
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Parse registry file *name*; a missing or empty file yields a copy of *default*."""
        target = self.path_for(name)
        try:
            text = target.read_text(encoding="utf-8")
        except FileNotFoundError:
            return deepcopy(default)
        try:
            document = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"{target} is not valid YAML: {exc}") from exc
        return deepcopy(default) if document is None else document

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Replace registry file *name* with *payload* in one rename."""
        self.root.mkdir(parents=True, exist_ok=True)
        target = self.path_for(name)
        fd, scratch = tempfile.mkstemp(dir=self.root, prefix=f".{name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as stream:
                yaml.safe_dump(payload, stream, sort_keys=False)
            os.chmod(scratch, FILE_MODE)
            os.replace(scratch, target)
        except BaseException:
            Path(scratch).unlink(missing_ok=True)
            raise

    # Queries ------------------------------------------------------------

    def get_apps(self) -> list[AppRecord]:
        """Return every stored record, including ``missing`` ones."""
        return list(self._load().values())

    def get_app(self, app_id: str) -> AppRecord | None:
        """Return the record for *app_id* if stored."""
        return self._load().get(app_id)

    def get_installed_app(self, app_id: str) -> AppRecord | None:
        """Return the record for *app_id* unless it is absent or ``missing``."""
        record = self.get_app(app_id)
        if record is None or not record.installed:
            return None
        return record

    def get_apps_by_status(self, *statuses: AppStatus) -> list[AppRecord]:
        """Return records whose status is one of *statuses*."""
        wanted = set(statuses)
        return [record for record in self._load().values() if record.status in wanted]

    def get_apps_by_domain(self, domain: str, *, exclude_id: str | None = None) -> list[AppRecord]:
        """Return installed records using *domain*, skipping *exclude_id*."""
        normalized = domain.strip().lower()
        return [
            record
            for record in self._load().values()
            if record.installed
            and record.id != exclude_id
            and (record.domain or "").strip().lower() == normalized
        ]

    # Mutations ------------------------------------------------------------

    def create_app(self, record: AppRecord) -> AppRecord:
        """Store a new record. A ``missing`` record with the same id is replaced."""

        def apply(apps: dict[str, AppRecord]) -> AppRecord:
            existing = apps.get(record.id)
            if existing is not None and existing.installed:
                raise StateRegistryError(f"App '{record.id}' already exists in registry")
            apps[record.id] = record
            return record

        return self._mutate(apply)

    def update_app(self, app_id: str, **changes: Any) -> AppRecord:
        """Apply *changes* to the record for *app_id* and return the new record."""

        def apply(apps: dict[str, AppRecord]) -> AppRecord:
            existing = apps.get(app_id)
            if existing is None:
                raise StateRegistryError(f"App '{app_id}' not found in registry")
            updated = existing.evolve(**changes)
            apps[app_id] = updated
            return updated

        return self._mutate(apply)

    def set_status(self, app_id: str, status: AppStatus) -> AppRecord:
        """Shortcut for ``update_app(app_id, status=status)``."""
        return self.update_app(app_id, status=status)

    def delete_app(self, app_id: str) -> bool:
        """Remove *app_id* from the registry. Returns ``False`` if it was absent."""

        def apply(apps: dict[str, AppRecord]) -> bool:
            return apps.pop(app_id, None) is not None

        return self._mutate(apply)

    def update_apps_by_status_not_in(
        self,
        statuses: Iterable[AppStatus],
        **changes: Any,
    ) -> list[str]:
        """Apply *changes* to every record whose status is outside *statuses*."""
        keep = set(statuses)

        def apply(apps: dict[str, AppRecord]) -> list[str]:
            changed: list[str] = []
            for app_id, record in apps.items():
                if record.status in keep:
                    continue
                apps[app_id] = record.evolve(**changes)
                changed.append(app_id)
            return changed

        return self._mutate(apply)

    # Internals ------------------------------------------------------------

    def _load(self) -> dict[str, AppRecord]:
        data = self.read(APPS_FILE, default={"apps": []})
        raw_apps = data.get("apps", []) if isinstance(data, Mapping) else []
        if not isinstance(raw_apps, list):
            raise StateRegistryError(f"{self.path_for(APPS_FILE)} must contain an 'apps' list.")
        apps: dict[str, AppRecord] = {}
        for entry in raw_apps:
            if not isinstance(entry, Mapping):
                raise StateRegistryError("App registry entries must be mappings.")
            try:
                record = AppRecord.from_mapping(entry)
            except ValueError as exc:
                raise StateRegistryError(str(exc)) from exc
            apps[record.id] = record
        return apps

    def _store(self, apps: Mapping[str, AppRecord]) -> None:
        entries = [apps[key].to_dict() for key in sorted(apps)]
        self.write(APPS_FILE, {"apps": entries})

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        file_lock = self.locks.registry_lock() if self.locks is not None else nullcontext()
        with self._guard, file_lock:
            yield

    def _mutate(self, apply: Callable[[dict[str, AppRecord]], Any]) -> Any:
        with self._exclusive():
            apps = self._load()
            result = apply(apps)
            self._store(apps)
            return result


__all__ = ["APPS_FILE", "StateRegistry", "StateRegistryError"]
