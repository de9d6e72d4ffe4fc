"""Persisted app record model."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class AppStatus(str, Enum):
    """Lifecycle status of an installed app."""

    MISSING = "missing"
    INSTALLING = "installing"
    RUNNING = "running"
    STARTING = "starting"
    STOPPING = "stopping"
    STOPPED = "stopped"
    UPDATING = "updating"
    UNINSTALLING = "uninstalling"
    RESETTING = "resetting"
    RESTORING = "restoring"
    BACKING_UP = "backing_up"

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` for statuses that no command is currently driving."""
        return self in TERMINAL_STATUSES

    @property
    def in_progress(self) -> bool:
        """Return ``True`` when a lifecycle command owns the app."""
        return not self.is_terminal


TERMINAL_STATUSES = frozenset({AppStatus.MISSING, AppStatus.RUNNING, AppStatus.STOPPED})


def _now() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class AppRecord:
    """One installed app as stored in ``apps.yml``."""

    id: str
    status: AppStatus = AppStatus.MISSING
    config: dict[str, Any] = field(default_factory=dict)
    version: int = 0
    exposed: bool = False
    exposed_local: bool = False
    open_port: bool = True
    domain: str | None = None
    is_visible_on_guest_dashboard: bool = False
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def installed(self) -> bool:
        """Return ``True`` unless the record is logically absent."""
        return self.status is not AppStatus.MISSING

    def evolve(self, **changes: Any) -> AppRecord:
        """Return a copy with *changes* applied and ``updated_at`` refreshed."""
        changes.setdefault("updated_at", _now())
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        """Return the YAML-serialisable mapping for this record."""
        return {
            "id": self.id,
            "status": self.status.value,
            "config": dict(self.config),
            "version": self.version,
            "exposed": self.exposed,
            "exposed_local": self.exposed_local,
            "open_port": self.open_port,
            "domain": self.domain,
            "is_visible_on_guest_dashboard": self.is_visible_on_guest_dashboard,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> AppRecord:
        """Build a record from a registry mapping, tolerating missing keys."""
        app_id = str(data.get("id") or "").strip()
        if not app_id:
            raise ValueError("App record is missing an id.")
        raw_status = data.get("status", AppStatus.MISSING.value)
        try:
            status = AppStatus(str(raw_status))
        except ValueError as exc:
            raise ValueError(f"App record '{app_id}' has unknown status {raw_status!r}.") from exc
        config = data.get("config") or {}
        if not isinstance(config, Mapping):
            raise ValueError(f"App record '{app_id}' has a non-mapping config.")
        domain = data.get("domain")
        return cls(
            id=app_id,
            status=status,
            config=dict(config),
            version=int(data.get("version") or 0),
            exposed=bool(data.get("exposed", False)),
            exposed_local=bool(data.get("exposed_local", False)),
            open_port=bool(data.get("open_port", True)),
            domain=str(domain) if domain else None,
            is_visible_on_guest_dashboard=bool(data.get("is_visible_on_guest_dashboard", False)),
            created_at=str(data.get("created_at") or _now()),
            updated_at=str(data.get("updated_at") or _now()),
        )


FormValue = str | int | bool


@dataclass(frozen=True, slots=True)
class AppForm:
    """User-submitted install/config form for an app."""

    values: dict[str, FormValue] = field(default_factory=dict)
    exposed: bool = False
    exposed_local: bool = False
    open_port: bool = True
    domain: str | None = None
    is_visible_on_guest_dashboard: bool = False

    @classmethod
    def from_record(cls, record: AppRecord) -> AppForm:
        """Rebuild the form last persisted on *record*."""
        return cls(
            values=dict(record.config),
            exposed=record.exposed,
            exposed_local=record.exposed_local,
            open_port=record.open_port,
            domain=record.domain,
            is_visible_on_guest_dashboard=record.is_visible_on_guest_dashboard,
        )

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> AppForm:
        """Inverse of :meth:`record_fields`."""
        config = data.get("config") or {}
        if not isinstance(config, Mapping):
            raise ValueError("Form config must be a mapping.")
        domain = data.get("domain")
        return cls(
            values=dict(config),
            exposed=bool(data.get("exposed", False)),
            exposed_local=bool(data.get("exposed_local", False)),
            open_port=bool(data.get("open_port", True)),
            domain=str(domain) if domain else None,
            is_visible_on_guest_dashboard=bool(data.get("is_visible_on_guest_dashboard", False)),
        )

    def record_fields(self) -> dict[str, Any]:
        """Return the record attributes this form controls."""
        return {
            "config": dict(self.values),
            "exposed": self.exposed,
            "exposed_local": self.exposed_local,
            "open_port": self.open_port,
            "domain": self.domain or None,
            "is_visible_on_guest_dashboard": self.is_visible_on_guest_dashboard,
        }


__all__ = ["AppForm", "AppRecord", "AppStatus", "FormValue", "TERMINAL_STATUSES"]
