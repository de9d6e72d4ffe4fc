"""In-process publication of app lifecycle events.

Every lifecycle command publishes a ``status_change`` event when it claims an
app and a ``<phase>_success`` or ``<phase>_error`` event when it finishes.
Subscribers are plain callables; a failing subscriber is logged and never
interrupts the command that emitted the event.
"""
from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .state.models import AppStatus

logger = logging.getLogger(__name__)

EVENT_DOMAIN = "app"
STATUS_CHANGE = "status_change"

Subscriber = Callable[["AppEvent"], None]


def _now() -> str:
    return datetime.now(tz=UTC).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True, slots=True)
class AppEvent:
    """A single lifecycle notification."""

    event: str
    app_id: str
    app_status: AppStatus | None = None
    error: str | None = None
    domain: str = EVENT_DOMAIN
    emitted_at: str = field(default_factory=_now)

    @property
    def is_error(self) -> bool:
        """Return ``True`` for ``*_error`` events."""
        return self.event.endswith("_error")

    def to_dict(self) -> dict[str, object]:
        """Return the wire shape ``{type, event, data}``."""
        data: dict[str, object] = {"appId": self.app_id}
        if self.app_status is not None:
            data["appStatus"] = self.app_status.value
        if self.error is not None:
            data["error"] = self.error
        return {"type": self.domain, "event": self.event, "data": data}


class EventEmitter:
    """Fan events out to subscribers and keep a bounded history."""

    def __init__(self, *, history: int = 200) -> None:
        self._subscribers: list[Subscriber] = []
        self._history: deque[AppEvent] = deque(maxlen=history)
        self._lock = threading.Lock()

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register *callback*; the returned callable unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def emit(self, event: AppEvent) -> None:
        """Record *event* and deliver it to every subscriber."""
        with self._lock:
            self._history.append(event)
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:  # noqa: BLE001 - subscribers must not break commands
                logger.exception("Event subscriber failed for %s/%s", event.app_id, event.event)

    def status_change(self, app_id: str, status: AppStatus) -> None:
        """Emit a ``status_change`` event."""
        self.emit(AppEvent(STATUS_CHANGE, app_id, app_status=status))

    def success(self, phase: str, app_id: str, status: AppStatus | None = None) -> None:
        """Emit ``<phase>_success``."""
        self.emit(AppEvent(f"{phase}_success", app_id, app_status=status))

    def failure(
        self,
        phase: str,
        app_id: str,
        error: str,
        status: AppStatus | None = None,
    ) -> None:
        """Emit ``<phase>_error`` carrying *error*."""
        self.emit(AppEvent(f"{phase}_error", app_id, app_status=status, error=error))

    def history(self, app_id: str | None = None) -> list[AppEvent]:
        """Return recorded events, optionally filtered to *app_id*."""
        with self._lock:
            events = list(self._history)
        if app_id is None:
            return events
        return [event for event in events if event.app_id == app_id]


__all__ = ["AppEvent", "EVENT_DOMAIN", "EventEmitter", "STATUS_CHANGE"]
