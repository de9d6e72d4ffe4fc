"""Tests for lifecycle event fan-out."""
from __future__ import annotations

import logging

import pytest

from dockhand.events import AppEvent, EventEmitter
from dockhand.state import AppStatus


def test_event_wire_shape() -> None:
    """Events serialise to ``{type, event, data}`` with camelCase keys."""
    event = AppEvent("install_error", "gitea", app_status=AppStatus.MISSING, error="boom")

    assert event.is_error is True
    assert event.to_dict() == {
        "type": "app",
        "event": "install_error",
        "data": {"appId": "gitea", "appStatus": "missing", "error": "boom"},
    }


def test_subscribers_receive_events_until_unsubscribed() -> None:
    """Unsubscribing stops delivery without affecting history."""
    emitter = EventEmitter()
    received: list[str] = []
    unsubscribe = emitter.subscribe(lambda event: received.append(event.event))

    emitter.status_change("gitea", AppStatus.STARTING)
    unsubscribe()
    emitter.success("start", "gitea", AppStatus.RUNNING)

    assert received == ["status_change"]
    assert [event.event for event in emitter.history("gitea")] == [
        "status_change",
        "start_success",
    ]


def test_failing_subscriber_does_not_break_emit(caplog: pytest.LogCaptureFixture) -> None:
    """Subscriber exceptions are logged and other subscribers still run."""
    emitter = EventEmitter()
    received: list[AppEvent] = []

    def broken(_event: AppEvent) -> None:
        raise RuntimeError("subscriber down")

    emitter.subscribe(broken)
    emitter.subscribe(received.append)

    with caplog.at_level(logging.ERROR, logger="dockhand.events"):
        emitter.failure("stop", "gitea", "compose failed", AppStatus.STOPPED)

    assert len(received) == 1
    assert received[0].error == "compose failed"
    assert "Event subscriber failed" in caplog.text


def test_history_is_bounded() -> None:
    """Only the most recent events are kept."""
    emitter = EventEmitter(history=2)
    for app_id in ("a", "b", "c"):
        emitter.status_change(app_id, AppStatus.STARTING)

    assert [event.app_id for event in emitter.history()] == ["b", "c"]
