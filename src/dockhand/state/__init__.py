"""Persistent state helpers for dockhand."""
from __future__ import annotations

from .models import TERMINAL_STATUSES, AppForm, AppRecord, AppStatus
from .registry import StateRegistry, StateRegistryError

__all__ = [
    "TERMINAL_STATUSES",
    "AppForm",
    "AppRecord",
    "AppStatus",
    "StateRegistry",
    "StateRegistryError",
]
