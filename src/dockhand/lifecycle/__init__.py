"""App lifecycle orchestration."""
from __future__ import annotations

from .commands import CommandResult, LifecycleContext
from .errors import LifecycleError
from .service import AppLifecycleService

__all__ = ["AppLifecycleService", "CommandResult", "LifecycleContext", "LifecycleError"]
