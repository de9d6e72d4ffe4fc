"""dockhand package bootstrap.

This module exposes lightweight metadata that other modules (and packaging
machinery) rely upon. The configured host version defaults to this value, so
catalog definitions declaring ``min_host_version`` are compared against it.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.4.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
