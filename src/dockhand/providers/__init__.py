"""Provider interfaces for dockhand."""
from __future__ import annotations

from .catalog import CatalogError, CatalogRepository
from .compose import ComposeError, ComposeProvider

__all__ = [
    "CatalogError",
    "CatalogRepository",
    "ComposeError",
    "ComposeProvider",
]
