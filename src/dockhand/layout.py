"""Filesystem layout for installed apps.

Directory map for an app ``<id>``::

    <root>/repos/<repo_id>/apps/<id>/   catalog source (read-only)
    <root>/apps/<id>/                   installed code (copied from the catalog)
    <storage>/app-data/<id>/            persistent data, ``app.env`` lives here
    <root>/user-config/<id>/            optional operator overrides
    <backups>/<id>/                     backup archives

Every copy is recursive and every delete is forceful and idempotent.
"""
from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from pathlib import Path

from .catalog_models import DEFINITION_FILE

logger = logging.getLogger(__name__)

COMPOSE_FILE = "docker-compose.yml"
ARM64_COMPOSE_FILE = "docker-compose.arm64.yml"
COMMON_COMPOSE_FILE = "docker-compose.common.yml"
ENV_FILE = "app.env"
SEED_DATA_DIR = "data"

_APP_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")


class LayoutError(RuntimeError):
    """Raised when filesystem layout operations fail."""


def validate_app_id(app_id: str) -> str:
    """Return *app_id* if it is safe to use as a directory name."""
    if not _APP_ID_PATTERN.fullmatch(app_id or "") or ".." in app_id:
        raise LayoutError(f"Invalid app id {app_id!r}.")
    return app_id


@dataclass(frozen=True, slots=True)
class AppPaths:
    """Canonical locations for one app."""

    app_id: str
    app_dir: Path
    app_data_dir: Path
    repo_dir: Path
    user_config_dir: Path
    backups_dir: Path

    @property
    def env_file(self) -> Path:
        """Generated environment file."""
        return self.app_data_dir / ENV_FILE

    @property
    def data_dir(self) -> Path:
        """Seeded data directory inside app-data."""
        return self.app_data_dir / SEED_DATA_DIR

    @property
    def seed_dir(self) -> Path:
        """Seed data shipped with the catalog definition."""
        return self.repo_dir / SEED_DATA_DIR

    @property
    def compose_file(self) -> Path:
        """Main compose file of the installed copy."""
        return self.app_dir / COMPOSE_FILE

    @property
    def definition_file(self) -> Path:
        """Installed copy of ``config.json``."""
        return self.app_dir / DEFINITION_FILE

    @property
    def user_env_file(self) -> Path:
        """Optional operator env override."""
        return self.user_config_dir / ENV_FILE

    @property
    def user_compose_file(self) -> Path:
        """Optional operator compose override."""
        return self.user_config_dir / COMPOSE_FILE


@dataclass(frozen=True, slots=True)
class FilesystemLayout:
    """Compute app paths and perform idempotent copy/delete operations."""

    root_dir: Path
    storage_dir: Path
    repo_id: str
    backups_root: Path

    @property
    def repo_root(self) -> Path:
        """Clone location of the catalog repository."""
        return self.root_dir / "repos" / self.repo_id

    @property
    def catalog_apps_dir(self) -> Path:
        """Directory holding one subdirectory per catalog app."""
        return self.repo_root / "apps"

    @property
    def common_compose_file(self) -> Path:
        """Compose file shared by every app of the catalog."""
        return self.catalog_apps_dir / COMMON_COMPOSE_FILE

    def paths(self, app_id: str) -> AppPaths:
        """Return the :class:`AppPaths` for *app_id*."""
        validate_app_id(app_id)
        return AppPaths(
            app_id=app_id,
            app_dir=self.root_dir / "apps" / app_id,
            app_data_dir=self.storage_dir / "app-data" / app_id,
            repo_dir=self.catalog_apps_dir / app_id,
            user_config_dir=self.root_dir / "user-config" / app_id,
            backups_dir=self.backups_root / app_id,
        )

    # Installed code -----------------------------------------------------
    def install_fresh(self, app_id: str) -> Path:
        """Replace the installed directory with a fresh copy of the catalog source."""
        paths = self.paths(app_id)
        if not paths.repo_dir.is_dir():
            raise LayoutError(f"App {app_id} not found in catalog {paths.repo_dir.parent}.")
        logger.info("Copying %s to %s", paths.repo_dir, paths.app_dir)
        remove_tree(paths.app_dir)
        copy_tree(paths.repo_dir, paths.app_dir)
        return paths.app_dir

    def ensure_installed(self, app_id: str) -> bool:
        """Recopy the installed directory only when its compose file is missing."""
        paths = self.paths(app_id)
        if paths.compose_file.exists():
            return False
        logger.info("Installed copy of %s lacks %s; recopying", app_id, COMPOSE_FILE)
        self.install_fresh(app_id)
        return True

    # App data -----------------------------------------------------------
    def ensure_app_data_dir(self, app_id: str) -> Path:
        """Create the app-data directory if needed."""
        path = self.paths(app_id).app_data_dir
        path.mkdir(parents=True, exist_ok=True)
        return path

    def ensure_data_seeded(self, app_id: str) -> bool:
        """Copy catalog seed data into ``app-data/<id>/data`` unless it already exists."""
        paths = self.paths(app_id)
        if paths.data_dir.exists():
            return False
        if not paths.seed_dir.is_dir():
            return False
        logger.info("Seeding data for %s from %s", app_id, paths.seed_dir)
        copy_tree(paths.seed_dir, paths.data_dir)
        return True

    # Removal ------------------------------------------------------------
    def remove_app_dir(self, app_id: str) -> None:
        """Delete the installed directory."""
        remove_tree(self.paths(app_id).app_dir)

    def remove_app_data_dir(self, app_id: str) -> None:
        """Delete the app-data directory."""
        remove_tree(self.paths(app_id).app_data_dir)

    def remove_user_config_dir(self, app_id: str) -> None:
        """Delete the user-config directory."""
        remove_tree(self.paths(app_id).user_config_dir)


# Primitives -----------------------------------------------------------------
def copy_tree(
    source: Path,
    destination: Path,
    *,
    exclude_names: Iterable[str] = (),
) -> None:
    """Recursively copy *source* into *destination*, merging with existing files."""
    if not source.is_dir():
        raise LayoutError(f"Cannot copy {source}: not a directory.")
    excluded = set(exclude_names)
    ignore: Callable[[str, list[str]], set[str]] | None = None
    if excluded:

        def ignore(_directory: str, names: list[str]) -> set[str]:
            return {name for name in names if name in excluded}

    try:
        shutil.copytree(source, destination, symlinks=True, ignore=ignore, dirs_exist_ok=True)
    except (OSError, shutil.Error) as exc:
        raise LayoutError(f"Failed to copy {source} to {destination}: {exc}") from exc


def remove_tree(path: Path) -> None:
    """Delete *path* recursively. Missing paths are not an error."""
    try:
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.exists():
            shutil.rmtree(path)
    except FileNotFoundError:
        return
    except OSError as exc:
        raise LayoutError(f"Failed to remove {path}: {exc}") from exc


__all__ = [
    "ARM64_COMPOSE_FILE",
    "COMMON_COMPOSE_FILE",
    "COMPOSE_FILE",
    "ENV_FILE",
    "AppPaths",
    "FilesystemLayout",
    "LayoutError",
    "copy_tree",
    "remove_tree",
    "validate_app_id",
]
