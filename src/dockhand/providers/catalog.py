"""Git-backed catalog of app definitions."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from ..catalog_models import DEFINITION_FILE, AppDefinition, DefinitionError
from ..executor import CommandRunner
from ..layout import FilesystemLayout, LayoutError, validate_app_id

logger = logging.getLogger(__name__)


class CatalogError(RuntimeError):
    """Raised when the catalog repository cannot be cloned, pulled or read."""


def split_repo_url(url: str) -> tuple[str, str | None]:
    """Split ``url#branch`` into the base URL and optional branch."""
    base, sep, branch = url.partition("#")
    return base, (branch or None) if sep else None


@dataclass(slots=True)
class CatalogRepository:
    """Clone, update and read the app catalog under ``repos/<repo_id>``."""

    layout: FilesystemLayout
    runner: CommandRunner
    git_bin: str = "git"

    @property
    def root(self) -> Path:
        """Local checkout directory."""
        return self.layout.repo_root

    @property
    def apps_dir(self) -> Path:
        """Directory containing one folder per app."""
        return self.layout.catalog_apps_dir

    # Git operations -----------------------------------------------------
    def clone(self, url: str) -> bool:
        """Clone *url* unless a checkout already exists. Returns ``True`` if cloned."""
        if not url:
            raise CatalogError("A repository URL is required to clone the catalog.")
        if self.root.exists():
            logger.info("Catalog %s already cloned at %s", url, self.root)
            return False
        base_url, branch = split_repo_url(url)
        args = [self.git_bin, "clone"]
        if branch:
            args.extend(["-b", branch])
        args.extend([base_url, str(self.root)])
        self.root.parent.mkdir(parents=True, exist_ok=True)
        logger.info("Cloning catalog %s into %s", base_url, self.root)
        result = self.runner.run(args)
        if not result.success:
            raise CatalogError(f"git clone failed: {result.message}")
        return True

    def pull(self) -> str:
        """Hard-reset the checkout to its remote branch and return the branch name."""
        if not self.root.is_dir():
            raise CatalogError(f"Catalog repository {self.root} does not exist.")
        git = [self.git_bin, "-C", str(self.root)]

        result = self.runner.run([*git, "config", "pull.rebase", "false"])
        if not result.success:
            logger.warning("git config pull.rebase failed: %s", result.message)

        result = self.runner.run([*git, "rev-parse", "--abbrev-ref", "HEAD"])
        if not result.success:
            raise CatalogError(f"Unable to determine catalog branch: {result.message}")
        branch = result.stdout.strip()

        for args in (["fetch", "origin"], ["reset", "--hard", f"origin/{branch}"]):
            result = self.runner.run([*git, *args])
            if not result.success:
                raise CatalogError(f"git {' '.join(args)} failed: {result.message}")
        logger.info("Catalog %s updated to origin/%s", self.root, branch)
        return branch

    # Definitions --------------------------------------------------------
    def list_app_ids(self) -> list[str]:
        """Return the ids of every app folder in the catalog."""
        if not self.apps_dir.is_dir():
            return []
        return sorted(
            entry.name
            for entry in self.apps_dir.iterdir()
            if entry.is_dir() and (entry / DEFINITION_FILE).is_file()
        )

    def has_app(self, app_id: str) -> bool:
        """Return ``True`` if the catalog contains *app_id*."""
        try:
            return self.layout.paths(app_id).repo_dir.is_dir()
        except LayoutError:
            return False

    def load_definition(self, app_id: str) -> AppDefinition:
        """Return the catalog definition for *app_id*."""
        try:
            validate_app_id(app_id)
        except LayoutError as exc:
            raise DefinitionError(str(exc)) from exc
        return AppDefinition.load(self.apps_dir / app_id)

    def available_definitions(self) -> list[AppDefinition]:
        """Return every valid and available definition, skipping broken ones."""
        definitions: list[AppDefinition] = []
        for app_id in self.list_app_ids():
            try:
                definition = self.load_definition(app_id)
            except DefinitionError as exc:
                logger.warning("Skipping invalid catalog app %s: %s", app_id, exc)
                continue
            if definition.available:
                definitions.append(definition)
        return definitions

    def compose_common_file(self) -> Path:
        """Return the compose file shared by every catalog app."""
        return self.layout.common_compose_file


__all__ = ["CatalogError", "CatalogRepository", "split_repo_url"]
