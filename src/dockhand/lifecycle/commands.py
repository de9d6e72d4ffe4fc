"""Lifecycle commands: one class per operation on an installed app.

A command is created by :class:`~dockhand.lifecycle.service.AppLifecycleService`
after the app has been claimed (its in-progress status written). ``run()`` is
the command boundary: it executes the work, writes the terminal status,
publishes the outcome event and records the operation. Failures never escape
``run()``; they become a failed :class:`CommandResult` and the record is moved
to the command's fallback status.
"""
from __future__ import annotations

import logging
import shutil
import uuid
from collections.abc import Callable, Mapping
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

import yaml

from ..archive import ArchiveError, ArchiveSource, compute_checksum, create_archive, extract_archive
from ..backups import BackupStore
from ..catalog_models import AppDefinition
from ..config import AppConfig
from ..envfile import EnvFileGenerator, form_from_env, read_env_map
from ..events import EventEmitter
from ..executor import CommandRunner
from ..layout import FilesystemLayout, LayoutError, remove_tree
from ..locking import LockManager
from ..logging import OperationScope, StructuredLogger
from ..providers.catalog import CatalogRepository
from ..providers.compose import ComposeError, ComposeProvider
from ..state.models import AppForm, AppStatus
from ..state.registry import StateRegistry
from .errors import ConflictingOperationError, DomainInUseError

logger = logging.getLogger(__name__)

RECORD_MEMBER = "record.yml"


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Outcome of a lifecycle command."""

    success: bool
    message: str
    app_id: str
    status: AppStatus | None = None
    warnings: tuple[str, ...] = ()
    context: Mapping[str, object] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {
            "success": self.success,
            "message": self.message,
            "app_id": self.app_id,
            "status": self.status.value if self.status is not None else None,
            "warnings": list(self.warnings),
            "context": dict(self.context),
        }


@dataclass(slots=True)
class LifecycleContext:
    """Collaborators shared by every command."""

    config: AppConfig
    registry: StateRegistry
    layout: FilesystemLayout
    compose: ComposeProvider
    catalog: CatalogRepository
    envfile: EnvFileGenerator
    backups: BackupStore
    events: EventEmitter
    locks: LockManager
    oplog: StructuredLogger
    runner: CommandRunner

    def finish(self, app_id: str, status: AppStatus | None, **changes: Any) -> None:
        """Write *status* (``None`` deletes the record) under the app lock."""
        with self.locks.app_lock(app_id):
            if status is None:
                self.registry.delete_app(app_id)
            else:
                self.registry.update_app(app_id, status=status, **changes)

    def form_for(self, app_id: str) -> AppForm:
        """Return the form persisted on the app's record."""
        record = self.registry.get_app(app_id)
        if record is None:
            return AppForm()
        return AppForm.from_record(record)

    def installed_definition(self, app_id: str) -> AppDefinition:
        """Ensure the installed copy exists and return its definition."""
        self.layout.ensure_installed(app_id)
        return AppDefinition.load(self.layout.paths(app_id).app_dir)


class LifecycleCommand:
    """Base class for every lifecycle command."""

    phase: ClassVar[str] = ""
    in_progress: ClassVar[AppStatus | None] = None

    def __init__(self, ctx: LifecycleContext, app_id: str, previous: AppStatus) -> None:
        self.ctx = ctx
        self.app_id = app_id
        self.previous = previous
        self.warnings: list[str] = []
        self.context: dict[str, object] = {}
        self.final_status: AppStatus | None = previous
        self._op: OperationScope | None = None

    # Hooks ------------------------------------------------------------
    def execute(self) -> str:
        """Perform the work, write the terminal status and return a message."""
        raise NotImplementedError

    def fallback_status(self, exc: Exception) -> AppStatus | None:
        """Return the status written after *exc*; ``None`` deletes the record."""
        return self.previous

    def describe(self) -> dict[str, object]:
        """Return the arguments recorded in the operation log."""
        return {"app": self.app_id}

    # Helpers ------------------------------------------------------------
    def step(self, name: str, detail: str | None = None) -> None:
        """Record a completed step."""
        logger.info("[%s] %s %s", self.app_id, self.phase, name)
        if self._op is not None:
            self._op.add_step(name, status="success", detail=detail)

    def warn(self, message: str) -> None:
        """Record a tolerated problem."""
        logger.warning("[%s] %s", self.app_id, message)
        self.warnings.append(message)
        if self._op is not None:
            self._op.add_step("warning", status="warning", detail=message)

    def complete(self, status: AppStatus | None, **changes: Any) -> None:
        """Persist the terminal *status* for the app."""
        self.ctx.finish(self.app_id, status, **changes)
        self.final_status = status

    def write_env(
        self,
        definition: AppDefinition | None = None,
        form: AppForm | None = None,
    ) -> None:
        """Regenerate ``app.env`` from the installed definition and stored form."""
        definition = definition or self.ctx.installed_definition(self.app_id)
        self.ctx.envfile.generate(definition, form or self.ctx.form_for(self.app_id))
        self.step("env.generate")

    # Boundary -----------------------------------------------------------
    def run(self) -> CommandResult:
        """Execute the command and never raise."""
        with self.ctx.oplog.operation(
            f"app.{self.phase}",
            args=self.describe(),
            target={"app": self.app_id},
        ) as op:
            self._op = op
            try:
                message = self.execute()
            except Exception as exc:  # noqa: BLE001 - every failure becomes a result
                return self._fail(op, exc)

            self.ctx.events.success(self.phase, self.app_id, self.final_status)
            if self.warnings:
                op.warning(message, warnings=self.warnings, changed=1, context=self.context)
            else:
                op.success(message, changed=1, context=self.context)
            return CommandResult(
                success=True,
                message=message,
                app_id=self.app_id,
                status=self.final_status,
                warnings=tuple(self.warnings),
                context=dict(self.context),
            )

    def _fail(self, op: OperationScope, exc: Exception) -> CommandResult:
        message = str(exc) or exc.__class__.__name__
        logger.error("[%s] %s failed: %s", self.app_id, self.phase, message)
        status: AppStatus | None = self.previous
        if self.in_progress is not None:
            status = self.fallback_status(exc)
            try:
                self.complete(status)
            except Exception as write_exc:  # noqa: BLE001 - keep reporting the original failure
                logger.exception("[%s] unable to write fallback status %s", self.app_id, status)
                message = f"{message} (status not updated: {write_exc})"
        reported = status if status is not None else AppStatus.MISSING
        self.ctx.events.failure(self.phase, self.app_id, message, reported)
        op.error(
            message,
            errors=[message],
            warnings=self.warnings or None,
            context=self.context,
            rc=4,
        )
        return CommandResult(
            success=False,
            message=message,
            app_id=self.app_id,
            status=reported,
            warnings=tuple(self.warnings),
            context=dict(self.context),
        )


# Commands -------------------------------------------------------------------
class InstallCommand(LifecycleCommand):
    """Copy the app from the catalog, generate its env file and bring it up."""

    phase = "install"
    in_progress = AppStatus.INSTALLING

    def __init__(
        self,
        ctx: LifecycleContext,
        app_id: str,
        previous: AppStatus,
        *,
        form: AppForm,
        definition: AppDefinition,
    ) -> None:
        super().__init__(ctx, app_id, previous)
        self.form = form
        self.definition = definition

    def describe(self) -> dict[str, object]:
        return {"app": self.app_id, "exposed": self.form.exposed, "domain": self.form.domain}

    def execute(self) -> str:
        layout = self.ctx.layout
        layout.install_fresh(self.app_id)
        self.step("files.copy")
        layout.ensure_app_data_dir(self.app_id)
        self.ctx.envfile.generate(self.definition, self.form)
        self.step("env.generate")
        if layout.ensure_data_seeded(self.app_id):
            self.step("data.seed")
        layout.ensure_installed(self.app_id)
        self.ctx.compose.up(self.app_id)
        self.step("compose.up")
        self.complete(AppStatus.RUNNING)
        return f"App {self.app_id} installed successfully"

    def fallback_status(self, exc: Exception) -> AppStatus | None:
        return None


class StartCommand(LifecycleCommand):
    """Regenerate the env file and bring the app up."""

    phase = "start"
    in_progress = AppStatus.STARTING

    def execute(self) -> str:
        self.write_env()
        self.ctx.compose.up(self.app_id)
        self.step("compose.up")
        self.complete(AppStatus.RUNNING)
        return f"App {self.app_id} started successfully"


class StopCommand(LifecycleCommand):
    """Regenerate the env file and stop the app's containers."""

    phase = "stop"
    in_progress = AppStatus.STOPPING

    def execute(self) -> str:
        self.write_env()
        self.ctx.compose.stop(self.app_id)
        self.step("compose.stop")
        self.complete(AppStatus.STOPPED)
        return f"App {self.app_id} stopped successfully"


class RestartCommand(LifecycleCommand):
    """Stop then start the app."""

    phase = "restart"
    in_progress = AppStatus.STOPPING

    def execute(self) -> str:
        self.write_env()
        self.ctx.compose.stop(self.app_id)
        self.step("compose.stop")
        self.ctx.finish(self.app_id, AppStatus.STARTING)
        self.ctx.events.status_change(self.app_id, AppStatus.STARTING)
        self.ctx.compose.up(self.app_id)
        self.step("compose.up")
        self.complete(AppStatus.RUNNING)
        return f"App {self.app_id} restarted successfully"


class UninstallCommand(LifecycleCommand):
    """Bring the app down, delete its files and its record."""

    phase = "uninstall"
    in_progress = AppStatus.UNINSTALLING

    def execute(self) -> str:
        self.write_env()
        try:
            self.ctx.compose.down_for_uninstall(self.app_id)
            self.step("compose.down")
        except ComposeError as exc:
            if not exc.is_conflict:
                raise
            self.warn(
                f"Could not fully uninstall app {self.app_id}; some images are in use by "
                "other apps. Consider pruning unused images."
            )

        for label, remove in (
            ("app", self.ctx.layout.remove_app_dir),
            ("app-data", self.ctx.layout.remove_app_data_dir),
        ):
            try:
                remove(self.app_id)
                self.step(f"files.remove.{label}")
            except LayoutError as exc:
                logger.error("[%s] %s", self.app_id, exc)
                self.warn(f"Left {label} directory behind: {exc}")

        self.complete(None)
        self.final_status = AppStatus.MISSING
        return f"App {self.app_id} uninstalled successfully"

    def fallback_status(self, exc: Exception) -> AppStatus | None:
        return AppStatus.STOPPED


class ResetCommand(LifecycleCommand):
    """Wipe the app's data, reseed it and bring the app back up."""

    phase = "reset"
    in_progress = AppStatus.RESETTING

    def execute(self) -> str:
        definition = self.ctx.installed_definition(self.app_id)
        form = self.ctx.form_for(self.app_id)
        self.write_env(definition, form)
        try:
            self.ctx.compose.down_for_reset(self.app_id)
            self.step("compose.down")
        except ComposeError as exc:
            if not exc.is_conflict:
                raise
            self.warn(f"Could not cleanly bring down app {self.app_id}: {exc}")

        # Seeding only starts once the data directory is fully gone.
        self.ctx.layout.remove_app_data_dir(self.app_id)
        self.step("files.remove.app-data")
        self.write_env(definition, form)
        if self.ctx.layout.ensure_data_seeded(self.app_id):
            self.step("data.seed")
        self.ctx.layout.ensure_installed(self.app_id)
        self.ctx.compose.up(self.app_id)
        self.step("compose.up")
        self.complete(AppStatus.RUNNING)
        return f"App {self.app_id} reset successfully"

    def fallback_status(self, exc: Exception) -> AppStatus | None:
        return AppStatus.STOPPED


class UpdateCommand(LifecycleCommand):
    """Replace the installed copy with the catalog's current definition."""

    phase = "update"
    in_progress = AppStatus.UPDATING

    def __init__(
        self,
        ctx: LifecycleContext,
        app_id: str,
        previous: AppStatus,
        *,
        backup: bool = False,
    ) -> None:
        super().__init__(ctx, app_id, previous)
        self.backup = backup

    def describe(self) -> dict[str, object]:
        return {"app": self.app_id, "backup": self.backup}

    def execute(self) -> str:
        if self.backup:
            archive, checksum = archive_app(self.ctx, self.app_id, step=self.step)
            self.context.update({"backup": archive.name, "checksum": checksum})

        self.write_env()
        try:
            self.ctx.compose.cleanup_images(self.app_id)
            self.step("compose.cleanup")
        except ComposeError as exc:
            self.warn(
                f"App {self.app_id} likely has a broken compose file; continuing with update: {exc}"
            )

        self.ctx.layout.install_fresh(self.app_id)
        self.step("files.copy")
        definition = self.ctx.installed_definition(self.app_id)
        self.write_env(definition)
        self.ctx.compose.pull(self.app_id)
        self.step("compose.pull")

        final = AppStatus.STOPPED
        if self.previous is AppStatus.RUNNING:
            self.ctx.compose.up(self.app_id)
            self.step("compose.up")
            final = AppStatus.RUNNING
        self.context["version"] = definition.version
        self.complete(final, version=definition.version)
        return f"App {self.app_id} updated successfully"

    def fallback_status(self, exc: Exception) -> AppStatus | None:
        return AppStatus.STOPPED


class BackupCommand(LifecycleCommand):
    """Archive the app's files while its containers are stopped."""

    phase = "backup"
    in_progress = AppStatus.BACKING_UP

    def __init__(self, ctx: LifecycleContext, app_id: str, previous: AppStatus) -> None:
        super().__init__(ctx, app_id, previous)
        self._containers_stopped = False

    def execute(self) -> str:
        archive, checksum = archive_app(
            self.ctx,
            self.app_id,
            step=self.step,
            on_stopped=self._mark_stopped,
        )
        self.context.update({"filename": archive.name, "path": str(archive), "checksum": checksum})
        if self.previous is AppStatus.RUNNING:
            self.ctx.compose.up(self.app_id)
            self.step("compose.up")
        self.complete(self.previous)
        return f"App {self.app_id} backed up successfully"

    def fallback_status(self, exc: Exception) -> AppStatus | None:
        return AppStatus.STOPPED if self._containers_stopped else self.previous

    def _mark_stopped(self) -> None:
        self._containers_stopped = True


class RestoreCommand(LifecycleCommand):
    """Replace the app's files with the contents of a backup archive."""

    phase = "restore"
    in_progress = AppStatus.RESTORING

    def __init__(
        self,
        ctx: LifecycleContext,
        app_id: str,
        previous: AppStatus,
        *,
        archive: Path,
    ) -> None:
        super().__init__(ctx, app_id, previous)
        self.archive = archive

    def describe(self) -> dict[str, object]:
        return {"app": self.app_id, "filename": self.archive.name}

    def execute(self) -> str:
        paths = self.ctx.layout.paths(self.app_id)
        if paths.compose_file.is_file() and paths.env_file.is_file():
            try:
                self.ctx.compose.stop(self.app_id)
                self.step("compose.stop")
            except ComposeError as exc:
                self.warn(f"Could not stop app {self.app_id} before restore: {exc}")

        expected = self.ctx.backups.read_checksum(self.archive)
        if expected is not None and compute_checksum(self.archive) != expected:
            raise ArchiveError(f"Checksum mismatch for {self.archive.name}")

        scratch = paths.backups_dir / f".restore-{uuid.uuid4().hex}"
        try:
            extract_archive(self.archive, scratch, runner=self.ctx.runner)
            self.step("archive.extract", detail=self.archive.name)
            for required in ("app", "app-data"):
                if not (scratch / required).is_dir():
                    raise ArchiveError(f"Backup {self.archive.name} has no '{required}' directory")
            definition = AppDefinition.load(scratch / "app")
            form = self._saved_form(scratch, definition)

            # Held until the record claims the restored domain.
            exposed = form.exposed and bool(form.domain)
            with self.ctx.locks.domain_lock() if exposed else nullcontext():
                _ensure_domain_free(self.ctx, self.app_id, form)
                self.ctx.layout.remove_app_dir(self.app_id)
                self.ctx.layout.remove_app_data_dir(self.app_id)
                self.ctx.layout.remove_user_config_dir(self.app_id)
                self.step("files.remove")

                moves = [("app", paths.app_dir), ("app-data", paths.app_data_dir)]
                if (scratch / "user-config").is_dir():
                    moves.append(("user-config", paths.user_config_dir))
                for name, target in moves:
                    target.parent.mkdir(parents=True, exist_ok=True)
                    shutil.move(str(scratch / name), str(target))
                self.step("files.move")

                self.context["version"] = definition.version
                self.complete(
                    AppStatus.STOPPED,
                    version=definition.version,
                    **form.record_fields(),
                )
        finally:
            remove_tree(scratch)
        return f"App {self.app_id} restored successfully"

    def _saved_form(self, scratch: Path, definition: AppDefinition) -> AppForm:
        """Return the form stored in the backup, or rebuild it from ``app.env``."""
        snapshot = scratch / RECORD_MEMBER
        if snapshot.is_file():
            data = yaml.safe_load(snapshot.read_text(encoding="utf-8"))
            if not isinstance(data, Mapping):
                raise ArchiveError(f"Backup {self.archive.name} has a malformed {RECORD_MEMBER}")
            return AppForm.from_mapping(data)

        env_name = self.ctx.layout.paths(self.app_id).env_file.name
        logger.info("[%s] backup has no %s; reading %s", self.app_id, RECORD_MEMBER, env_name)
        return form_from_env(definition, read_env_map(scratch / "app-data" / env_name))

    def fallback_status(self, exc: Exception) -> AppStatus | None:
        if self.previous is AppStatus.MISSING:
            return None
        return AppStatus.STOPPED


class RegenerateEnvCommand(LifecycleCommand):
    """Rewrite ``app.env`` without changing the app's status."""

    phase = "generate_env"

    def __init__(
        self,
        ctx: LifecycleContext,
        app_id: str,
        previous: AppStatus,
        *,
        form: AppForm | None = None,
    ) -> None:
        super().__init__(ctx, app_id, previous)
        self.form = form

    def execute(self) -> str:
        with self.ctx.locks.app_lock(self.app_id):
            _ensure_idle(self.ctx, self.app_id)
            self.write_env(form=self.form)
        return f"App {self.app_id} env file regenerated successfully"


class UpdateConfigCommand(LifecycleCommand):
    """Validate a new form, regenerate ``app.env`` and persist the form."""

    phase = "update_config"

    def __init__(
        self,
        ctx: LifecycleContext,
        app_id: str,
        previous: AppStatus,
        *,
        form: AppForm,
    ) -> None:
        super().__init__(ctx, app_id, previous)
        self.form = form

    def describe(self) -> dict[str, object]:
        return {"app": self.app_id, "exposed": self.form.exposed, "domain": self.form.domain}

    def execute(self) -> str:
        domain_lock = self.ctx.locks.domain_lock() if self.form.exposed else nullcontext()
        with domain_lock, self.ctx.locks.app_lock(self.app_id):
            _ensure_idle(self.ctx, self.app_id)
            _ensure_domain_free(self.ctx, self.app_id, self.form)
            self.write_env(form=self.form)
            self.ctx.registry.update_app(self.app_id, **self.form.record_fields())
            self.step("registry.update")
        return f"App {self.app_id} config updated successfully"


# Shared steps ---------------------------------------------------------------
def _ensure_idle(ctx: LifecycleContext, app_id: str) -> None:
    record = ctx.registry.get_app(app_id)
    if record is not None and record.status.in_progress:
        raise ConflictingOperationError(app_id, record.status.value)


def _ensure_domain_free(ctx: LifecycleContext, app_id: str, form: AppForm) -> None:
    if not (form.exposed and form.domain):
        return
    for other in ctx.registry.get_apps_by_domain(form.domain, exclude_id=app_id):
        if other.exposed:
            raise DomainInUseError(form.domain, other.id)


def archive_app(
    ctx: LifecycleContext,
    app_id: str,
    *,
    step: Callable[..., None] | None = None,
    on_stopped: Callable[[], None] | None = None,
) -> tuple[Path, str]:
    """Stop the app's containers and archive its files. Returns ``(path, sha256)``."""
    paths = ctx.layout.paths(app_id)
    ctx.compose.stop(app_id)
    if on_stopped is not None:
        on_stopped()
    if step is not None:
        step("compose.stop")

    snapshot = ctx.form_for(app_id).record_fields()

    ctx.backups.ensure_root()
    archive = ctx.backups.new_archive_path(app_id)
    create_archive(
        [
            ArchiveSource("app", paths.app_dir),
            ArchiveSource("app-data", paths.app_data_dir),
            ArchiveSource("user-config", paths.user_config_dir, required=False),
        ],
        archive,
        compression_level=ctx.config.backups.compression_level,
        extra_files={RECORD_MEMBER: yaml.safe_dump(snapshot, sort_keys=False)},
        runner=ctx.runner,
    )
    checksum = compute_checksum(archive)
    ctx.backups.write_checksum(archive, checksum)
    if step is not None:
        step("archive.create", archive.name)
    return archive, checksum


__all__ = [
    "BackupCommand",
    "CommandResult",
    "InstallCommand",
    "LifecycleCommand",
    "LifecycleContext",
    "RegenerateEnvCommand",
    "ResetCommand",
    "RestartCommand",
    "RestoreCommand",
    "StartCommand",
    "StopCommand",
    "UninstallCommand",
    "UpdateCommand",
    "UpdateConfigCommand",
    "archive_app",
]
