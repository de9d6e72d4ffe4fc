"""Entry point for lifecycle operations.

Public methods validate preconditions synchronously and raise
:class:`~dockhand.lifecycle.errors.LifecycleError` subclasses before anything
is mutated. They then claim the app by writing its in-progress status under
the per-app lock and hand a command to the worker pool, returning a
:class:`concurrent.futures.Future` that resolves to the command's
:class:`~dockhand.lifecycle.commands.CommandResult`.
"""
from __future__ import annotations

import logging
import re
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import nullcontext

from packaging.version import InvalidVersion, Version

from ..backups import BackupError, BackupStore
from ..catalog_models import AppDefinition, DefinitionError
from ..config import AppConfig
from ..envfile import EnvFileGenerator
from ..events import EventEmitter
from ..executor import CommandRunner
from ..layout import FilesystemLayout, LayoutError, validate_app_id
from ..locking import LockManager, LockTimeoutError
from ..logging import StructuredLogger
from ..providers.catalog import CatalogRepository
from ..providers.compose import ComposeProvider
from ..state.models import TERMINAL_STATUSES, AppForm, AppRecord, AppStatus
from ..state.registry import StateRegistry, StateRegistryError
from ..templates import TemplateEngine
from .commands import (
    BackupCommand,
    CommandResult,
    InstallCommand,
    LifecycleCommand,
    LifecycleContext,
    RegenerateEnvCommand,
    ResetCommand,
    RestartCommand,
    RestoreCommand,
    StartCommand,
    StopCommand,
    UninstallCommand,
    UpdateCommand,
    UpdateConfigCommand,
)
from .errors import (
    AppNotFoundError,
    ArchitectureNotSupportedError,
    BackupNotFoundError,
    ConflictingOperationError,
    DomainInUseError,
    DomainRequiredError,
    ForceExposedError,
    InvalidConfigError,
    InvalidDomainError,
    LifecycleError,
    MinVersionError,
    NotExposableError,
)

logger = logging.getLogger(__name__)

_FQDN_LABEL = re.compile(r"^(?!-)[a-z0-9-]{1,63}(?<!-)$")


def is_valid_fqdn(value: str) -> bool:
    """Return ``True`` when *value* is a fully-qualified domain name."""
    domain = value.strip().lower().rstrip(".")
    if not domain or len(domain) > 253:
        return False
    labels = domain.split(".")
    if len(labels) < 2:
        return False
    if not all(_FQDN_LABEL.match(label) for label in labels):
        return False
    return labels[-1].isalpha() and len(labels[-1]) >= 2


class AppLifecycleService:
    """Validate, claim and schedule lifecycle commands."""

    def __init__(self, ctx: LifecycleContext) -> None:
        self.ctx = ctx
        workers = ctx.config.workers
        self._pool = ThreadPoolExecutor(
            max_workers=workers.max_workers,
            thread_name_prefix="dockhand-lifecycle",
        )
        self._start_concurrency = workers.start_concurrency

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        runner: CommandRunner | None = None,
        events: EventEmitter | None = None,
        oplog: StructuredLogger | None = None,
    ) -> AppLifecycleService:
        """Wire every collaborator from *config*."""
        runner = runner or CommandRunner(
            timeout=config.compose.timeout,
            failure_marker=config.compose.failure_marker,
        )
        locks = LockManager(config.runtime_dir, config.lock_timeout)
        layout = FilesystemLayout(
            root_dir=config.root_dir,
            storage_dir=config.storage_dir,
            repo_id=config.catalog.repo_id,
            backups_root=config.backups.root,
        )
        ctx = LifecycleContext(
            config=config,
            registry=StateRegistry(config.registry_dir, locks=locks),
            layout=layout,
            compose=ComposeProvider(
                layout=layout,
                runner=runner,
                command=config.compose.command,
                architecture=config.architecture,
                timeout=config.compose.timeout,
            ),
            catalog=CatalogRepository(
                layout=layout,
                runner=runner,
                git_bin=config.catalog.git_bin,
            ),
            envfile=EnvFileGenerator(
                layout=layout,
                templates=TemplateEngine.with_overrides(config.templates_dir),
                random_length=config.random_length,
            ),
            backups=BackupStore(config.backups.root),
            events=events or EventEmitter(),
            locks=locks,
            oplog=oplog or StructuredLogger(config.logs_dir),
            runner=runner,
        )
        return cls(ctx)

    # Pool management --------------------------------------------------
    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work and optionally wait for running commands."""
        self._pool.shutdown(wait=wait)

    def __enter__(self) -> AppLifecycleService:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown(wait=True)

    # Queries ------------------------------------------------------------
    def get_app(self, app_id: str) -> AppRecord | None:
        """Return the installed record for *app_id*, treating ``missing`` as absent."""
        return self.ctx.registry.get_installed_app(app_id)

    def list_apps(self) -> list[AppRecord]:
        """Return every installed record."""
        return [record for record in self.ctx.registry.get_apps() if record.installed]

    def get_app_info(self, app_id: str) -> AppDefinition | None:
        """Return the installed definition if installed, else the catalog one."""
        try:
            paths = self.ctx.layout.paths(app_id)
        except LayoutError:
            return None
        directory = paths.repo_dir
        if self.get_app(app_id) is not None and paths.definition_file.is_file():
            directory = paths.app_dir
        try:
            definition = AppDefinition.load(directory)
        except DefinitionError as exc:
            logger.debug("No definition for %s: %s", app_id, exc)
            return None
        return definition if definition.available else None

    def get_update_info(self, app_id: str) -> dict[str, object]:
        """Return the catalog's latest version numbers for *app_id*."""
        try:
            definition = self.ctx.catalog.load_definition(app_id)
        except DefinitionError:
            return {"latest_version": 0, "latest_docker_version": "0.0.0"}
        return {
            "latest_version": definition.version,
            "latest_docker_version": definition.docker_version,
        }

    # Lifecycle operations ----------------------------------------------
    def install_app(self, app_id: str, form: AppForm) -> Future[CommandResult]:
        """Install *app_id* from the catalog with *form*.

        An app that is already installed is started instead.
        """
        self._validate_id(app_id)
        if self.ctx.registry.get_installed_app(app_id) is not None:
            logger.info("App %s already installed; starting it instead", app_id)
            return self.start_app(app_id)

        definition = self._catalog_definition(app_id)
        if not definition.available:
            raise AppNotFoundError(app_id, f"App {app_id} is not available in the catalog")
        if not definition.supports(self.ctx.config.architecture):
            raise ArchitectureNotSupportedError(app_id, self.ctx.config.architecture)
        self._check_min_version(app_id, definition)
        self._validate_exposure(app_id, definition, form)

        domain_lock = self.ctx.locks.domain_lock() if form.exposed else nullcontext()
        with domain_lock, self.ctx.locks.app_lock(app_id):
            current = self.ctx.registry.get_installed_app(app_id)
            if current is not None:
                self._raise_if_busy(current)
                raise ConflictingOperationError(app_id, current.status.value)
            self._check_domain_free(app_id, form)
            self.ctx.registry.create_app(
                AppRecord(
                    id=app_id,
                    status=AppStatus.INSTALLING,
                    version=definition.version,
                    **form.record_fields(),
                )
            )
        self.ctx.events.status_change(app_id, AppStatus.INSTALLING)
        command = InstallCommand(
            self.ctx,
            app_id,
            AppStatus.MISSING,
            form=form,
            definition=definition,
        )
        return self._submit(command)

    def start_app(self, app_id: str) -> Future[CommandResult]:
        """Start *app_id*."""
        return self._claim_and_submit(app_id, StartCommand)

    def stop_app(self, app_id: str) -> Future[CommandResult]:
        """Stop *app_id*."""
        return self._claim_and_submit(app_id, StopCommand)

    def restart_app(self, app_id: str) -> Future[CommandResult]:
        """Restart *app_id*."""
        return self._claim_and_submit(app_id, RestartCommand)

    def reset_app(self, app_id: str) -> Future[CommandResult]:
        """Wipe and reseed the data of *app_id*."""
        return self._claim_and_submit(app_id, ResetCommand)

    def uninstall_app(self, app_id: str) -> Future[CommandResult]:
        """Remove *app_id* completely."""
        return self._claim_and_submit(app_id, UninstallCommand)

    def update_app(self, app_id: str, *, backup: bool = False) -> Future[CommandResult]:
        """Update *app_id* to the catalog's current definition."""
        self._require_record(app_id)
        definition = self._catalog_definition(app_id)
        self._check_min_version(app_id, definition)
        return self._claim_and_submit(app_id, UpdateCommand, backup=backup)

    def backup_app(self, app_id: str) -> Future[CommandResult]:
        """Archive *app_id* into its backup directory."""
        return self._claim_and_submit(app_id, BackupCommand)

    def restore_app(self, app_id: str, filename: str) -> Future[CommandResult]:
        """Restore *app_id* from the backup *filename*."""
        self._validate_id(app_id)
        try:
            archive = self.ctx.backups.archive_path(app_id, filename)
        except BackupError as exc:
            raise BackupNotFoundError(app_id, filename) from exc
        if not archive.is_file():
            raise BackupNotFoundError(app_id, filename)

        with self.ctx.locks.app_lock(app_id):
            current = self.ctx.registry.get_installed_app(app_id)
            if current is None:
                previous = AppStatus.MISSING
                self.ctx.registry.create_app(AppRecord(id=app_id, status=AppStatus.RESTORING))
            else:
                self._raise_if_busy(current)
                previous = current.status
                self.ctx.registry.set_status(app_id, AppStatus.RESTORING)
        self.ctx.events.status_change(app_id, AppStatus.RESTORING)
        command = RestoreCommand(self.ctx, app_id, previous, archive=archive)
        return self._submit(command)

    def update_app_config(self, app_id: str, form: AppForm) -> Future[CommandResult]:
        """Validate *form*, regenerate ``app.env`` and persist the form."""
        record = self._require_record(app_id)
        self._raise_if_busy(record)
        definition = self.get_app_info(app_id)
        if definition is None:
            raise AppNotFoundError(app_id)
        self._validate_exposure(app_id, definition, form)
        command = UpdateConfigCommand(self.ctx, app_id, record.status, form=form)
        return self._pool.submit(command.run)

    def regenerate_env(self, app_id: str, form: AppForm | None = None) -> Future[CommandResult]:
        """Rewrite ``app.env`` for *app_id* without changing its status."""
        record = self._require_record(app_id)
        self._raise_if_busy(record)
        command = RegenerateEnvCommand(self.ctx, app_id, record.status, form=form)
        return self._pool.submit(command.run)

    def reconcile(self) -> list[str]:
        """Move every record stuck in an in-progress status to ``stopped``."""
        changed = self.ctx.registry.update_apps_by_status_not_in(
            TERMINAL_STATUSES,
            status=AppStatus.STOPPED,
        )
        for app_id in changed:
            logger.warning("App %s was left in progress; marking it stopped", app_id)
        return changed

    def start_all_apps(self, force_all: bool = False) -> Future[dict[str, CommandResult]]:
        """Reconcile stale statuses, then start running apps (or every app)."""
        return self._pool.submit(self._start_all, force_all)

    # Backups -------------------------------------------------------------
    def list_backups(
        self,
        app_id: str,
        *,
        page: int = 1,
        page_size: int = 10,
    ) -> dict[str, object]:
        """Return a page of backups for *app_id*."""
        self._validate_id(app_id)
        return self.ctx.backups.list_backups(app_id, page=page, page_size=page_size)

    def delete_backup(self, app_id: str, filename: str) -> None:
        """Delete a stored backup."""
        self._validate_id(app_id)
        try:
            self.ctx.backups.delete_backup(app_id, filename)
        except BackupError as exc:
            raise BackupNotFoundError(app_id, filename) from exc

    # Internals -----------------------------------------------------------
    def _start_all(self, force_all: bool) -> dict[str, CommandResult]:
        results: dict[str, CommandResult] = {}
        with self.ctx.locks.global_lock():
            self.reconcile()
            if force_all:
                selected = self.list_apps()
            else:
                selected = self.ctx.registry.get_apps_by_status(AppStatus.RUNNING)

            commands: list[LifecycleCommand] = []
            for record in selected:
                try:
                    previous = self._claim(record.id, AppStatus.STARTING)
                except (LifecycleError, LockTimeoutError, StateRegistryError) as exc:
                    logger.error("Unable to start app %s: %s", record.id, exc)
                    continue
                self.ctx.events.status_change(record.id, AppStatus.STARTING)
                commands.append(StartCommand(self.ctx, record.id, previous))

            with ThreadPoolExecutor(
                max_workers=self._start_concurrency,
                thread_name_prefix="dockhand-start-all",
            ) as pool:
                outcomes = pool.map(lambda command: command.run(), commands)
                for command, result in zip(commands, outcomes):
                    if not result.success:
                        result = self._downgrade_to_stopped(result)
                    results[command.app_id] = result
        return results

    def _downgrade_to_stopped(self, result: CommandResult) -> CommandResult:
        logger.error("Error starting app %s: %s", result.app_id, result.message)
        try:
            self.ctx.finish(result.app_id, AppStatus.STOPPED)
        except (LockTimeoutError, StateRegistryError):
            logger.exception("Unable to mark app %s stopped", result.app_id)
        return CommandResult(
            success=False,
            message=result.message,
            app_id=result.app_id,
            status=AppStatus.STOPPED,
            warnings=result.warnings,
            context=result.context,
        )

    def _claim_and_submit(
        self,
        app_id: str,
        command_cls: type[LifecycleCommand],
        **options: object,
    ) -> Future[CommandResult]:
        in_progress = command_cls.in_progress
        if in_progress is None:
            raise ValueError(f"{command_cls.__name__} does not claim the app.")
        previous = self._claim(app_id, in_progress)
        self.ctx.events.status_change(app_id, in_progress)
        command = command_cls(self.ctx, app_id, previous, **options)  # type: ignore[call-arg]
        return self._submit(command)

    def _submit(self, command: LifecycleCommand) -> Future[CommandResult]:
        """Queue a claimed *command*; release the claim if the pool refuses it."""
        try:
            return self._pool.submit(command.run)
        except RuntimeError:
            app_id = command.app_id
            logger.error("Worker pool refused %s for app %s", command.phase, app_id)
            if command.previous is AppStatus.MISSING:
                self.ctx.finish(app_id, None)
            else:
                self.ctx.finish(app_id, command.previous)
                self.ctx.events.status_change(app_id, command.previous)
            raise

    def _claim(self, app_id: str, in_progress: AppStatus) -> AppStatus:
        """Write *in_progress* for *app_id* and return the status it replaced."""
        self._validate_id(app_id)
        with self.ctx.locks.app_lock(app_id):
            record = self.ctx.registry.get_installed_app(app_id)
            if record is None:
                raise AppNotFoundError(app_id)
            self._raise_if_busy(record)
            self.ctx.registry.set_status(app_id, in_progress)
        return record.status

    def _require_record(self, app_id: str) -> AppRecord:
        self._validate_id(app_id)
        record = self.ctx.registry.get_installed_app(app_id)
        if record is None:
            raise AppNotFoundError(app_id)
        return record

    @staticmethod
    def _raise_if_busy(record: AppRecord) -> None:
        if record.status.in_progress:
            raise ConflictingOperationError(record.id, record.status.value)

    @staticmethod
    def _validate_id(app_id: str) -> None:
        try:
            validate_app_id(app_id)
        except LayoutError as exc:
            raise AppNotFoundError(app_id) from exc

    def _catalog_definition(self, app_id: str) -> AppDefinition:
        if not self.ctx.catalog.has_app(app_id):
            repo_id = self.ctx.config.catalog.repo_id
            raise AppNotFoundError(app_id, f"App {app_id} not found in catalog {repo_id}")
        try:
            return self.ctx.catalog.load_definition(app_id)
        except DefinitionError as exc:
            raise InvalidConfigError(app_id, str(exc)) from exc

    def _check_min_version(self, app_id: str, definition: AppDefinition) -> None:
        required = definition.min_host_version
        if not required:
            return
        current = self.ctx.config.host_version
        try:
            too_old = Version(current) < Version(required)
        except InvalidVersion as exc:
            raise InvalidConfigError(app_id, f"unparseable version: {exc}") from exc
        if too_old:
            raise MinVersionError(app_id, required, current)

    def _validate_exposure(self, app_id: str, definition: AppDefinition, form: AppForm) -> None:
        if form.exposed and not form.domain:
            raise DomainRequiredError(app_id)
        if form.exposed and form.domain and not is_valid_fqdn(form.domain):
            raise InvalidDomainError(form.domain)
        if form.exposed and not definition.exposable:
            raise NotExposableError(app_id)
        if definition.force_expose and not form.exposed:
            raise ForceExposedError(app_id)
        self._check_domain_free(app_id, form)

    def _check_domain_free(self, app_id: str, form: AppForm) -> None:
        if not (form.exposed and form.domain):
            return
        for other in self.ctx.registry.get_apps_by_domain(form.domain, exclude_id=app_id):
            if other.exposed:
                raise DomainInUseError(form.domain, other.id)


__all__ = ["AppLifecycleService", "is_valid_fqdn"]
