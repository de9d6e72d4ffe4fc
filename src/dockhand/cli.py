"""Typer-powered command line interface for ``dockhand``.

Every lifecycle command validates its preconditions synchronously, schedules
the work on the lifecycle service's worker pool and waits for the outcome so
that the exit code reflects the result.
"""
from __future__ import annotations

import json
import textwrap
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import Future
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .events import AppEvent
from .exit_codes import ExitCode
from .lifecycle import AppLifecycleService, CommandResult, LifecycleError
from .locking import LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .providers import CatalogError
from .state import AppForm, AppRecord, StateRegistryError
from .state.models import FormValue

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    "-c",
    help="Path to an alternate dockhand configuration file.",
)
JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit output as JSON instead of a table.",
)
SET_OPTION = typer.Option(
    None,
    "--set",
    "-s",
    help="Form value as KEY=VALUE. Repeat for multiple values.",
)
EXPOSE_OPTION = typer.Option(
    False,
    "--expose",
    help="Expose the app on --domain through the reverse proxy.",
)
DOMAIN_OPTION = typer.Option(
    None,
    "--domain",
    help="Fully-qualified domain used when the app is exposed.",
)
EXPOSE_LOCAL_OPTION = typer.Option(
    False,
    "--expose-local",
    help="Expose the app on the local network name.",
)
OPEN_PORT_OPTION = typer.Option(
    True,
    "--open-port/--no-open-port",
    help="Publish the app's port on the host.",
)
GUEST_DASHBOARD_OPTION = typer.Option(
    False,
    "--guest-dashboard",
    help="Show the app on the guest dashboard.",
)

_ERROR_EXIT_CODES: tuple[tuple[type[Exception], ExitCode], ...] = (
    (LifecycleError, ExitCode.VALIDATION),
    (LockTimeoutError, ExitCode.ENVIRONMENT),
    (StateRegistryError, ExitCode.ENVIRONMENT),
    (CatalogError, ExitCode.PROVIDER),
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Dockhand self-hosted app manager.

        Installs apps from a catalog repository and drives their containers
        through Docker Compose.
        """
    ).strip(),
)
apps_app = typer.Typer(help="Install and operate catalog apps.")
backups_app = typer.Typer(help="Create, list, restore and delete app backups.")
repo_app = typer.Typer(help="Manage the app catalog repository.")
config_app = typer.Typer(help="Inspect the effective configuration.")

app.add_typer(apps_app, name="app")
app.add_typer(backups_app, name="backup")
app.add_typer(repo_app, name="repo")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    service: AppLifecycleService
    logger: StructuredLogger


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.ENVIRONMENT) from exc

    logger = StructuredLogger(config.logs_dir)
    service = AppLifecycleService.from_config(config, oplog=logger)
    service.ctx.events.subscribe(_print_event)
    ctx.call_on_close(service.shutdown)
    runtime = RuntimeContext(config=config, service=service, logger=logger)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the dockhand version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"dockhand {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


# Helpers -----------------------------------------------------------------
def _print_event(event: AppEvent) -> None:
    style = "red" if event.is_error else "dim"
    status = f" ({event.app_status.value})" if event.app_status is not None else ""
    console.print(f"[{style}]{event.app_id}: {event.event}{status}[/{style}]")


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _exit_code_for(exc: Exception) -> ExitCode:
    for error_type, code in _ERROR_EXIT_CODES:
        if isinstance(exc, error_type):
            return code
    return ExitCode.PROVIDER


def _parse_form_values(pairs: Sequence[str] | None) -> dict[str, FormValue]:
    values: dict[str, FormValue] = {}
    for pair in pairs or ():
        key, sep, value = pair.partition("=")
        if not sep or not key.strip():
            raise typer.BadParameter(f"Expected KEY=VALUE, got {pair!r}.", param_hint="--set")
        values[key.strip()] = value
    return values


def _build_form(
    values: Sequence[str] | None,
    *,
    expose: bool,
    domain: str | None,
    expose_local: bool,
    open_port: bool,
    guest_dashboard: bool,
) -> AppForm:
    return AppForm(
        values=_parse_form_values(values),
        exposed=expose,
        exposed_local=expose_local,
        open_port=open_port,
        domain=domain,
        is_visible_on_guest_dashboard=guest_dashboard,
    )


def _run_lifecycle(
    runtime: RuntimeContext,
    name: str,
    app_id: str,
    submit: Callable[[], Future[CommandResult]],
    *,
    args: Mapping[str, object] | None = None,
) -> CommandResult:
    """Schedule a lifecycle command, wait for it and report the outcome."""
    with runtime.logger.operation(
        f"app {name}",
        args={"app": app_id, **dict(args or {})},
        target={"kind": "app", "name": app_id},
    ) as op:
        try:
            result = submit().result()
        except (LifecycleError, LockTimeoutError, StateRegistryError) as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))

        for warning in result.warnings:
            console.print(f"[yellow]{warning}[/yellow]")
        if not result.success:
            _command_error(op, result.message, rc=ExitCode.PROVIDER)
        console.print(f"[green]{result.message}[/green]")
        op.success(result.message, changed=1, context=result.to_dict())
        return result


def _record_rows(record: AppRecord) -> list[tuple[str, str]]:
    data = record.to_dict()
    rows: list[tuple[str, str]] = []
    for key, value in data.items():
        if value in (None, "", {}):
            continue
        if isinstance(value, dict):
            rendered = json.dumps(value, indent=2, sort_keys=True)
        else:
            rendered = str(value)
        rows.append((key, rendered))
    return rows


# App commands --------------------------------------------------------------
@apps_app.command("list")
def app_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List installed apps."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "app list",
        args={"json": json_output},
        target={"kind": "app", "scope": "registry"},
    ) as op:
        records = runtime.service.list_apps()
        if json_output:
            console.print_json(data={"apps": [record.to_dict() for record in records]})
            op.success("Reported app list as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("App", style="bold")
        table.add_column("Status")
        table.add_column("Version")
        table.add_column("Domain")

        if not records:
            table.add_row("(none)", "", "", "")
        for record in records:
            table.add_row(
                record.id,
                record.status.value,
                str(record.version),
                record.domain if record.exposed and record.domain else "",
            )
        console.print(table)
        op.success("Reported app list.", changed=0)


@apps_app.command("show")
def app_show(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Identifier of the app to display."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the record, definition and update info for an app."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "app show",
        args={"app": app_id, "json": json_output},
        target={"kind": "app", "name": app_id},
    ) as op:
        record = runtime.service.get_app(app_id)
        definition = runtime.service.get_app_info(app_id)
        if record is None and definition is None:
            _command_error(op, f"App {app_id} not found.")
        update_info = runtime.service.get_update_info(app_id)

        if json_output:
            console.print_json(
                data={
                    "app": record.to_dict() if record is not None else None,
                    "info": {
                        "name": definition.name,
                        "version": definition.version,
                        "docker_version": definition.docker_version,
                        "port": definition.port,
                        "exposable": definition.exposable,
                    }
                    if definition is not None
                    else None,
                    "update_info": update_info,
                }
            )
            op.success("Displayed app details as JSON.", changed=0)
            return

        table = Table(show_header=False)
        if definition is not None:
            table.add_row("Name", definition.name)
            table.add_row("Port", str(definition.port))
        if record is not None:
            for key, value in _record_rows(record):
                table.add_row(key, value)
        else:
            table.add_row("status", "missing")
        table.add_row("latest_version", str(update_info["latest_version"]))
        table.add_row("latest_docker_version", str(update_info["latest_docker_version"]))
        console.print(table)
        op.success("Displayed app details.", changed=0)


@apps_app.command("install")
def app_install(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Catalog identifier of the app."),
    values: list[str] | None = SET_OPTION,
    expose: bool = EXPOSE_OPTION,
    domain: str | None = DOMAIN_OPTION,
    expose_local: bool = EXPOSE_LOCAL_OPTION,
    open_port: bool = OPEN_PORT_OPTION,
    guest_dashboard: bool = GUEST_DASHBOARD_OPTION,
) -> None:
    """Install an app from the catalog and start it."""
    runtime = _get_runtime(ctx)
    form = _build_form(
        values,
        expose=expose,
        domain=domain,
        expose_local=expose_local,
        open_port=open_port,
        guest_dashboard=guest_dashboard,
    )
    _run_lifecycle(
        runtime,
        "install",
        app_id,
        lambda: runtime.service.install_app(app_id, form),
        args={"exposed": expose, "domain": domain},
    )


@apps_app.command("configure")
def app_configure(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Identifier of the installed app."),
    values: list[str] | None = SET_OPTION,
    expose: bool = EXPOSE_OPTION,
    domain: str | None = DOMAIN_OPTION,
    expose_local: bool = EXPOSE_LOCAL_OPTION,
    open_port: bool = OPEN_PORT_OPTION,
    guest_dashboard: bool = GUEST_DASHBOARD_OPTION,
) -> None:
    """Replace the stored form of an installed app and regenerate its env file."""
    runtime = _get_runtime(ctx)
    form = _build_form(
        values,
        expose=expose,
        domain=domain,
        expose_local=expose_local,
        open_port=open_port,
        guest_dashboard=guest_dashboard,
    )
    _run_lifecycle(
        runtime,
        "configure",
        app_id,
        lambda: runtime.service.update_app_config(app_id, form),
        args={"exposed": expose, "domain": domain},
    )


@apps_app.command("start")
def app_start(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Identifier of the app to start."),
) -> None:
    """Start an installed app."""
    runtime = _get_runtime(ctx)
    _run_lifecycle(runtime, "start", app_id, lambda: runtime.service.start_app(app_id))


@apps_app.command("stop")
def app_stop(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Identifier of the app to stop."),
) -> None:
    """Stop an installed app."""
    runtime = _get_runtime(ctx)
    _run_lifecycle(runtime, "stop", app_id, lambda: runtime.service.stop_app(app_id))


@apps_app.command("restart")
def app_restart(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Identifier of the app to restart."),
) -> None:
    """Stop then start an installed app."""
    runtime = _get_runtime(ctx)
    _run_lifecycle(runtime, "restart", app_id, lambda: runtime.service.restart_app(app_id))


@apps_app.command("reset")
def app_reset(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Identifier of the app to reset."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Delete an app's data and start it from its seed data."""
    runtime = _get_runtime(ctx)
    if not yes:
        typer.confirm(f"Delete all data of app {app_id}?", abort=True)
    _run_lifecycle(runtime, "reset", app_id, lambda: runtime.service.reset_app(app_id))


@apps_app.command("uninstall")
def app_uninstall(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Identifier of the app to uninstall."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Remove an app, its data and its images."""
    runtime = _get_runtime(ctx)
    if not yes:
        typer.confirm(f"Uninstall app {app_id} and delete its data?", abort=True)
    _run_lifecycle(runtime, "uninstall", app_id, lambda: runtime.service.uninstall_app(app_id))


@apps_app.command("update")
def app_update(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Identifier of the app to update."),
    backup: bool = typer.Option(
        False,
        "--backup",
        help="Archive the app before replacing its files.",
    ),
) -> None:
    """Update an app to the catalog's current version."""
    runtime = _get_runtime(ctx)
    _run_lifecycle(
        runtime,
        "update",
        app_id,
        lambda: runtime.service.update_app(app_id, backup=backup),
        args={"backup": backup},
    )


@apps_app.command("regenerate-env")
def app_regenerate_env(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Identifier of the app."),
) -> None:
    """Rewrite an app's env file from its stored form."""
    runtime = _get_runtime(ctx)
    _run_lifecycle(
        runtime,
        "regenerate-env",
        app_id,
        lambda: runtime.service.regenerate_env(app_id),
    )


@apps_app.command("start-all")
def app_start_all(
    ctx: typer.Context,
    force_all: bool = typer.Option(
        False,
        "--all",
        help="Start every installed app, not only the ones marked running.",
    ),
) -> None:
    """Reconcile interrupted operations and start apps after a host restart."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "app start-all",
        args={"all": force_all},
        target={"kind": "app", "scope": "all"},
    ) as op:
        try:
            results = runtime.service.start_all_apps(force_all).result()
        except (LockTimeoutError, StateRegistryError) as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))

        failed = [app_id for app_id, result in results.items() if not result.success]
        for app_id, result in results.items():
            style = "green" if result.success else "red"
            console.print(f"[{style}]{app_id}: {result.message}[/{style}]")
        if failed:
            op.warning(
                f"{len(failed)} app(s) failed to start.",
                errors=failed,
                changed=len(results) - len(failed),
            )
            raise typer.Exit(code=ExitCode.PROVIDER)
        console.print(f"[green]Started {len(results)} app(s).[/green]")
        op.success("Started apps.", changed=len(results))


# Backup commands -----------------------------------------------------------
@backups_app.command("create")
def backup_create(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Identifier of the app to back up."),
) -> None:
    """Archive an app's files and data."""
    runtime = _get_runtime(ctx)
    result = _run_lifecycle(runtime, "backup", app_id, lambda: runtime.service.backup_app(app_id))
    filename = result.context.get("filename")
    if filename:
        console.print(f"Backup written to {result.context.get('path', filename)}")


@backups_app.command("list")
def backup_list(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Identifier of the app."),
    page: int = typer.Option(1, "--page", min=1, help="Page number, starting at 1."),
    page_size: int = typer.Option(10, "--page-size", min=1, help="Entries per page."),
    json_output: bool = JSON_OPTION,
) -> None:
    """List stored backups for an app, newest first."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup list",
        args={"app": app_id, "page": page, "page_size": page_size, "json": json_output},
        target={"kind": "backup", "name": app_id},
    ) as op:
        try:
            listing = runtime.service.list_backups(app_id, page=page, page_size=page_size)
        except LifecycleError as exc:
            _command_error(op, str(exc))
        entries = [info.to_dict() for info in listing["data"]]  # type: ignore[attr-defined]

        if json_output:
            console.print_json(data={"data": entries, "total": listing["total"]})
            op.success("Reported backups as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Filename", style="bold")
        table.add_column("Size")
        table.add_column("Created (ms)")
        if not entries:
            table.add_row("(none)", "", "")
        for entry in entries:
            table.add_row(str(entry["filename"]), str(entry["size"]), str(entry["created_at_ms"]))
        console.print(table)
        console.print(f"Total: {listing['total']}")
        op.success("Reported backups.", changed=0)


@backups_app.command("restore")
def backup_restore(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Identifier of the app."),
    filename: str = typer.Argument(..., help="Backup archive file name."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt."),
) -> None:
    """Replace an app's files and data with the contents of a backup."""
    runtime = _get_runtime(ctx)
    if not yes:
        typer.confirm(f"Replace app {app_id} with backup {filename}?", abort=True)
    _run_lifecycle(
        runtime,
        "restore",
        app_id,
        lambda: runtime.service.restore_app(app_id, filename),
        args={"filename": filename},
    )


@backups_app.command("delete")
def backup_delete(
    ctx: typer.Context,
    app_id: str = typer.Argument(..., help="Identifier of the app."),
    filename: str = typer.Argument(..., help="Backup archive file name."),
) -> None:
    """Delete a stored backup."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "backup delete",
        args={"app": app_id, "filename": filename},
        target={"kind": "backup", "name": app_id},
    ) as op:
        try:
            runtime.service.delete_backup(app_id, filename)
        except LifecycleError as exc:
            _command_error(op, str(exc))
        console.print(f"[green]Deleted backup {filename}.[/green]")
        op.success("Deleted backup.", changed=1)


# Repository commands -------------------------------------------------------
@repo_app.command("clone")
def repo_clone(
    ctx: typer.Context,
    url: str | None = typer.Argument(
        None,
        help="Repository URL, optionally suffixed with #branch. Defaults to catalog.repo_url.",
    ),
) -> None:
    """Clone the catalog repository if it is not present."""
    runtime = _get_runtime(ctx)
    source = url or runtime.config.catalog.repo_url
    with runtime.logger.operation(
        "repo clone",
        args={"url": source},
        target={"kind": "catalog", "name": runtime.config.catalog.repo_id},
    ) as op:
        if not source:
            _command_error(op, "No repository URL given and catalog.repo_url is empty.")
        try:
            with runtime.service.ctx.locks.global_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                cloned = runtime.service.ctx.catalog.clone(source)
        except (CatalogError, LockTimeoutError) as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))
        if cloned:
            console.print(f"[green]Cloned catalog from {source}.[/green]")
            op.success("Catalog cloned.", changed=1)
        else:
            console.print("Catalog already present.")
            op.success("Catalog already present.", changed=0)


@repo_app.command("pull")
def repo_pull(ctx: typer.Context) -> None:
    """Hard-reset the catalog repository to its remote branch."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "repo pull",
        args={},
        target={"kind": "catalog", "name": runtime.config.catalog.repo_id},
    ) as op:
        try:
            with runtime.service.ctx.locks.global_lock() as handle:
                op.set_lock_wait_ms(handle.wait_ms)
                branch = runtime.service.ctx.catalog.pull()
        except (CatalogError, LockTimeoutError) as exc:
            _command_error(op, str(exc), rc=_exit_code_for(exc))
        console.print(f"[green]Catalog updated from origin/{branch}.[/green]")
        op.success("Catalog pulled.", changed=1, context={"branch": branch})


@repo_app.command("list")
def repo_list(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List apps available in the catalog."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "repo list",
        args={"json": json_output},
        target={"kind": "catalog", "name": runtime.config.catalog.repo_id},
    ) as op:
        definitions = runtime.service.ctx.catalog.available_definitions()
        rows = [
            {
                "id": definition.id,
                "name": definition.name,
                "version": definition.version,
                "docker_version": definition.docker_version,
                "short_desc": definition.short_desc,
            }
            for definition in definitions
        ]
        if json_output:
            console.print_json(data={"apps": rows})
            op.success("Reported catalog as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("App", style="bold")
        table.add_column("Name")
        table.add_column("Version")
        table.add_column("Description")
        if not rows:
            table.add_row("(none)", "", "", "")
        for row in rows:
            table.add_row(
                str(row["id"]),
                str(row["name"]),
                f"{row['docker_version']} ({row['version']})",
                str(row["short_desc"] or ""),
            )
        console.print(table)
        op.success("Reported catalog.", changed=0)


# Config commands -----------------------------------------------------------
@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")

        for key, value in data.items():
            if isinstance(value, dict):
                rendered = json.dumps(value, indent=2, sort_keys=True)
            else:
                rendered = str(value)
            table.add_row(key, rendered)

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
