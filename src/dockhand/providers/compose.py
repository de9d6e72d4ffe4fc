"""Container runtime provider driving ``docker compose`` for installed apps."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field

from ..executor import CommandError, CommandRunner, ProcessResult
from ..layout import ARM64_COMPOSE_FILE, COMPOSE_FILE, FilesystemLayout

logger = logging.getLogger(__name__)

UP_ARGS = ("up", "--detach", "--force-recreate", "--remove-orphans", "--pull", "always")
STOP_ARGS = ("rm", "--force", "--stop")
UNINSTALL_ARGS = ("down", "--remove-orphans", "--volumes", "--rmi", "all")
RESET_ARGS = ("down", "--remove-orphans", "--volumes")
CLEANUP_ARGS = ("down", "--rmi", "all", "--remove-orphans")
PULL_ARGS = ("pull",)


class ComposeError(CommandError):
    """Raised when a compose invocation fails."""

    @property
    def is_conflict(self) -> bool:
        """Return ``True`` when the runtime reported a resource-in-use conflict."""
        return "conflict" in str(self).lower()


@dataclass(slots=True)
class ComposeProvider:
    """Build and run compose invocations for an app."""

    layout: FilesystemLayout
    runner: CommandRunner
    command: Sequence[str] = ("docker", "compose")
    architecture: str = "amd64"
    timeout: float | None = field(default=None)

    def build_args(self, app_id: str, subcommand: Sequence[str]) -> list[str]:
        """Return the full argv for running *subcommand* against *app_id*."""
        paths = self.layout.paths(app_id)
        args: list[str] = [*self.command, "--env-file", str(paths.env_file)]
        if paths.user_env_file.is_file():
            args.extend(["--env-file", str(paths.user_env_file)])
        args.extend(["--project-name", app_id])

        compose_file = paths.app_dir / COMPOSE_FILE
        arm_file = paths.app_dir / ARM64_COMPOSE_FILE
        if self.architecture == "arm64" and arm_file.is_file():
            compose_file = arm_file
        args.extend(["-f", str(compose_file)])
        args.extend(["-f", str(self.layout.common_compose_file)])
        if paths.user_compose_file.is_file():
            args.extend(["--file", str(paths.user_compose_file)])
        args.extend(subcommand)
        return args

    def run(self, app_id: str, subcommand: Sequence[str], *, check: bool = True) -> ProcessResult:
        """Run *subcommand* for *app_id*; raise :class:`ComposeError` on failure when *check*."""
        args = self.build_args(app_id, subcommand)
        label = " ".join(subcommand)
        logger.info("Running compose %s for %s", label, app_id)
        result = self.runner.run(args, timeout=self.timeout)
        if check and not result.success:
            raise ComposeError(f"compose {label} failed for {app_id}: {result.message}", result)
        return result

    # Lifecycle shortcuts ------------------------------------------------
    def up(self, app_id: str) -> ProcessResult:
        """Create and start the app's containers."""
        return self.run(app_id, UP_ARGS)

    def stop(self, app_id: str) -> ProcessResult:
        """Stop and remove the app's containers."""
        return self.run(app_id, STOP_ARGS)

    def down_for_uninstall(self, app_id: str) -> ProcessResult:
        """Remove containers, volumes and images."""
        return self.run(app_id, UNINSTALL_ARGS)

    def down_for_reset(self, app_id: str) -> ProcessResult:
        """Remove containers and volumes, keeping images."""
        return self.run(app_id, RESET_ARGS)

    def cleanup_images(self, app_id: str) -> ProcessResult:
        """Remove containers and images of the currently installed definition."""
        return self.run(app_id, CLEANUP_ARGS)

    def pull(self, app_id: str) -> ProcessResult:
        """Pull the app's images."""
        return self.run(app_id, PULL_ARGS)


__all__ = [
    "CLEANUP_ARGS",
    "ComposeError",
    "ComposeProvider",
    "PULL_ARGS",
    "RESET_ARGS",
    "STOP_ARGS",
    "UNINSTALL_ARGS",
    "UP_ARGS",
]
