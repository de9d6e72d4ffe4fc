"""Tests for the compose runtime provider."""
from __future__ import annotations

from pathlib import Path

import pytest
from conftest import FakeRunner

from dockhand.layout import FilesystemLayout
from dockhand.providers.compose import UP_ARGS, ComposeError, ComposeProvider


@pytest.fixture
def layout(tmp_path: Path) -> FilesystemLayout:
    return FilesystemLayout(
        root_dir=tmp_path / "root",
        storage_dir=tmp_path / "storage",
        repo_id="default",
        backups_root=tmp_path / "backups",
    )


def _installed(layout: FilesystemLayout, app_id: str, *, arm: bool = False) -> None:
    app_dir = layout.paths(app_id).app_dir
    app_dir.mkdir(parents=True)
    (app_dir / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")
    if arm:
        (app_dir / "docker-compose.arm64.yml").write_text("services: {}\n", encoding="utf-8")


def test_build_args_order(layout: FilesystemLayout) -> None:
    """Env file, project name and compose files precede the subcommand."""
    _installed(layout, "gitea")
    provider = ComposeProvider(layout=layout, runner=FakeRunner())
    paths = layout.paths("gitea")

    args = provider.build_args("gitea", ("ps",))

    assert args == [
        "docker",
        "compose",
        "--env-file",
        str(paths.env_file),
        "--project-name",
        "gitea",
        "-f",
        str(paths.app_dir / "docker-compose.yml"),
        "-f",
        str(layout.common_compose_file),
        "ps",
    ]


def test_user_overrides_are_appended(layout: FilesystemLayout) -> None:
    """Operator env and compose overrides are included when present."""
    _installed(layout, "gitea")
    paths = layout.paths("gitea")
    paths.user_config_dir.mkdir(parents=True)
    paths.user_env_file.write_text("EXTRA=1\n", encoding="utf-8")
    paths.user_compose_file.write_text("services: {}\n", encoding="utf-8")
    provider = ComposeProvider(layout=layout, runner=FakeRunner())

    args = provider.build_args("gitea", ("ps",))

    assert args[2:6] == ["--env-file", str(paths.env_file), "--env-file", str(paths.user_env_file)]
    assert args[-3:] == ["--file", str(paths.user_compose_file), "ps"]


@pytest.mark.parametrize(("architecture", "expected"), [
    ("arm64", "docker-compose.arm64.yml"),
    ("amd64", "docker-compose.yml"),
])
def test_arm64_compose_file_selected(
    layout: FilesystemLayout,
    architecture: str,
    expected: str,
) -> None:
    """The arm64 variant is used only on arm64 hosts."""
    _installed(layout, "gitea", arm=True)
    provider = ComposeProvider(layout=layout, runner=FakeRunner(), architecture=architecture)

    args = provider.build_args("gitea", ("ps",))

    assert args[args.index("-f") + 1].endswith(expected)


def test_up_runs_with_configured_command(layout: FilesystemLayout) -> None:
    """Shortcuts use the configured compose command and fixed arguments."""
    _installed(layout, "gitea")
    runner = FakeRunner()
    provider = ComposeProvider(layout=layout, runner=runner)

    provider.up("gitea")

    assert runner.subcommands("gitea") == ["up"]
    assert runner.calls[0][-len(UP_ARGS):] == UP_ARGS


def test_failure_raises_compose_error(layout: FilesystemLayout) -> None:
    """Failed invocations raise with the runtime's message."""
    _installed(layout, "gitea")
    runner = FakeRunner()
    runner.fail_when("up", stderr="Error: Conflict. The container name is already in use")
    provider = ComposeProvider(layout=layout, runner=runner)

    with pytest.raises(ComposeError) as excinfo:
        provider.up("gitea")

    assert excinfo.value.is_conflict is True
    assert "already in use" in str(excinfo.value)


def test_unchecked_run_returns_result(layout: FilesystemLayout) -> None:
    """``check=False`` hands the failed result back to the caller."""
    _installed(layout, "gitea")
    runner = FakeRunner()
    runner.fail_when("pull", stderr="network down")
    provider = ComposeProvider(layout=layout, runner=runner)

    result = provider.run("gitea", ("pull",), check=False)

    assert result.success is False
    assert "network down" in result.message
