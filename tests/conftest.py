"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import json
import os
import shutil
from collections.abc import Callable, Iterator, Mapping, Sequence
from pathlib import Path

import pytest

from dockhand.config import AppConfig, load_config
from dockhand.executor import CommandRunner, ProcessResult
from dockhand.lifecycle import AppLifecycleService

requires_tar = pytest.mark.skipif(shutil.which("tar") is None, reason="tar is not installed")


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


Responder = Callable[[tuple[str, ...]], ProcessResult | None]


class FakeRunner(CommandRunner):
    """Record compose and git invocations; run everything else for real.

    Responders are consulted in order; the first one returning a result wins.
    Unmatched compose/git calls succeed with empty output.
    """

    def __init__(self, *, fake_prefixes: Sequence[str] = ("docker", "git")) -> None:
        super().__init__()
        self.calls: list[tuple[str, ...]] = []
        self.responders: list[Responder] = []
        self._fake_prefixes = tuple(fake_prefixes)

    def fail_when(self, *needles: str, stderr: str = "boom", returncode: int = 1) -> None:
        """Fail every faked call whose argv contains all *needles*."""

        def responder(argv: tuple[str, ...]) -> ProcessResult | None:
            if all(needle in argv for needle in needles):
                return ProcessResult(argv, returncode, "", stderr)
            return None

        self.responders.append(responder)

    def respond(self, responder: Responder) -> None:
        """Register a custom responder."""
        self.responders.append(responder)

    def compose_calls(self, app_id: str | None = None) -> list[tuple[str, ...]]:
        """Return recorded compose invocations, optionally for one project."""
        calls = [call for call in self.calls if call[:2] == ("docker", "compose")]
        if app_id is None:
            return calls
        return [call for call in calls if _project(call) == app_id]

    def subcommands(self, app_id: str | None = None) -> list[str]:
        """Return the compose subcommand verbs in call order."""
        verbs = []
        for call in self.compose_calls(app_id):
            index = _last_file_index(call)
            verbs.append(call[index + 2])
        return verbs

    def run(
        self,
        args: Sequence[str | Path],
        *,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
    ) -> ProcessResult:
        argv = tuple(str(part) for part in args)
        if not argv or argv[0] not in self._fake_prefixes:
            return super().run(args, cwd=cwd, env=env, timeout=timeout)
        self.calls.append(argv)
        for responder in self.responders:
            result = responder(argv)
            if result is not None:
                return result
        return ProcessResult(argv, 0, "", "")


def _project(call: tuple[str, ...]) -> str | None:
    if "--project-name" not in call:
        return None
    return call[call.index("--project-name") + 1]


def _last_file_index(call: tuple[str, ...]) -> int:
    index = 0
    for position, part in enumerate(call):
        if part in {"-f", "--file"}:
            index = position
    return index


def write_catalog_app(
    root: Path,
    app_id: str,
    *,
    repo_id: str = "default",
    definition: Mapping[str, object] | None = None,
    seed: Mapping[str, str] | None = None,
    extra_files: Mapping[str, str] | None = None,
) -> Path:
    """Create ``repos/<repo_id>/apps/<app_id>`` with a definition and compose file."""
    apps_dir = root / "repos" / repo_id / "apps"
    app_dir = apps_dir / app_id
    app_dir.mkdir(parents=True, exist_ok=True)
    payload: dict[str, object] = {
        "id": app_id,
        "name": app_id.title(),
        "port": 8080,
        "tipi_version": 1,
        "version": "1.0.0",
        "exposable": True,
        "available": True,
        "form_fields": [],
    }
    payload.update(definition or {})
    (app_dir / "config.json").write_text(json.dumps(payload), encoding="utf-8")
    (app_dir / "docker-compose.yml").write_text(
        f"services:\n  {app_id}:\n    image: example/{app_id}\n",
        encoding="utf-8",
    )
    common = apps_dir / "docker-compose.common.yml"
    if not common.exists():
        common.write_text("networks:\n  dockhand: {}\n", encoding="utf-8")
    for relative, content in (seed or {}).items():
        target = app_dir / "data" / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    for relative, content in (extra_files or {}).items():
        target = app_dir / relative
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return app_dir


def make_config(tmp_path: Path, **overrides: object) -> AppConfig:
    """Return a configuration rooted entirely under *tmp_path*."""
    values: dict[str, object] = {
        "root_dir": str(tmp_path / "root"),
        "state_dir": str(tmp_path / "state"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 2.0,
        "host_version": "1.0.0",
        "workers": {"max_workers": 4, "start_concurrency": 2},
    }
    values.update(overrides)
    return load_config(tmp_path / "missing-config.yml", env={}, overrides=values)


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    """Configuration using temporary directories."""
    return make_config(tmp_path)


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Runner that fakes docker and git while running tar for real."""
    return FakeRunner()


@pytest.fixture
def service(config: AppConfig, fake_runner: FakeRunner) -> Iterator[AppLifecycleService]:
    """Lifecycle service wired to the fake runner."""
    svc = AppLifecycleService.from_config(config, runner=fake_runner)
    try:
        yield svc
    finally:
        svc.shutdown(wait=True)
