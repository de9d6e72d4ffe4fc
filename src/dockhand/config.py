"""Layered configuration for dockhand.

Sources, each overriding the one before it:

1. ``DEFAULTS`` below.
2. A YAML file: ``--config-file``, then ``$DOCKHAND_CONFIG_FILE``, then
   ``/etc/dockhand/config.yml``.
3. ``DOCKHAND_*`` environment variables. A double underscore descends into a
   section (``DOCKHAND_COMPOSE__TIMEOUT=120``) and values go through
   ``yaml.safe_load`` so numbers and booleans arrive typed.
4. Overrides passed in by the CLI.

The result is a tree of frozen dataclasses that callers pass around
explicitly.
"""
from __future__ import annotations

import copy
import os
import shlex
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

import yaml

from . import __version__

ENV_PREFIX = "DOCKHAND_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class CatalogConfig:
    """Location of the app catalog repository."""

    repo_id: str = "default"
    repo_url: str = ""
    git_bin: str = "git"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"repo_id": self.repo_id, "repo_url": self.repo_url, "git_bin": self.git_bin}


@dataclass(frozen=True)
class ComposeConfig:
    """Container runtime invocation settings."""

    command: tuple[str, ...] = ("docker", "compose")
    failure_marker: str = "Command failed:"
    timeout: float | None = 600.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "command": shlex.join(self.command),
            "failure_marker": self.failure_marker,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class WorkersConfig:
    """Sizing of the lifecycle worker pool."""

    max_workers: int = 4
    start_concurrency: int = 1

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"max_workers": self.max_workers, "start_concurrency": self.start_concurrency}


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and compression defaults."""

    root: Path
    compression_level: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"root": str(self.root), "compression_level": self.compression_level}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for dockhand."""

    config_file: Path
    root_dir: Path
    storage_dir: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    architecture: str
    host_version: str
    random_length: int
    catalog: CatalogConfig
    compose: ComposeConfig
    workers: WorkersConfig
    backups: BackupConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "root_dir": str(self.root_dir),
            "storage_dir": str(self.storage_dir),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "architecture": self.architecture,
            "host_version": self.host_version,
            "random_length": self.random_length,
            "catalog": self.catalog.to_dict(),
            "compose": self.compose.to_dict(),
            "workers": self.workers.to_dict(),
            "backups": self.backups.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/dockhand/config.yml",
    "root_dir": "/opt/dockhand",
    "storage_dir": None,  # falls back to root_dir
    "state_dir": "/var/lib/dockhand",
    "registry_dir": None,  # falls back to state_dir/registry
    "logs_dir": "/var/log/dockhand",
    "runtime_dir": "/run/dockhand",
    "templates_dir": "/etc/dockhand/templates",
    "lock_timeout": 30.0,
    "architecture": "amd64",
    "host_version": __version__,
    "random_length": 32,
    "catalog": {"repo_id": "default", "repo_url": "", "git_bin": "git"},
    "compose": {
        "command": "docker compose",
        "failure_marker": "Command failed:",
        "timeout": 600.0,
    },
    "workers": {"max_workers": 4, "start_concurrency": 1},
    "backups": {"root": None, "compression_level": None},  # root falls back to root_dir/backups
}

ARCHITECTURES = frozenset({"amd64", "arm64", "arm"})
SECTIONS: dict[str, frozenset[str]] = {
    name: frozenset(value)
    for name, value in DEFAULTS.items()
    if isinstance(value, dict)
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Merge defaults, file, environment and overrides into an :class:`AppConfig`."""
    environ = dict(os.environ if env is None else env)
    path = Path(config_file or environ.get(CONFIG_ENV_VAR) or str(DEFAULTS["config_file"]))

    merged: dict[str, object] = copy.deepcopy(DEFAULTS)
    for layer in (_file_layer(path), _env_layer(environ), dict(overrides or {})):
        merged = _merge(merged, layer)
    merged["config_file"] = str(path)

    _check_keys(merged)
    return _resolve(merged)


# Sources --------------------------------------------------------------------


def _file_layer(path: Path) -> dict[str, object]:
    if not path.is_file():
        return {}
    try:
        document = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed to read config file {path}: {exc}") from exc
    if document is None:
        return {}
    if not isinstance(document, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _mapping(document, str(path))


def _env_layer(environ: Mapping[str, str]) -> dict[str, object]:
    layer: dict[str, object] = {}
    for name, raw in environ.items():
        if not name.startswith(ENV_PREFIX) or name == CONFIG_ENV_VAR:
            continue
        keys = [part.lower() for part in name[len(ENV_PREFIX):].split("__") if part]
        if not keys:
            continue
        node = layer
        for key in keys[:-1]:
            child = node.setdefault(key, {})
            if not isinstance(child, dict):
                raise ConfigError(f"{name} nests under a scalar setting.")
            node = child
        node[keys[-1]] = _env_value(raw)
    return layer


def _env_value(raw: str) -> object:
    text = raw.strip()
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError:
        return text


def _merge(base: Mapping[str, object], layer: Mapping[str, object]) -> dict[str, object]:
    result = dict(base)
    for key, value in layer.items():
        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = _merge(current, value)
        else:
            result[key] = value
    return result


# Validation -----------------------------------------------------------------


def _check_keys(raw: Mapping[str, object]) -> None:
    extra = sorted(set(raw) - set(DEFAULTS))
    if extra:
        raise ConfigError(f"Unknown configuration keys: {', '.join(extra)}.")
    for name, known in SECTIONS.items():
        extra = sorted(set(_mapping(raw.get(name), name)) - known)
        if extra:
            raise ConfigError(f"Unknown {name} configuration keys: {', '.join(extra)}.")
    architecture = str(raw.get("architecture") or "amd64")
    if architecture not in ARCHITECTURES:
        raise ConfigError(
            f"Unsupported architecture {architecture!r}; "
            f"expected one of {', '.join(sorted(ARCHITECTURES))}."
        )


def _resolve(raw: Mapping[str, object]) -> AppConfig:
    root_dir = _path(raw["root_dir"], "root_dir")
    state_dir = _path(raw["state_dir"], "state_dir")

    random_length = _integer(raw.get("random_length"), "random_length", 32)
    if random_length < 8:
        raise ConfigError("random_length must be at least 8.")

    host_version = str(raw.get("host_version") or __version__).strip()
    if not host_version:
        raise ConfigError("host_version must not be blank.")

    return AppConfig(
        config_file=_path(raw["config_file"], "config_file"),
        root_dir=root_dir,
        storage_dir=_path(raw.get("storage_dir") or root_dir, "storage_dir"),
        state_dir=state_dir,
        registry_dir=_path(raw.get("registry_dir") or state_dir / "registry", "registry_dir"),
        logs_dir=_path(raw["logs_dir"], "logs_dir"),
        runtime_dir=_path(raw["runtime_dir"], "runtime_dir"),
        templates_dir=_path(raw["templates_dir"], "templates_dir"),
        lock_timeout=_positive(raw.get("lock_timeout"), "lock_timeout", 30.0),
        architecture=str(raw.get("architecture") or "amd64"),
        host_version=host_version,
        random_length=random_length,
        catalog=_catalog(_mapping(raw.get("catalog"), "catalog")),
        compose=_compose(_mapping(raw.get("compose"), "compose")),
        workers=_workers(_mapping(raw.get("workers"), "workers")),
        backups=_backups(_mapping(raw.get("backups"), "backups"), root_dir),
    )


def _catalog(section: Mapping[str, object]) -> CatalogConfig:
    repo_id = str(section.get("repo_id") or "default").strip()
    if not repo_id or "/" in repo_id or repo_id in {".", ".."}:
        raise ConfigError(f"catalog.repo_id must be a plain directory name, got {repo_id!r}.")
    return CatalogConfig(
        repo_id=repo_id,
        repo_url=str(section.get("repo_url") or ""),
        git_bin=str(section.get("git_bin") or "git"),
    )


def _compose(section: Mapping[str, object]) -> ComposeConfig:
    command_value = section.get("command") or "docker compose"
    if isinstance(command_value, (list, tuple)):
        command = tuple(str(part) for part in command_value)
    else:
        command = tuple(shlex.split(str(command_value)))
    if not command:
        raise ConfigError("compose.command must not be empty.")

    timeout_value = section.get("timeout")
    # 0 or blank disables the timeout
    timeout = (
        None
        if timeout_value in (None, 0, "0", "")
        else _positive(timeout_value, "compose.timeout", 600.0)
    )
    return ComposeConfig(
        command=command,
        failure_marker=str(section.get("failure_marker") or "Command failed:"),
        timeout=timeout,
    )


def _workers(section: Mapping[str, object]) -> WorkersConfig:
    config = WorkersConfig(
        max_workers=_integer(section.get("max_workers"), "workers.max_workers", 4),
        start_concurrency=_integer(
            section.get("start_concurrency"), "workers.start_concurrency", 1
        ),
    )
    if min(config.max_workers, config.start_concurrency) < 1:
        raise ConfigError("workers.max_workers and workers.start_concurrency must be >= 1.")
    return config


def _backups(section: Mapping[str, object], root_dir: Path) -> BackupConfig:
    level_value = section.get("compression_level")
    level: int | None = None
    if level_value is not None:
        level = _integer(level_value, "backups.compression_level", 6)
        if not 1 <= level <= 9:
            raise ConfigError("backups.compression_level must be between 1 and 9.")
    root = _path(section.get("root") or root_dir / "backups", "backups.root")
    return BackupConfig(root=root, compression_level=level)


# Coercion -------------------------------------------------------------------


def _path(value: object, label: str) -> Path:
    if isinstance(value, (str, Path)) and str(value):
        return Path(value).expanduser()
    raise ConfigError(f"{label} must be a filesystem path, got {value!r}.")


def _integer(value: object, label: str, default: int) -> int:
    if value is None:
        return default
    if not isinstance(value, bool) and isinstance(value, (int, str)):
        try:
            return int(value)
        except ValueError:
            pass
    raise ConfigError(f"{label} must be an integer, got {value!r}.")


def _positive(value: object, label: str, default: float) -> float:
    if value is None:
        return default
    number: float | None = None
    if not isinstance(value, bool) and isinstance(value, (int, float, str)):
        try:
            number = float(value)
        except ValueError:
            number = None
    if number is None:
        raise ConfigError(f"{label} must be a number, got {value!r}.")
    if number <= 0:
        raise ConfigError(f"{label} must be greater than zero, got {number}.")
    return number


def _mapping(value: object, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{label} must be a mapping, got {type(value).__name__}.")
    if not all(isinstance(key, str) for key in value):
        raise ConfigError(f"{label} must only use string keys.")
    return dict(value)


__all__ = [
    "AppConfig",
    "BackupConfig",
    "CatalogConfig",
    "ComposeConfig",
    "ConfigError",
    "WorkersConfig",
    "load_config",
]
