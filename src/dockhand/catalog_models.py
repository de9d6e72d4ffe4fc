"""App definitions read from the catalog repository.

Each app in the catalog ships a ``config.json`` describing its form fields,
exposure rules, port and versions. Definitions are read-only inputs; this
module only parses and validates them.
"""
from __future__ import annotations

import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

DEFINITION_FILE = "config.json"


class DefinitionError(RuntimeError):
    """Raised when an app definition cannot be read or is malformed."""


class FieldType(str, Enum):
    """Kinds of form fields an app can declare."""

    TEXT = "text"
    PASSWORD = "password"
    EMAIL = "email"
    NUMBER = "number"
    FQDN = "fqdn"
    IP = "ip"
    FQDNIP = "fqdnip"
    URL = "url"
    RANDOM = "random"
    BOOLEAN = "boolean"


RANDOM_ENCODINGS = ("hex", "base64")


@dataclass(frozen=True, slots=True)
class FormField:
    """A single declared environment variable in an app's install form."""

    env_variable: str
    type: FieldType = FieldType.TEXT
    label: str = ""
    required: bool = False
    default: str | int | bool | None = None
    options: tuple[str, ...] = ()
    min: int | None = None
    max: int | None = None
    encoding: str = "hex"

    @property
    def is_random(self) -> bool:
        """Return ``True`` for fields whose value is generated."""
        return self.type is FieldType.RANDOM

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> FormField:
        """Parse a ``form_fields`` entry."""
        env_variable = str(data.get("env_variable") or "").strip()
        if not env_variable:
            raise DefinitionError("Form field is missing 'env_variable'.")
        raw_type = str(data.get("type") or FieldType.TEXT.value)
        try:
            field_type = FieldType(raw_type)
        except ValueError as exc:
            raise DefinitionError(
                f"Form field {env_variable} has unsupported type '{raw_type}'."
            ) from exc
        encoding = str(data.get("encoding") or "hex")
        if encoding not in RANDOM_ENCODINGS:
            raise DefinitionError(
                f"Form field {env_variable} has unsupported encoding '{encoding}'."
            )
        raw_options = data.get("options") or ()
        options: tuple[str, ...] = ()
        if isinstance(raw_options, Sequence) and not isinstance(raw_options, str):
            values: list[str] = []
            for option in raw_options:
                if isinstance(option, Mapping):
                    values.append(str(option.get("value", "")))
                else:
                    values.append(str(option))
            options = tuple(values)
        return cls(
            env_variable=env_variable,
            type=field_type,
            label=str(data.get("label") or env_variable),
            required=bool(data.get("required", False)),
            default=data.get("default"),
            options=options,
            min=_optional_int(data.get("min"), env_variable, "min"),
            max=_optional_int(data.get("max"), env_variable, "max"),
            encoding=encoding,
        )


@dataclass(frozen=True, slots=True)
class AppDefinition:
    """Parsed ``config.json`` for one catalog app."""

    id: str
    name: str
    port: int
    version: int = 0
    docker_version: str = "0.0.0"
    min_host_version: str | None = None
    exposable: bool = False
    force_expose: bool = False
    available: bool = True
    supported_architectures: tuple[str, ...] = ()
    form_fields: tuple[FormField, ...] = field(default_factory=tuple)
    short_desc: str = ""

    def supports(self, architecture: str) -> bool:
        """Return ``True`` if the app runs on *architecture*."""
        if not self.supported_architectures:
            return True
        return architecture in self.supported_architectures

    @classmethod
    def from_mapping(cls, app_id: str, data: Mapping[str, Any]) -> AppDefinition:
        """Build a definition from parsed JSON."""
        raw_fields = data.get("form_fields") or []
        if not isinstance(raw_fields, list):
            raise DefinitionError(f"App {app_id}: 'form_fields' must be a list.")
        fields: list[FormField] = []
        for entry in raw_fields:
            if not isinstance(entry, Mapping):
                raise DefinitionError(f"App {app_id}: form field entries must be objects.")
            fields.append(FormField.from_mapping(entry))

        port = _optional_int(data.get("port"), app_id, "port")
        if port is None:
            raise DefinitionError(f"App {app_id}: 'port' is required.")

        architectures = data.get("supported_architectures") or ()
        if isinstance(architectures, str) or not isinstance(architectures, Sequence):
            raise DefinitionError(f"App {app_id}: 'supported_architectures' must be a list.")

        min_version = data.get("min_tipi_version") or data.get("min_host_version")
        return cls(
            id=str(data.get("id") or app_id),
            name=str(data.get("name") or app_id),
            port=port,
            version=_optional_int(data.get("tipi_version"), app_id, "tipi_version") or 0,
            docker_version=str(data.get("version") or "0.0.0"),
            min_host_version=str(min_version) if min_version else None,
            exposable=bool(data.get("exposable", False)),
            force_expose=bool(data.get("force_expose", False)),
            available=bool(data.get("available", True)),
            supported_architectures=tuple(str(item) for item in architectures),
            form_fields=tuple(fields),
            short_desc=str(data.get("short_desc") or ""),
        )

    @classmethod
    def load(cls, app_dir: Path) -> AppDefinition:
        """Read ``config.json`` from *app_dir*."""
        path = app_dir / DEFINITION_FILE
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as exc:
            raise DefinitionError(f"Definition file {path} does not exist.") from exc
        except (OSError, json.JSONDecodeError) as exc:
            raise DefinitionError(f"Failed to read definition {path}: {exc}") from exc
        if not isinstance(payload, Mapping):
            raise DefinitionError(f"Definition {path} must contain a JSON object.")
        return cls.from_mapping(app_dir.name, payload)


def _optional_int(value: object, owner: str, key: str) -> int | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise DefinitionError(f"{owner}: '{key}' must be an integer.")
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise DefinitionError(f"{owner}: '{key}' must be an integer, got {value!r}.") from exc


__all__ = [
    "DEFINITION_FILE",
    "AppDefinition",
    "DefinitionError",
    "FieldType",
    "FormField",
]
