"""Tests for parsing catalog app definitions."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from dockhand.catalog_models import AppDefinition, DefinitionError, FieldType


def _write(app_dir: Path, payload: object) -> Path:
    app_dir.mkdir(parents=True, exist_ok=True)
    (app_dir / "config.json").write_text(json.dumps(payload), encoding="utf-8")
    return app_dir


def test_load_maps_catalog_keys(tmp_path: Path) -> None:
    """Catalog keys map onto the definition's version fields."""
    app_dir = _write(
        tmp_path / "nextcloud",
        {
            "name": "Nextcloud",
            "port": 8083,
            "tipi_version": 12,
            "version": "28.0.1",
            "min_tipi_version": "3.0.0",
            "exposable": True,
            "supported_architectures": ["amd64", "arm64"],
            "form_fields": [
                {"type": "text", "label": "Admin", "env_variable": "ADMIN", "required": True},
                {"type": "random", "env_variable": "DB_PASSWORD", "min": 16},
                {
                    "type": "text",
                    "env_variable": "MODE",
                    "options": [{"label": "Fast", "value": "fast"}, "slow"],
                },
            ],
        },
    )

    definition = AppDefinition.load(app_dir)

    assert definition.id == "nextcloud"
    assert definition.version == 12
    assert definition.docker_version == "28.0.1"
    assert definition.min_host_version == "3.0.0"
    assert definition.supports("arm64") is True
    assert definition.supports("arm") is False
    admin, password, mode = definition.form_fields
    assert admin.required is True
    assert password.type is FieldType.RANDOM
    assert password.is_random is True
    assert password.min == 16
    assert mode.options == ("fast", "slow")


def test_defaults_when_optional_keys_absent(tmp_path: Path) -> None:
    """Only the port is mandatory."""
    definition = AppDefinition.load(_write(tmp_path / "whoami", {"port": 80}))

    assert definition.name == "whoami"
    assert definition.version == 0
    assert definition.available is True
    assert definition.exposable is False
    assert definition.supports("arm") is True


@pytest.mark.parametrize(
    ("payload", "message"),
    [
        ({}, "'port' is required"),
        ({"port": "eighty"}, "must be an integer"),
        ({"port": 80, "form_fields": {"admin": "text"}}, "must be a list"),
        ({"port": 80, "form_fields": [{"type": "text"}]}, "env_variable"),
        ({"port": 80, "form_fields": [{"type": "color", "env_variable": "C"}]}, "unsupported type"),
        ({"port": 80, "supported_architectures": "amd64"}, "supported_architectures"),
        (["not", "an", "object"], "JSON object"),
    ],
)
def test_invalid_definitions_raise(tmp_path: Path, payload: object, message: str) -> None:
    """Malformed definitions raise DefinitionError with context."""
    app_dir = _write(tmp_path / "broken", payload)

    with pytest.raises(DefinitionError, match=message):
        AppDefinition.load(app_dir)


def test_missing_definition_file_raises(tmp_path: Path) -> None:
    """An app directory without config.json is reported clearly."""
    with pytest.raises(DefinitionError, match="does not exist"):
        AppDefinition.load(tmp_path / "ghost")
