"""Tests for ``app.env`` generation."""
from __future__ import annotations

from pathlib import Path

import pytest

from dockhand.catalog_models import AppDefinition
from dockhand.envfile import (
    EnvFileError,
    EnvFileGenerator,
    MissingFieldError,
    generate_random_value,
    read_env_map,
)
from dockhand.layout import FilesystemLayout
from dockhand.state import AppForm
from dockhand.templates import TemplateEngine


@pytest.fixture
def generator(tmp_path: Path) -> EnvFileGenerator:
    layout = FilesystemLayout(
        root_dir=tmp_path / "root",
        storage_dir=tmp_path / "storage",
        repo_id="default",
        backups_root=tmp_path / "backups",
    )
    return EnvFileGenerator(
        layout=layout,
        templates=TemplateEngine.with_overrides(None),
        random_length=24,
    )


def _definition(*fields: dict[str, object]) -> AppDefinition:
    return AppDefinition.from_mapping(
        "nextcloud",
        {"port": 8083, "exposable": True, "form_fields": list(fields)},
    )


def test_generate_writes_base_and_form_variables(
    generator: EnvFileGenerator,
    tmp_path: Path,
) -> None:
    """The env file lists base variables first, then form fields, then exposure."""
    definition = _definition(
        {"env_variable": "ADMIN_USER", "required": True},
        {"env_variable": "ENABLE_SMTP", "type": "boolean"},
        {"env_variable": "WORKERS", "type": "number", "default": 2},
    )
    form = AppForm(values={"ADMIN_USER": "root", "ENABLE_SMTP": False})

    path = generator.generate(definition, form)

    assert path == tmp_path / "storage" / "app-data" / "nextcloud" / "app.env"
    assert (path.stat().st_mode & 0o777) == 0o640
    assert list(read_env_map(path).items()) == [
        ("APP_ID", "nextcloud"),
        ("APP_PORT", "8083"),
        ("APP_DATA_DIR", str(tmp_path / "storage" / "app-data" / "nextcloud")),
        ("ROOT_FOLDER_HOST", str(tmp_path / "root")),
        ("ADMIN_USER", "root"),
        ("ENABLE_SMTP", "false"),
        ("WORKERS", "2"),
        ("APP_DOMAIN", "localhost:8083"),
        ("APP_HOST", "localhost"),
        ("APP_PROTOCOL", "http"),
    ]


def test_exposed_form_sets_domain_variables(generator: EnvFileGenerator) -> None:
    """Exposure switches the host and protocol to the domain over https."""
    variables = generator.build_variables(
        _definition(),
        AppForm(exposed=True, exposed_local=True, domain="cloud.example.com"),
    )

    assert variables["APP_EXPOSED"] == "true"
    assert variables["APP_DOMAIN"] == "cloud.example.com"
    assert variables["APP_HOST"] == "cloud.example.com"
    assert variables["APP_PROTOCOL"] == "https"
    assert variables["APP_EXPOSED_LOCAL"] == "true"


def test_missing_required_field_writes_nothing(generator: EnvFileGenerator) -> None:
    """Validation happens before any file is touched."""
    definition = _definition({"env_variable": "ADMIN_USER", "required": True})

    with pytest.raises(MissingFieldError, match="Variable ADMIN_USER is required"):
        generator.generate(definition, AppForm(values={"ADMIN_USER": ""}))

    assert not generator.layout.paths("nextcloud").env_file.exists()


def test_random_values_survive_regeneration(generator: EnvFileGenerator) -> None:
    """Generated secrets are read back instead of being regenerated."""
    definition = _definition(
        {"env_variable": "DB_PASSWORD", "type": "random"},
        {"env_variable": "API_KEY", "type": "random", "min": 40, "encoding": "base64"},
    )

    first = read_env_map(generator.generate(definition, AppForm()))
    second = read_env_map(generator.generate(definition, AppForm(values={"DB_PASSWORD": "x"})))

    assert len(first["DB_PASSWORD"]) == 24
    assert len(first["API_KEY"]) == 40
    assert second["DB_PASSWORD"] == first["DB_PASSWORD"]
    assert second["API_KEY"] == first["API_KEY"]


def test_submitted_random_value_used_on_first_generation(generator: EnvFileGenerator) -> None:
    """A user-supplied value for a random field is kept when no file exists."""
    definition = _definition({"env_variable": "DB_PASSWORD", "type": "random"})

    variables = generator.build_variables(definition, AppForm(values={"DB_PASSWORD": "chosen"}))

    assert variables["DB_PASSWORD"] == "chosen"


def test_options_are_enforced(generator: EnvFileGenerator) -> None:
    """Values outside the declared options are rejected."""
    definition = _definition({"env_variable": "MODE", "options": ["fast", "slow"]})

    with pytest.raises(EnvFileError, match="must be one of fast, slow"):
        generator.build_variables(definition, AppForm(values={"MODE": "medium"}))


def test_line_breaks_are_rejected(generator: EnvFileGenerator) -> None:
    """Multi-line values would corrupt the env file."""
    definition = _definition({"env_variable": "MOTD"})

    with pytest.raises(EnvFileError, match="line breaks"):
        generator.build_variables(definition, AppForm(values={"MOTD": "a\nb"}))


def test_text_values_keep_their_exact_spelling(generator: EnvFileGenerator) -> None:
    """Digit-only text keeps leading zeros; typed fields are normalised."""
    definition = _definition(
        {"env_variable": "PIN"},
        {"env_variable": "ZIP", "type": "number"},
        {"env_variable": "ENABLE_SMTP", "type": "boolean"},
    )
    form = AppForm(values={"PIN": "007", "ZIP": " 01234 ", "ENABLE_SMTP": "Yes"})

    variables = generator.build_variables(definition, form)

    assert variables["PIN"] == "007"
    assert variables["ZIP"] == "01234"
    assert variables["ENABLE_SMTP"] == "true"


@pytest.mark.parametrize(
    ("field", "value", "message"),
    [
        ({"env_variable": "WORKERS", "type": "number"}, "many", "must be a number"),
        ({"env_variable": "ENABLE_SMTP", "type": "boolean"}, "maybe", "must be true or false"),
    ],
)
def test_typed_fields_reject_bad_values(
    generator: EnvFileGenerator,
    field: dict[str, object],
    value: str,
    message: str,
) -> None:
    """Number and boolean fields validate string input."""
    definition = _definition(field)
    name = str(field["env_variable"])

    with pytest.raises(EnvFileError, match=message):
        generator.build_variables(definition, AppForm(values={name: value}))


def test_random_value_encodings() -> None:
    """Random values honour length and alphabet."""
    hex_value = generate_random_value(31)
    b64_value = generate_random_value(12, "base64")

    assert len(hex_value) == 31
    assert set(hex_value) <= set("0123456789abcdef")
    assert len(b64_value) == 12


def test_read_env_map_skips_comments(tmp_path: Path) -> None:
    """Comments, blanks and malformed lines are ignored."""
    path = tmp_path / "app.env"
    path.write_text("# header\n\nA=1\nnot-a-pair\nB=x=y\n", encoding="utf-8")

    assert read_env_map(path) == {"A": "1", "B": "x=y"}
    assert read_env_map(tmp_path / "absent.env") == {}
