"""Generation of per-app ``app.env`` files.

The generator validates the whole form against the app definition before it
writes anything, so a missing required field never leaves a partial file on
disk. Values of ``random`` fields are read back from an existing env file and
kept, which means secrets such as database passwords survive reinstalls and
updates.
"""
from __future__ import annotations

import base64
import logging
import secrets
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from .catalog_models import AppDefinition, FieldType, FormField
from .layout import FilesystemLayout
from .state.models import AppForm, FormValue
from .templates import TemplateEngine

logger = logging.getLogger(__name__)

ENV_TEMPLATE = "env/app.env.j2"
ENV_FILE_MODE = 0o640


class EnvFileError(RuntimeError):
    """Raised when an environment file cannot be generated."""


class MissingFieldError(EnvFileError):
    """Raised when a required form field has no value."""

    def __init__(self, variable: str) -> None:
        super().__init__(f"Variable {variable} is required")
        self.variable = variable


def read_env_map(path: Path) -> dict[str, str]:
    """Parse *path* into an ordered mapping. A missing file yields ``{}``."""
    try:
        content = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as exc:
        raise EnvFileError(f"Failed to read {path}: {exc}") from exc

    result: dict[str, str] = {}
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#") or "=" not in stripped:
            continue
        key, value = stripped.split("=", 1)
        result[key.strip()] = value
    return result


def generate_random_value(length: int, encoding: str = "hex") -> str:
    """Return a random string of exactly *length* characters."""
    if length < 1:
        raise EnvFileError("Random value length must be positive.")
    if encoding == "base64":
        raw = base64.b64encode(secrets.token_bytes(length)).decode("ascii")
        return raw[:length]
    return secrets.token_hex((length + 1) // 2)[:length]


TRUE_WORDS = frozenset({"true", "yes", "on", "1"})
FALSE_WORDS = frozenset({"false", "no", "off", "0"})


def _format_value(form_field: FormField, value: FormValue) -> str:
    """Render *value* for ``app.env`` according to the field's declared type."""
    variable = form_field.env_variable
    if form_field.type is FieldType.BOOLEAN:
        if isinstance(value, bool):
            return "true" if value else "false"
        word = str(value).strip().lower()
        if word in TRUE_WORDS:
            return "true"
        if word in FALSE_WORDS:
            return "false"
        raise EnvFileError(f"Variable {variable} must be true or false")

    if isinstance(value, bool):
        text = "true" if value else "false"
    else:
        text = str(value)
    if form_field.type is FieldType.NUMBER:
        text = text.strip()
        try:
            float(text)
        except ValueError as exc:
            raise EnvFileError(f"Variable {variable} must be a number") from exc
    if "\n" in text or "\r" in text:
        raise EnvFileError(f"Variable {variable} must not contain line breaks")
    return text


def form_from_env(definition: AppDefinition, env: Mapping[str, str]) -> AppForm:
    """Rebuild the form that produced *env*, as far as ``app.env`` records it."""
    exposed = env.get("APP_EXPOSED") == "true"
    return AppForm(
        values={
            form_field.env_variable: env[form_field.env_variable]
            for form_field in definition.form_fields
            if env.get(form_field.env_variable)
        },
        exposed=exposed,
        exposed_local=env.get("APP_EXPOSED_LOCAL") == "true",
        domain=env.get("APP_DOMAIN") if exposed else None,
    )


@dataclass(slots=True)
class EnvFileGenerator:
    """Render ``app.env`` for an app from its definition and submitted form."""

    layout: FilesystemLayout
    templates: TemplateEngine
    random_length: int = 32

    def build_variables(
        self,
        definition: AppDefinition,
        form: AppForm,
        existing: Mapping[str, str] | None = None,
    ) -> dict[str, str]:
        """Return the ordered variables for *definition* without touching disk."""
        paths = self.layout.paths(definition.id)
        previous = dict(existing or {})
        variables: dict[str, str] = {
            "APP_ID": definition.id,
            "APP_PORT": str(definition.port),
            "APP_DATA_DIR": str(paths.app_data_dir),
            "ROOT_FOLDER_HOST": str(self.layout.root_dir),
        }

        for form_field in definition.form_fields:
            value = self._resolve_field(form_field, form, previous)
            if value is None:
                continue
            variables[form_field.env_variable] = _format_value(form_field, value)

        if form.exposed and form.domain:
            variables["APP_EXPOSED"] = "true"
            variables["APP_DOMAIN"] = form.domain
            variables["APP_HOST"] = form.domain
            variables["APP_PROTOCOL"] = "https"
        else:
            variables["APP_DOMAIN"] = f"localhost:{definition.port}"
            variables["APP_HOST"] = "localhost"
            variables["APP_PROTOCOL"] = "http"
        if form.exposed_local:
            variables["APP_EXPOSED_LOCAL"] = "true"
        return variables

    def generate(self, definition: AppDefinition, form: AppForm) -> Path:
        """Validate the form, then write ``app.env`` and return its path."""
        paths = self.layout.paths(definition.id)
        existing = read_env_map(paths.env_file)
        variables = self.build_variables(definition, form, existing)

        self.layout.ensure_app_data_dir(definition.id)
        try:
            changed = self.templates.render_to_path(
                ENV_TEMPLATE,
                paths.env_file,
                {"app_id": definition.id, "variables": list(variables.items())},
                mode=ENV_FILE_MODE,
            )
        except OSError as exc:
            raise EnvFileError(f"Failed to write {paths.env_file}: {exc}") from exc
        if changed:
            logger.info("Wrote %s", paths.env_file)
        return paths.env_file

    def _resolve_field(
        self,
        form_field: FormField,
        form: AppForm,
        previous: Mapping[str, str],
    ) -> FormValue | None:
        name = form_field.env_variable
        submitted = form.values.get(name)
        if submitted == "":
            submitted = None

        if form_field.is_random:
            if previous.get(name):
                return previous[name]
            if submitted is not None:
                return submitted
            length = form_field.min or self.random_length
            return generate_random_value(length, form_field.encoding)

        value = submitted if submitted is not None else form_field.default
        if value is None or value == "":
            if form_field.required:
                raise MissingFieldError(name)
            return None
        if form_field.options and str(value) not in form_field.options:
            raise EnvFileError(f"Variable {name} must be one of {', '.join(form_field.options)}")
        return value


__all__ = [
    "ENV_TEMPLATE",
    "EnvFileError",
    "EnvFileGenerator",
    "MissingFieldError",
    "form_from_env",
    "generate_random_value",
    "read_env_map",
]
