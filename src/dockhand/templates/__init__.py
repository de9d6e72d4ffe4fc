"""Jinja2 template rendering with operator override directories."""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, StrictUndefined

BUILTIN_TEMPLATES_DIR = Path(__file__).parent


@dataclass(slots=True)
class TemplateEngine:
    """Render packaged templates, preferring files from an override directory."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine whose loader searches *override_dir* before built-ins."""
        loaders: list[FileSystemLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(FileSystemLoader(str(BUILTIN_TEMPLATES_DIR)))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        template = self.environment.get_template(template_name)
        return template.render(**context)

    def render_to_path(
        self,
        template_name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render into *destination* atomically. Return ``True`` if content changed."""
        rendered = self.render_to_string(template_name, context)
        destination = Path(destination)
        if destination.exists():
            current = destination.read_text(encoding="utf-8")
            if current == rendered:
                os.chmod(destination, mode)
                return False
        destination.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=destination.parent,
            prefix=f".{destination.name}.",
            delete=False,
        ) as handle:
            handle.write(rendered)
            temp_path = Path(handle.name)
        os.chmod(temp_path, mode)
        os.replace(temp_path, destination)
        return True


__all__ = ["BUILTIN_TEMPLATES_DIR", "TemplateEngine"]
