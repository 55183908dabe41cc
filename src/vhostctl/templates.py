"""Template rendering built on Jinja2.

Built-in templates ship inside the package (``vhostctl/templates``). Operators
can shadow any of them by placing a file with the same relative name under the
configured ``templates_dir``.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import (
    ChoiceLoader,
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateError,
)

BUILTIN_TEMPLATES = Path(__file__).resolve().parent / "templates"


class TemplateRenderError(RuntimeError):
    """Raised when a template cannot be loaded or rendered."""


@dataclass(slots=True)
class TemplateEngine:
    """Render packaged (or overridden) templates to strings and files."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine that prefers templates from *override_dir*."""
        loaders: list[FileSystemLoader] = []
        if override_dir is not None and override_dir.expanduser().is_dir():
            loaders.append(FileSystemLoader(str(override_dir.expanduser())))
        loaders.append(FileSystemLoader(str(BUILTIN_TEMPLATES)))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,  # noqa: S701 - renders nginx configs, not HTML
        )
        return cls(environment=environment)

    def render_to_string(self, template_name: str, context: Mapping[str, object]) -> str:
        """Render *template_name* with *context* and return the text."""
        try:
            template = self.environment.get_template(template_name)
            return template.render(**dict(context))
        except TemplateError as exc:
            raise TemplateRenderError(f"Failed to render {template_name}: {exc}") from exc


def write_atomic(destination: Path, content: str, *, mode: int = 0o644) -> bool:
    """Write *content* to *destination* atomically; return True when changed.

    The existing file is compared byte for byte, so a file in another
    encoding is simply overwritten.
    """
    encoded = content.encode("utf-8")
    if destination.is_file() and not destination.is_symlink():
        if destination.read_bytes() == encoded:
            if (destination.stat().st_mode & 0o777) != mode:
                destination.chmod(mode)
            return False

    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(
        dir=str(destination.parent),
        prefix=f".{destination.name}.",
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "wb") as handle:
            handle.write(encoded)
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


__all__ = ["BUILTIN_TEMPLATES", "TemplateEngine", "TemplateRenderError", "write_atomic"]
