"""Template loader for Jinja2-based context generation."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

if TYPE_CHECKING:
    from jinja2 import Template

DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"


class TemplateLoader:
    """Loads and caches Jinja2 templates for task context generation.

    Templates are looked up in an optional override directory first and
    then in the templates shipped with the package, so a deployment can
    replace ``task.j2`` without touching the installed code.

    Attributes:
        template_dirs: Directories searched, in order
        env: Jinja2 Environment with configured loaders and caching
    """

    def __init__(self, override_dir: Path | None = None) -> None:
        """Initialize the template loader.

        Args:
            override_dir: Directory whose templates take precedence over the
                packaged ones.
        """
        self.template_dirs = [DEFAULT_TEMPLATE_DIR]
        if override_dir is not None:
            self.template_dirs.insert(0, override_dir)

        self.env = Environment(
            loader=FileSystemLoader([str(d) for d in self.template_dirs]),
            autoescape=select_autoescape(),
            trim_blocks=True,
            lstrip_blocks=True,
            keep_trailing_newline=True,
            cache_size=50,
            auto_reload=False,
        )

    def load_template(self, template_name: str) -> Template:
        """Load a template by name.

        Args:
            template_name: Name of the template file (e.g., "task.j2")

        Returns:
            Template: Loaded Jinja2 Template object

        Raises:
            jinja2.TemplateNotFound: If template doesn't exist in any directory
        """
        return self.env.get_template(template_name)

    def list_templates(self) -> list[str]:
        """List all available template names."""
        return sorted(self.env.list_templates())

    def template_exists(self, template_name: str) -> bool:
        """Check if a template exists in any searched directory."""
        try:
            self.env.get_template(template_name)
            return True
        except TemplateNotFound:
            return False
