"""Task context rendering for the primary command."""

from workcell.context.generator import ContextGenerator
from workcell.context.loader import TemplateLoader

__all__ = ["ContextGenerator", "TemplateLoader"]
