"""Context generator for the primary command's standard input."""

from __future__ import annotations

from pathlib import Path

from workcell.config import RepositoryConfig
from workcell.context.loader import TemplateLoader
from workcell.models import Task, Worker

TASK_TEMPLATE = "task.j2"


class ContextGenerator:
    """Renders the task context handed to the primary command.

    Attributes:
        loader: TemplateLoader instance for accessing templates
    """

    def __init__(self, override_dir: Path | None = None) -> None:
        self.loader = TemplateLoader(override_dir=override_dir)

    def generate_task_context(
        self,
        task: Task,
        worker: Worker,
        session_file: str,
        repository: RepositoryConfig | None = None,
    ) -> str:
        """Render the task context for a task.

        The rendered text always contains the lines ``Issue ID: #<id>`` and
        ``Task: <instruction>``.

        Args:
            task: Task being executed
            worker: Worker the task runs in
            session_file: Session file path as seen inside the worker
            repository: Repository settings supplying helper commands

        Returns:
            Rendered context text.

        Raises:
            jinja2.TemplateNotFound: If task.j2 template doesn't exist
        """
        template = self.loader.load_template(TASK_TEMPLATE)
        return template.render(
            task_id=task.id,
            instruction=task.instruction,
            repository=task.repository,
            backend=worker.backend.value,
            workspace=worker.workspace_path,
            session_file=session_file,
            commands=repository.commands if repository is not None else {},
        )
