"""Host process backend.

Host workers are plain workspace directories on the machine running the
dispatcher. There is no platform to create or delete anything on, so a
host worker is ready as soon as its directory exists, and deleting it
leaves the workspace in place for later turns of the same task.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from workcell.backends.base import ReadinessProbe, WorkerBackend
from workcell.errors import CreationFailed
from workcell.models import BackendKind, Task, Worker, WorkerState
from workcell.transports.agent import AgentTransport
from workcell.transports.base import ExecTransport
from workcell.transports.host import HostTransport


class HostBackend(WorkerBackend):
    """Runs tasks directly on the host in per-task workspace directories.

    Attributes:
        workspaces_dir: Directory holding one workspace per task id
    """

    kind = BackendKind.HOST

    def __init__(
        self,
        workspaces_dir: Path,
        transport: ExecTransport | None = None,
        poll_interval: float = 2.0,
    ) -> None:
        super().__init__(transport or HostTransport(), poll_interval=poll_interval)
        self.workspaces_dir = workspaces_dir
        # The exec agent addresses workers by owner id rather than by path
        self._agent_mode = isinstance(self.transport, AgentTransport)

    def workspace_for(self, task_id: str) -> Path:
        """Workspace directory for a task."""
        return self.workspaces_dir / task_id

    async def create(self, task: Task) -> Worker:
        workspace = self.workspace_for(task.id)
        try:
            await asyncio.to_thread(workspace.mkdir, parents=True, exist_ok=True)
        except OSError as e:
            raise CreationFailed(
                f"Cannot create workspace {workspace}: {e}",
                backend=self.kind.value,
                task_id=task.id,
            ) from e

        worker = Worker(
            id=f"host-{task.id}",
            task_id=task.id,
            backend=self.kind,
            workspace_path=str(workspace),
            repository=task.repository,
            host_workspace=workspace,
        )
        worker.transition(WorkerState.CREATED)
        self.logger.info("worker_created", worker_id=worker.id, workspace=str(workspace))
        return worker

    async def _probe(self, worker: Worker) -> ReadinessProbe:
        if worker.host_workspace is not None and worker.host_workspace.is_dir():
            return ReadinessProbe(ready=True, detail="workspace present")
        return ReadinessProbe(ready=False, terminal=True, detail="workspace missing")

    def exec_target(self, worker: Worker) -> str:
        if self._agent_mode:
            return worker.task_id
        return worker.workspace_path

    async def _delete(self, worker: Worker) -> None:
        # Workspace is retained for continuation turns
        self.logger.debug("host_worker_released", worker_id=worker.id)
