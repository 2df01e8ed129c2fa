"""Worker backend interface.

A backend owns the workers it creates: it asks its platform for a new
worker, polls the platform until the worker is ready, sends commands
through its exec transport, and removes the worker again. Creation and
readiness failures are the only errors that make the dispatcher try the
next backend.
"""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, TypeVar

from workcell.errors import CleanupFailed, ExecutionFailed, ReadinessTimeout, TransportError
from workcell.logging import get_logger
from workcell.models import BackendKind, Task, Worker, WorkerState
from workcell.transports.base import ExecTransport

_NAME_INVALID = re.compile(r"[^a-z0-9-]+")
MAX_NAME_LENGTH = 63

T = TypeVar("T")


def worker_name(prefix: str, *parts: str) -> str:
    """Build a platform-safe worker name.

    Produces a lowercase DNS-1123 label (letters, digits and hyphens, at
    most 63 characters) that is valid both as a container name and as a
    pod name.

    Args:
        prefix: Name prefix (e.g. ``"workcell-worker"``)
        *parts: Additional components such as task id and repository

    Returns:
        Sanitised name.
    """
    raw = "-".join([prefix, *[p for p in parts if p]]).lower()
    name = _NAME_INVALID.sub("-", raw).strip("-")
    name = re.sub(r"-{2,}", "-", name)
    return name[:MAX_NAME_LENGTH].rstrip("-")


@dataclass
class ReadinessProbe:
    """One platform status observation.

    Attributes:
        ready: Worker is running and accepting commands
        terminal: Worker reached a state it can never become ready from
        detail: Platform status text for logs and errors
    """

    ready: bool
    terminal: bool = False
    detail: str = ""


class WorkerBackend(ABC):
    """Common contract of the host, container and pod backends.

    Attributes:
        kind: Backend kind served by this implementation
        transport: Exec transport used to reach this backend's workers
        poll_interval: Seconds between readiness polls
    """

    kind: BackendKind

    def __init__(self, transport: ExecTransport, poll_interval: float = 2.0) -> None:
        self.transport = transport
        self.poll_interval = poll_interval
        self.logger = get_logger(__name__).bind(backend=self.kind.value)

    @abstractmethod
    async def create(self, task: Task) -> Worker:
        """Request a new worker for a task.

        Returns once the platform acknowledged the request; the worker is
        not necessarily ready.

        Args:
            task: Task the worker is created for

        Returns:
            Worker in CREATED state.

        Raises:
            CreationFailed: If the platform rejected the request.
        """

    @abstractmethod
    async def _probe(self, worker: Worker) -> ReadinessProbe:
        """Observe the platform status of a worker once."""

    async def _delete(self, worker: Worker) -> None:
        """Remove the worker from the platform. Errors propagate to delete()."""
        await self._remove_by_name(worker.id)

    async def _remove_by_name(self, name: str) -> None:
        """Remove a platform object by worker name, if the platform has one."""

    async def _create_on_platform(self, name: str, call: Callable[[], T]) -> T:
        """Run a blocking platform create call in a thread.

        Cancelling the caller does not stop the thread, so the object it
        creates would outlive the task with no Worker pointing at it. On
        cancellation this waits for the call to finish and removes whatever
        it created before re-raising.

        Args:
            name: Name the platform object is created under
            call: Blocking create call

        Returns:
            Whatever ``call`` returns.
        """
        pending = asyncio.ensure_future(asyncio.to_thread(call))
        try:
            return await asyncio.shield(pending)
        except asyncio.CancelledError:
            await asyncio.shield(self._discard_abandoned(name, pending))
            raise

    async def _discard_abandoned(self, name: str, pending: asyncio.Future[T]) -> None:
        try:
            await pending
        except Exception:
            # Creation failed; there is nothing to remove
            return

        self.logger.warning("abandoned_worker_removing", worker_id=name)
        try:
            await self._remove_by_name(name)
        except Exception as e:
            self.logger.error(
                "worker_cleanup_failed",
                worker_id=name,
                error=str(e),
                error_type=type(e).__name__,
            )
            return
        self.logger.info("abandoned_worker_removed", worker_id=name)

    async def _on_ready(self, worker: Worker) -> None:
        """Hook run once after the worker became ready."""

    def exec_target(self, worker: Worker) -> str:
        """Address of the worker as understood by the transport."""
        return worker.id

    async def wait_ready(self, worker: Worker, timeout: float) -> None:
        """Poll the platform until the worker is ready or time runs out.

        The wait sleeps with ``asyncio.sleep`` between polls, so cancelling
        the calling task interrupts it immediately.

        Args:
            worker: Worker returned by create()
            timeout: Maximum seconds to wait

        Raises:
            ReadinessTimeout: If the worker is not ready in time, or reached a
                terminal platform state first.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        polls = 0

        self.logger.info("worker_waiting_ready", worker_id=worker.id, timeout=timeout)

        while True:
            probe = await self._probe(worker)
            polls += 1

            if probe.ready:
                worker.transition(WorkerState.READY)
                self.logger.info("worker_ready", worker_id=worker.id, polls=polls)
                await self._on_ready(worker)
                return

            if probe.terminal:
                raise ReadinessTimeout(
                    f"Worker {worker.id} stopped before becoming ready ({probe.detail})",
                    backend=self.kind.value,
                    worker_id=worker.id,
                    timeout=timeout,
                    task_id=worker.task_id,
                )

            remaining = deadline - loop.time()
            if remaining <= 0:
                raise ReadinessTimeout(
                    f"Worker {worker.id} not ready after {timeout:g}s (last status: {probe.detail or 'unknown'})",
                    backend=self.kind.value,
                    worker_id=worker.id,
                    timeout=timeout,
                    task_id=worker.task_id,
                )

            await asyncio.sleep(min(self.poll_interval, remaining))

    async def exec(
        self,
        worker: Worker,
        command: str,
        *,
        stdin: str | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        """Run a command in a ready worker through the backend's transport.

        Args:
            worker: Target worker
            command: Shell command text
            stdin: Optional standard input text
            cwd: Working directory (defaults to the worker workspace)
            env: Environment additions

        Returns:
            Captured command output.

        Raises:
            ExecutionFailed: If the transport reports a failure.
        """
        try:
            return await self.transport.run(
                self.exec_target(worker),
                command,
                stdin=stdin,
                cwd=cwd or worker.workspace_path,
                env=env,
            )
        except TransportError as e:
            raise ExecutionFailed(
                e.message,
                task_id=worker.task_id,
                output=e.output,
                exit_code=e.exit_code,
            ) from e

    async def delete(self, worker: Worker) -> None:
        """Tear the worker down. Best effort, never raises.

        Only the first call for a worker does any work; later calls return
        immediately. The worker always ends in DELETED state.

        Args:
            worker: Worker to remove
        """
        if not worker.begin_termination():
            self.logger.debug("worker_delete_skipped", worker_id=worker.id, state=worker.state.value)
            return

        self.logger.info("worker_deleting", worker_id=worker.id)
        try:
            await self._delete(worker)
        except Exception as e:
            failure = CleanupFailed(
                f"Failed to delete worker {worker.id}: {e}",
                worker_id=worker.id,
                details={"error_type": type(e).__name__},
            )
            self.logger.error(
                "worker_cleanup_failed",
                worker_id=worker.id,
                error=failure.message,
                error_type=type(e).__name__,
            )
        finally:
            worker.transition(WorkerState.DELETED)

        self.logger.info("worker_deleted", worker_id=worker.id, age_seconds=round(worker.age_seconds, 2))

    async def fetch_logs(self, worker: Worker) -> str:
        """Return recent worker logs for diagnostics, or "" if unavailable."""
        return ""

    async def close(self) -> None:
        """Release platform clients held by the backend."""
        await self.transport.close()
