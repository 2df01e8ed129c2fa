"""Registry of live workers, keyed by task id.

At most one live worker exists per task id. Concurrent dispatches of the
same task id share that worker through leases: the first dispatch
provisions it, later ones reuse it, and whichever dispatch releases the
last lease is the one that deletes it.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, AsyncIterator, Awaitable, Callable

import structlog

from workcell.models import Worker, WorkerState

if TYPE_CHECKING:
    from workcell.backends.base import WorkerBackend

logger = structlog.get_logger(__name__)

Provisioner = Callable[[], Awaitable[tuple["WorkerBackend", Worker]]]


@dataclass
class WorkerEntry:
    """A registered worker and its bookkeeping.

    Attributes:
        backend: Backend that owns the worker
        worker: The worker itself
        leases: Dispatches currently holding the worker
        executing: Dispatches currently running a command on it
    """

    backend: WorkerBackend
    worker: Worker
    leases: int = 0
    executing: int = 0


@dataclass
class WorkerLease:
    """Handle returned to a dispatch holding a worker.

    Attributes:
        backend: Backend that owns the worker
        worker: Leased worker
        reused: Whether the worker already existed for this task id
    """

    backend: WorkerBackend
    worker: Worker
    reused: bool = False


class WorkerRegistry:
    """Concurrency-safe map of task id to live worker."""

    def __init__(self) -> None:
        self._entries: dict[str, WorkerEntry] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._logger = logger.bind(component="WorkerRegistry")

    @asynccontextmanager
    async def _locked(self, task_id: str) -> AsyncIterator[None]:
        lock = self._locks.get(task_id)
        if lock is None:
            lock = self._locks[task_id] = asyncio.Lock()
        self._lock_users[task_id] = self._lock_users.get(task_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[task_id] -= 1
            if self._lock_users[task_id] == 0:
                del self._lock_users[task_id]
                # Nobody holds or waits on it and no entry remains
                if task_id not in self._entries:
                    del self._locks[task_id]

    async def acquire(self, task_id: str, provision: Provisioner) -> WorkerLease:
        """Lease the live worker for a task, provisioning one if needed.

        Provisioning for one task id is serialized; other task ids proceed
        independently.

        Args:
            task_id: Task identifier.
            provision: Coroutine factory returning ``(backend, worker)`` for a
                ready worker. Only called when no live worker exists.

        Returns:
            Lease on the worker.

        Raises:
            Whatever ``provision`` raises; nothing is registered then.
        """
        async with self._locked(task_id):
            entry = self._entries.get(task_id)
            if entry is not None and entry.worker.is_live:
                entry.leases += 1
                self._logger.info(
                    "worker_reused",
                    task_id=task_id,
                    worker_id=entry.worker.id,
                    leases=entry.leases,
                )
                return WorkerLease(backend=entry.backend, worker=entry.worker, reused=True)

            backend, worker = await provision()
            self._entries[task_id] = WorkerEntry(backend=backend, worker=worker, leases=1)
            self._logger.info("worker_registered", task_id=task_id, worker_id=worker.id, backend=backend.kind.value)
            return WorkerLease(backend=backend, worker=worker)

    async def release(self, task_id: str, worker: Worker) -> bool:
        """Give back a lease.

        Args:
            task_id: Task identifier.
            worker: Worker the lease was for.

        Returns:
            True if this was the last lease; the caller must delete the
            worker. False otherwise, including when the worker was already
            removed from the registry.
        """
        async with self._locked(task_id):
            entry = self._entries.get(task_id)
            if entry is None or entry.worker is not worker:
                return False

            entry.leases -= 1
            if entry.leases > 0:
                return False

            del self._entries[task_id]
            self._logger.info("worker_unregistered", task_id=task_id, worker_id=worker.id)
            return True

    def mark_executing(self, task_id: str) -> None:
        """Note that a dispatch started running a command on the task's worker."""
        entry = self._entries.get(task_id)
        if entry is None:
            return
        entry.executing += 1
        if entry.executing == 1 and entry.worker.state == WorkerState.READY:
            entry.worker.transition(WorkerState.EXECUTING)

    def mark_idle(self, task_id: str) -> None:
        """Note that a dispatch finished running commands on the task's worker."""
        entry = self._entries.get(task_id)
        if entry is None or entry.executing == 0:
            return
        entry.executing -= 1
        if entry.executing == 0 and entry.worker.state == WorkerState.EXECUTING:
            entry.worker.transition(WorkerState.READY)

    async def remove(self, task_id: str) -> WorkerEntry | None:
        """Forcibly unregister a task's worker regardless of leases.

        Outstanding leases become no-ops on release.

        Args:
            task_id: Task identifier.

        Returns:
            The removed entry, or None if nothing was registered.
        """
        async with self._locked(task_id):
            entry = self._entries.pop(task_id, None)
        if entry is not None:
            self._logger.info("worker_removed", task_id=task_id, worker_id=entry.worker.id, leases=entry.leases)
        return entry

    def get(self, task_id: str) -> Worker | None:
        """Return the registered worker for a task id, if any."""
        entry = self._entries.get(task_id)
        return entry.worker if entry is not None else None

    def entries(self) -> dict[str, WorkerEntry]:
        """Return a copy of all registered entries."""
        return dict(self._entries)

    def snapshot(self) -> list[Worker]:
        """Return the registered workers."""
        return [entry.worker for entry in self._entries.values()]

    def __len__(self) -> int:
        return len(self._entries)
