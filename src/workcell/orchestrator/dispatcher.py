"""Task dispatcher for the Workcell execution engine.

The dispatcher drives one task through its whole lifecycle:

1. Resolve (or create) the task's continuation session.
2. Lease a ready worker from the registry. When no live worker exists for
   the task id, try the configured backends in order (pod, container,
   host) and take the first that both creates and readies a worker.
3. Render the task context and run the primary command in the worker
   with the context on its standard input.
4. Run every ``EXEC:`` directive found in the output, in order. A failed
   directive is logged and counted; the rest still run.
5. Record the session use, release the lease, and delete the worker once
   no other dispatch of the same task id holds it.

``handle()`` wraps ``process()`` and hands exactly one human-readable
message to the result reporter, whatever the outcome.
"""

from __future__ import annotations

import asyncio
import shlex
import time
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Sequence

import structlog

from workcell.backends import build_backends
from workcell.backends.base import WorkerBackend
from workcell.config import WorkcellConfig
from workcell.context.generator import ContextGenerator
from workcell.errors import (
    BackendUnavailable,
    CreationFailed,
    ExecutionFailed,
    ReadinessTimeout,
    WorkcellError,
)
from workcell.integrations.reporter import ResultReporter, build_reporter
from workcell.logging import bind_task_context, new_correlation_id
from workcell.models import BackendKind, ExecutionResult, Task, Worker
from workcell.orchestrator.directives import parse_directives
from workcell.orchestrator.registry import WorkerRegistry
from workcell.orchestrator.sessions import SessionRegistry

logger = structlog.get_logger(__name__)

MAX_REPORTED_OUTPUT = 4000


@dataclass
class TaskOutcome:
    """What a successful ``process()`` run produced."""

    output: str
    backend: BackendKind
    directives_run: int = 0
    directives_failed: int = 0


class TaskDispatcher:
    """Dispatches tasks to isolated workers with backend fallback.

    Attributes:
        config: Workcell configuration.
        backends: Backends in fallback order.
        workers: Registry of live workers per task id.
        sessions: Registry of continuation sessions per task id.
        reporter: Receives one result message per handled task.
        context_generator: Renders the task context.
    """

    def __init__(
        self,
        config: WorkcellConfig,
        backends: Sequence[WorkerBackend],
        reporter: ResultReporter,
        workers: WorkerRegistry | None = None,
        sessions: SessionRegistry | None = None,
        context_generator: ContextGenerator | None = None,
    ) -> None:
        if not backends:
            raise ValueError("TaskDispatcher needs at least one backend")

        self.config = config
        self.backends = list(backends)
        self.reporter = reporter
        self.workers = workers or WorkerRegistry()
        self.sessions = sessions or SessionRegistry(config.dispatch.sessions_dir)
        self.context_generator = context_generator or ContextGenerator()

        self._semaphore = asyncio.Semaphore(config.dispatch.max_concurrent_tasks)
        self._inflight: set[asyncio.Task[ExecutionResult]] = set()
        self._accepting = True
        self._logger = logger.bind(component="TaskDispatcher")

    @classmethod
    def from_config(cls, config: WorkcellConfig, reporter: ResultReporter | None = None) -> TaskDispatcher:
        """Build a dispatcher with backends and reporter taken from config."""
        return cls(
            config,
            build_backends(config),
            reporter or build_reporter(config.reporter),
        )

    # ------------------------------------------------------------------
    # Worker provisioning
    # ------------------------------------------------------------------

    async def _provision(self, task: Task) -> tuple[WorkerBackend, Worker]:
        """Create and ready a worker, falling back through the backends.

        Raises:
            BackendUnavailable: If every backend failed to create or ready
                a worker.
        """
        timeout = self.config.dispatch.readiness_timeout_seconds
        attempts: list[tuple[str, WorkcellError]] = []

        for backend in self.backends:
            kind = backend.kind.value
            try:
                worker = await backend.create(task)
            except CreationFailed as e:
                self._logger.warning("backend_creation_failed", backend=kind, error=e.message)
                attempts.append((kind, e))
                continue

            try:
                await backend.wait_ready(worker, timeout)
            except ReadinessTimeout as e:
                e.logs = await backend.fetch_logs(worker)
                self._logger.warning(
                    "backend_not_ready",
                    backend=kind,
                    worker_id=worker.id,
                    error=e.message,
                    logs=e.logs[-2000:],
                )
                await backend.delete(worker)
                attempts.append((kind, e))
                continue
            except BaseException:
                # Cancelled mid-wait: the worker must not outlive the task
                await asyncio.shield(backend.delete(worker))
                raise

            self._logger.info("worker_acquired", backend=kind, worker_id=worker.id)
            return backend, worker

        raise BackendUnavailable(task.id, attempts)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def build_primary_command(self, task: Task) -> str:
        """Return the primary command line for a task."""
        command = self.config.dispatch.primary_command
        if self.config.dispatch.append_task_flags:
            command += f" --max-turns {task.max_turns} --output-format {shlex.quote(task.output_format)}"
        return command

    def _worker_session_file(self, worker: Worker, session_path: Path) -> str:
        session_dir = worker.metadata.get("session_dir")
        if session_dir:
            return str(PurePosixPath(session_dir) / session_path.name)
        return str(session_path)

    async def _run_primary(
        self,
        backend: WorkerBackend,
        worker: Worker,
        task: Task,
        context: str,
        session_file: str,
    ) -> str:
        command = self.build_primary_command(task)
        env = {
            "TASK_ID": task.id,
            "REPOSITORY": task.repository,
            "SESSION_FILE": session_file,
        }
        timeout = self.config.dispatch.execution_timeout_seconds

        self._logger.info("primary_command_starting", worker_id=worker.id, command=command)
        started = time.monotonic()
        try:
            output = await asyncio.wait_for(
                backend.exec(worker, command, stdin=context, env=env),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExecutionFailed(
                f"Primary command did not finish within {timeout:g}s",
                task_id=task.id,
            ) from e

        self._logger.info(
            "primary_command_completed",
            worker_id=worker.id,
            output_length=len(output),
            duration_seconds=round(time.monotonic() - started, 2),
        )
        return output

    async def _run_directives(
        self,
        backend: WorkerBackend,
        worker: Worker,
        commands: list[str],
    ) -> tuple[int, int]:
        succeeded = failed = 0
        for index, command in enumerate(commands, start=1):
            self._logger.info("directive_starting", worker_id=worker.id, index=index, command=command)
            try:
                output = await backend.exec(worker, command)
            except ExecutionFailed as e:
                failed += 1
                self._logger.warning(
                    "directive_failed",
                    worker_id=worker.id,
                    index=index,
                    command=command,
                    error=e.message,
                    exit_code=e.exit_code,
                )
                continue
            succeeded += 1
            self._logger.info("directive_completed", worker_id=worker.id, index=index, output=output[-1000:])
        return succeeded, failed

    async def _release(self, task_id: str, backend: WorkerBackend, worker: Worker) -> None:
        if await self.workers.release(task_id, worker):
            await backend.delete(worker)

    async def _process(self, task: Task) -> TaskOutcome:
        session_path = await self.sessions.get_or_create(task.id)
        lease = await self.workers.acquire(task.id, lambda: self._provision(task))
        backend, worker = lease.backend, lease.worker
        bind_task_context(task.id, backend.kind.value)

        try:
            repo = self.config.repository_for(task.repository)
            session_file = self._worker_session_file(worker, session_path)
            context = self.context_generator.generate_task_context(
                task,
                worker,
                session_file=session_file,
                repository=repo,
            )

            self.workers.mark_executing(task.id)
            try:
                output = await self._run_primary(backend, worker, task, context, session_file)
                commands = parse_directives(output)
                succeeded, failed = await self._run_directives(backend, worker, commands)
            finally:
                self.workers.mark_idle(task.id)

            self.sessions.touch(task.id)
            return TaskOutcome(output, backend.kind, succeeded, failed)
        finally:
            await asyncio.shield(self._release(task.id, backend, worker))

    async def process(self, task: Task) -> str:
        """Execute one task and return the primary command's output.

        Args:
            task: Task to execute.

        Returns:
            Captured primary command output.

        Raises:
            BackendUnavailable: If no backend produced a ready worker.
            ExecutionFailed: If the primary command failed or timed out.
        """
        new_correlation_id()
        bind_task_context(task.id)
        outcome = await self._process(task)
        return outcome.output

    async def handle(self, task: Task) -> ExecutionResult:
        """Process a task and report its outcome exactly once.

        Never raises for task failures; the result carries the error.
        Cancellation is reported and then propagated.

        Args:
            task: Task to execute.

        Returns:
            ExecutionResult describing the outcome.
        """
        new_correlation_id()
        bind_task_context(task.id)
        started = time.monotonic()
        self._logger.info("task_started", task_id=task.id, repository=task.repository)

        try:
            outcome = await self._process(task)
        except asyncio.CancelledError:
            self._logger.warning("task_cancelled", task_id=task.id)
            await self._report(task.id, f"Task #{task.id} was cancelled before it completed.", success=False)
            raise
        except WorkcellError as e:
            self._logger.error(
                "task_failed",
                task_id=task.id,
                error=e.message,
                error_type=type(e).__name__,
            )
            result = ExecutionResult(
                task_id=task.id,
                success=False,
                output=getattr(e, "output", ""),
                error_detail=e.to_message(),
                duration_seconds=time.monotonic() - started,
            )
            await self._report(task.id, f"Task #{task.id} failed: {e.to_message()}", success=False)
            return result
        except Exception as e:
            self._logger.exception("task_crashed", task_id=task.id, error_type=type(e).__name__)
            result = ExecutionResult(
                task_id=task.id,
                success=False,
                error_detail=f"Internal error: {type(e).__name__}: {e}",
                duration_seconds=time.monotonic() - started,
            )
            await self._report(task.id, f"Task #{task.id} failed with an internal error.", success=False)
            return result

        result = ExecutionResult(
            task_id=task.id,
            success=True,
            output=outcome.output,
            backend=outcome.backend,
            directives_run=outcome.directives_run,
            directives_failed=outcome.directives_failed,
            duration_seconds=time.monotonic() - started,
        )
        self._logger.info(
            "task_completed",
            task_id=task.id,
            backend=outcome.backend.value,
            directives_run=outcome.directives_run,
            directives_failed=outcome.directives_failed,
            duration_seconds=round(result.duration_seconds, 2),
        )
        await self._report(task.id, self.format_success_message(task, outcome), success=True)
        return result

    def format_success_message(self, task: Task, outcome: TaskOutcome) -> str:
        """Render the success message handed to the reporter."""
        lines = [f"Task #{task.id} completed on the {outcome.backend.value} backend."]
        if outcome.directives_run or outcome.directives_failed:
            lines.append(
                f"Follow-up commands: {outcome.directives_run} succeeded, {outcome.directives_failed} failed."
            )
        output = outcome.output.strip()
        if output:
            if len(output) > MAX_REPORTED_OUTPUT:
                output = "...\n" + output[-MAX_REPORTED_OUTPUT:]
            lines.extend(["", output])
        return "\n".join(lines)

    async def _report(self, task_id: str, message: str, *, success: bool) -> None:
        try:
            await self.reporter.post_result(task_id, message, success=success)
        except Exception as e:
            self._logger.error("result_report_failed", task_id=task_id, error=str(e), error_type=type(e).__name__)

    # ------------------------------------------------------------------
    # Concurrency and lifecycle
    # ------------------------------------------------------------------

    def submit(self, task: Task) -> asyncio.Task[ExecutionResult]:
        """Schedule a task for handling without waiting for it.

        At most ``dispatch.max_concurrent_tasks`` tasks run at once; the
        rest wait for a slot.

        Args:
            task: Task to execute.

        Returns:
            asyncio.Task resolving to the ExecutionResult.

        Raises:
            RuntimeError: If the dispatcher is shutting down.
        """
        if not self._accepting:
            raise RuntimeError("TaskDispatcher is shutting down")

        async def _bounded() -> ExecutionResult:
            async with self._semaphore:
                return await self.handle(task)

        scheduled = asyncio.create_task(_bounded(), name=f"workcell-task-{task.id}")
        self._inflight.add(scheduled)
        scheduled.add_done_callback(self._inflight.discard)
        self._logger.debug("task_submitted", task_id=task.id, inflight=len(self._inflight))
        return scheduled

    @property
    def inflight(self) -> int:
        """Number of submitted tasks not yet finished."""
        return len(self._inflight)

    async def drain(self) -> list[ExecutionResult]:
        """Wait for every submitted task to finish.

        Returns:
            Results of the tasks that completed (cancelled tasks are omitted).
        """
        pending = list(self._inflight)
        if not pending:
            return []
        outcomes = await asyncio.gather(*pending, return_exceptions=True)
        return [o for o in outcomes if isinstance(o, ExecutionResult)]

    def active_workers(self) -> list[Worker]:
        """Return the workers currently registered."""
        return self.workers.snapshot()

    async def reap_stale_workers(self, max_age_seconds: float) -> int:
        """Delete registered workers older than a maximum age.

        Dispatches still holding a reaped worker see their next command
        fail; their release no longer deletes anything.

        Args:
            max_age_seconds: Age above which a worker is considered stale.

        Returns:
            Number of workers deleted.
        """
        reaped = 0
        for task_id, entry in self.workers.entries().items():
            if entry.worker.age_seconds <= max_age_seconds:
                continue
            removed = await self.workers.remove(task_id)
            if removed is None:
                continue
            self._logger.warning(
                "worker_reaped",
                task_id=task_id,
                worker_id=removed.worker.id,
                age_seconds=round(removed.worker.age_seconds, 1),
            )
            await removed.backend.delete(removed.worker)
            reaped += 1
        return reaped

    async def shutdown(self) -> None:
        """Stop accepting tasks, let in-flight work finish, and clean up.

        Tasks still running after ``dispatch.shutdown_grace_seconds`` are
        cancelled. Remaining workers are deleted and backend and reporter
        resources are released.
        """
        self._accepting = False
        pending = set(self._inflight)
        self._logger.info("dispatcher_shutting_down", inflight=len(pending))

        if pending:
            _, still_running = await asyncio.wait(pending, timeout=self.config.dispatch.shutdown_grace_seconds)
            for scheduled in still_running:
                scheduled.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
                self._logger.warning("tasks_cancelled_on_shutdown", count=len(still_running))

        for task_id in list(self.workers.entries()):
            removed = await self.workers.remove(task_id)
            if removed is not None:
                await removed.backend.delete(removed.worker)

        for backend in self.backends:
            await backend.close()
        await self.reporter.close()
        self._logger.info("dispatcher_stopped")
