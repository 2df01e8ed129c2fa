"""Error taxonomy for the Workcell execution engine.

Every failure the engine can report maps to one of the classes below.
Backend creation and readiness failures are recovered by the dispatcher
(it advances to the next backend); execution failures surface to the
caller; cleanup failures are only ever logged.

All errors expose ``to_message()`` which renders a short human-readable
description suitable for handing to a result reporter. Raw platform
tracebacks never appear in that text.
"""

from __future__ import annotations

from typing import Any


class WorkcellError(Exception):
    """Base class for all engine errors.

    Attributes:
        message: Human-readable description of the failure.
        task_id: Task identifier the error relates to, if known.
    """

    def __init__(self, message: str, task_id: str | None = None) -> None:
        self.message = message
        self.task_id = task_id
        super().__init__(message)

    def to_message(self) -> str:
        """Render the error for a human reader.

        Returns:
            Single-paragraph description of the failure.
        """
        return self.message


class ConfigError(WorkcellError):
    """A required setting is missing or invalid. Fatal at startup."""


class CreationFailed(WorkcellError):
    """The platform rejected a worker creation request."""

    def __init__(self, message: str, backend: str, task_id: str | None = None) -> None:
        self.backend = backend
        super().__init__(message, task_id=task_id)


class ReadinessTimeout(WorkcellError):
    """A worker did not become ready within the allowed time.

    Attributes:
        backend: Backend kind that produced the worker.
        worker_id: Identifier of the worker that never became ready.
        timeout: Seconds waited before giving up.
        logs: Worker logs captured for diagnostics (may be empty).
    """

    def __init__(
        self,
        message: str,
        backend: str,
        worker_id: str,
        timeout: float,
        task_id: str | None = None,
        logs: str = "",
    ) -> None:
        self.backend = backend
        self.worker_id = worker_id
        self.timeout = timeout
        self.logs = logs
        super().__init__(message, task_id=task_id)


class BackendUnavailable(WorkcellError):
    """Every configured backend failed at creation or readiness.

    Attributes:
        attempts: Ordered list of ``(backend, error)`` pairs, one per candidate.
    """

    def __init__(
        self,
        task_id: str,
        attempts: list[tuple[str, WorkcellError]],
    ) -> None:
        self.attempts = attempts
        tried = ", ".join(f"{backend}: {error.message}" for backend, error in attempts)
        super().__init__(
            f"No backend could provide a worker for task {task_id} ({tried or 'none configured'})",
            task_id=task_id,
        )


class TransportError(WorkcellError):
    """A command sent through an exec transport failed.

    Attributes:
        output: Output captured before or during the failure.
        exit_code: Exit status of the command, if it ran to completion.
    """

    def __init__(self, message: str, output: str = "", exit_code: int | None = None) -> None:
        self.output = output
        self.exit_code = exit_code
        super().__init__(message)


class ExecutionFailed(WorkcellError):
    """The primary or a secondary command failed after the worker was ready."""

    def __init__(
        self,
        message: str,
        task_id: str | None = None,
        output: str = "",
        exit_code: int | None = None,
    ) -> None:
        self.output = output
        self.exit_code = exit_code
        super().__init__(message, task_id=task_id)

    def to_message(self) -> str:
        if not self.output:
            return self.message
        # Keep reports readable; full output is in the logs
        tail = self.output[-2000:]
        return f"{self.message}\n\nOutput:\n{tail}"


class CleanupFailed(WorkcellError):
    """Worker teardown failed. Logged only, never escalated."""

    def __init__(self, message: str, worker_id: str, details: dict[str, Any] | None = None) -> None:
        self.worker_id = worker_id
        self.details = details or {}
        super().__init__(message)


class InvalidWorkerTransitionError(WorkcellError):
    """Raised when a worker state change would regress its lifecycle.

    Attributes:
        current: Current worker state value.
        target: Attempted target state value.
        worker_id: Worker that failed to transition.
    """

    def __init__(self, current: str, target: str, worker_id: str | None = None) -> None:
        self.current = current
        self.target = target
        self.worker_id = worker_id
        msg = f"Invalid worker transition from {current} to {target}"
        if worker_id:
            msg += f" for worker {worker_id}"
        super().__init__(msg)
