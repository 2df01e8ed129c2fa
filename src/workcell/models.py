"""Core data model for the Workcell engine.

Defines the task request handed in by the request collaborator, the
worker record owned by a backend, the continuation session record, and the
transient execution result. Worker state changes are validated against
``VALID_TRANSITIONS`` so the lifecycle only ever moves forward.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, field_validator

from workcell.errors import InvalidWorkerTransitionError

logger = structlog.get_logger(__name__)


class BackendKind(str, Enum):
    """Isolation mechanism used to realize a worker."""

    HOST = "host"
    CONTAINER = "container"
    POD = "pod"


class WorkerState(str, Enum):
    """Worker lifecycle states.

    State transitions:
        REQUESTED → CREATED → READY ⇄ EXECUTING
            ↓          ↓        ↓        ↓
            └──────────┴──→ TERMINATING → DELETED
    """

    REQUESTED = "requested"
    CREATED = "created"
    READY = "ready"
    EXECUTING = "executing"
    TERMINATING = "terminating"
    DELETED = "deleted"


# EXECUTING -> READY returns a shared worker to the pool of its task between leases.
VALID_TRANSITIONS: dict[WorkerState, set[WorkerState]] = {
    WorkerState.REQUESTED: {WorkerState.CREATED, WorkerState.TERMINATING},
    WorkerState.CREATED: {WorkerState.READY, WorkerState.TERMINATING},
    WorkerState.READY: {WorkerState.EXECUTING, WorkerState.TERMINATING},
    WorkerState.EXECUTING: {WorkerState.READY, WorkerState.TERMINATING},
    WorkerState.TERMINATING: {WorkerState.DELETED},
    WorkerState.DELETED: set(),
}

OUTPUT_FORMATS = {"text", "json", "stream-json"}


class Task(BaseModel):
    """A unit of requested work.

    Attributes:
        id: Task identifier (e.g. the originating issue number)
        instruction: Free-text description of the work
        repository: Target repository identifier
        max_turns: Turn bound passed to the executed tool
        output_format: Output format requested from the executed tool
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(min_length=1)
    instruction: str
    repository: str = ""
    max_turns: int = Field(default=10, ge=1)
    output_format: str = "text"

    @field_validator("output_format")
    @classmethod
    def validate_output_format(cls, v: str) -> str:
        """Validate the output format is one the tool understands."""
        if v not in OUTPUT_FORMATS:
            raise ValueError(f"Invalid output format: {v}. Must be one of {OUTPUT_FORMATS}")
        return v


@dataclass
class Worker:
    """An ephemeral execution environment created for one task.

    Owned by the backend that created it; the dispatcher only holds a
    reference through the worker registry.

    Attributes:
        id: Platform identifier (container name, pod name, or workspace id)
        task_id: Task the worker was created for
        backend: Backend kind that owns the worker
        workspace_path: Workspace path as seen by commands inside the worker
        repository: Target repository of the task
        state: Current lifecycle state
        host_workspace: Workspace directory on the host, when one exists
        auth_mount_ref: Reference to mounted credentials (host path or secret)
        image: Image the worker runs, for container and pod workers
        created_at: Creation timestamp
        metadata: Backend-specific details (container id, pod phase, ...)
    """

    id: str
    task_id: str
    backend: BackendKind
    workspace_path: str
    repository: str = ""
    state: WorkerState = WorkerState.REQUESTED
    host_workspace: Path | None = None
    auth_mount_ref: str | None = None
    image: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def transition(self, target: WorkerState) -> None:
        """Move the worker to a new lifecycle state.

        Args:
            target: State to move to.

        Raises:
            InvalidWorkerTransitionError: If the move would regress the lifecycle.
        """
        with self._lock:
            current = self.state
            if target not in VALID_TRANSITIONS[current]:
                raise InvalidWorkerTransitionError(current.value, target.value, self.id)
            self.state = target

        logger.debug(
            "worker_transition",
            worker_id=self.id,
            task_id=self.task_id,
            from_state=current.value,
            to_state=target.value,
        )

    def begin_termination(self) -> bool:
        """Claim the right to delete this worker.

        Returns:
            True for exactly one caller; False if termination already began.
        """
        with self._lock:
            if self.state in (WorkerState.TERMINATING, WorkerState.DELETED):
                return False
            self.state = WorkerState.TERMINATING
        return True

    @property
    def is_live(self) -> bool:
        """Whether the worker has not started terminating."""
        return self.state not in (WorkerState.TERMINATING, WorkerState.DELETED)

    @property
    def age_seconds(self) -> float:
        """Seconds since the worker was created."""
        return (datetime.now(timezone.utc) - self.created_at).total_seconds()


@dataclass
class Session:
    """Continuation reference for a task's multi-turn conversation.

    Attributes:
        task_id: Task the session belongs to
        session_path: Path of the session file
        created_at: Time the session was registered
        last_used: Time of the most recent completed primary execution
    """

    task_id: str
    session_path: Path
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_used: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ExecutionResult(BaseModel):
    """Outcome of processing one task. Transient, never persisted.

    Attributes:
        task_id: Task the result belongs to
        success: Whether the primary command succeeded
        output: Captured primary command output
        error_detail: Human-readable failure description
        backend: Backend kind that ran the task, if a worker was acquired
        directives_run: Secondary commands executed successfully
        directives_failed: Secondary commands that failed
        duration_seconds: Wall-clock processing time
    """

    task_id: str
    success: bool
    output: str = ""
    error_detail: str | None = None
    backend: BackendKind | None = None
    directives_run: int = Field(default=0, ge=0)
    directives_failed: int = Field(default=0, ge=0)
    duration_seconds: float = Field(default=0.0, ge=0.0)
