"""Wire models for the in-worker exec protocol.

A client sends an ``ExecRequest`` naming the owner it believes the agent
serves; the agent answers with an ``ExecResponse``. Requests for another
owner are rejected without running anything.
"""

from __future__ import annotations

from pydantic import BaseModel, Field


class ExecRequest(BaseModel):
    """Command request sent to an exec agent.

    Attributes:
        owner_id: Identity the caller expects the agent to hold (the task id)
        command: Shell command text
        type: Message type; only ``"exec"`` is understood
        cwd: Optional working directory override
        stdin: Optional text for the command's standard input
        env: Optional environment additions
    """

    owner_id: str
    command: str
    type: str = "exec"
    cwd: str | None = None
    stdin: str | None = None
    env: dict[str, str] = Field(default_factory=dict)


class ExecResponse(BaseModel):
    """Agent reply to an ExecRequest.

    Attributes:
        success: Whether the command ran and exited zero
        output: Captured combined output
        error: Failure description when success is False
        exit_code: Exit status when the command ran
    """

    success: bool
    output: str = ""
    error: str | None = None
    exit_code: int | None = None


class AgentHealth(BaseModel):
    """Agent liveness payload."""

    status: str
    owner_id: str
