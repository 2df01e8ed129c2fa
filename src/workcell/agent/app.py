"""FastAPI application for the in-worker exec agent.

Example usage:
    >>> from pathlib import Path
    >>> from workcell.agent.app import create_agent_app
    >>>
    >>> app = create_agent_app(owner_id="42", workspace=Path("/workspace"))
    >>>
    >>> import uvicorn
    >>> uvicorn.run(app, uds="/tmp/workcell-agent.sock")
"""

from __future__ import annotations

from pathlib import Path

from fastapi import FastAPI

from workcell.agent.protocol import AgentHealth, ExecRequest, ExecResponse
from workcell.errors import TransportError
from workcell.logging import get_logger
from workcell.transports.base import ExecTransport
from workcell.transports.host import HostTransport

logger = get_logger(__name__)

APP_VERSION = "0.1.0"


def create_agent_app(
    owner_id: str,
    workspace: Path,
    transport: ExecTransport | None = None,
) -> FastAPI:
    """Create the exec agent application.

    Args:
        owner_id: Identity this agent serves. Requests for any other owner
            are rejected before anything runs.
        workspace: Default working directory for commands.
        transport: Transport used to run commands locally. Defaults to a
            HostTransport.

    Returns:
        Configured FastAPI application.
    """
    runner = transport or HostTransport()

    app = FastAPI(
        title="Workcell Exec Agent",
        version=APP_VERSION,
        docs_url=None,
        redoc_url=None,
    )
    app.state.owner_id = owner_id
    app.state.workspace = workspace

    @app.get("/health", response_model=AgentHealth)
    async def health() -> AgentHealth:
        return AgentHealth(status="ok", owner_id=owner_id)

    @app.post("/exec", response_model=ExecResponse)
    async def execute(request: ExecRequest) -> ExecResponse:
        if request.owner_id != owner_id:
            logger.warning(
                "agent_owner_mismatch",
                expected=owner_id,
                received=request.owner_id,
            )
            return ExecResponse(
                success=False,
                error=f"Owner mismatch: expected {owner_id}, got {request.owner_id}",
            )

        if request.type != "exec":
            return ExecResponse(success=False, error=f"Unknown message type: {request.type}")

        if not request.command.strip():
            return ExecResponse(success=False, error="Empty command")

        logger.info("agent_exec_received", owner_id=owner_id, command=request.command[:200])

        try:
            output = await runner.run(
                str(workspace),
                request.command,
                stdin=request.stdin,
                cwd=request.cwd,
                env=request.env or None,
            )
        except TransportError as e:
            return ExecResponse(
                success=False,
                output=e.output,
                error=e.message,
                exit_code=e.exit_code,
            )

        return ExecResponse(success=True, output=output, exit_code=0)

    logger.info("agent_app_created", owner_id=owner_id, workspace=str(workspace))
    return app
