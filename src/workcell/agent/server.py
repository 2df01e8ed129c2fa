"""Process runner for the exec agent.

Settings come from the environment (``WORKCELL_AGENT_*``), mirroring how
workers receive their identity when they are started.
"""

from __future__ import annotations

from pathlib import Path

import uvicorn
from pydantic import Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from workcell.agent.app import create_agent_app
from workcell.config import LoggingConfig
from workcell.errors import ConfigError
from workcell.logging import get_logger, setup_logging


class AgentSettings(BaseSettings):
    """Exec agent settings.

    Attributes:
        owner_id: Identity the agent serves (required)
        workspace: Default working directory for commands
        socket_path: Unix socket to listen on; takes precedence over host/port
        host: TCP bind address when no socket is configured
        port: TCP port when no socket is configured
    """

    model_config = SettingsConfigDict(env_prefix="WORKCELL_AGENT_", extra="ignore")

    owner_id: str = Field(min_length=1)
    workspace: Path = Field(default=Path("/workspace"))
    socket_path: Path | None = Field(default=Path("/tmp/workcell-agent.sock"))
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8080, ge=1, le=65535)


def build_server(settings: AgentSettings) -> uvicorn.Server:
    """Build a uvicorn server for the agent.

    A stale socket file left by a previous agent is removed first.

    Args:
        settings: Agent settings

    Returns:
        Unstarted uvicorn Server.
    """
    app = create_agent_app(owner_id=settings.owner_id, workspace=settings.workspace)

    if settings.socket_path is not None:
        settings.socket_path.unlink(missing_ok=True)
        config = uvicorn.Config(app, uds=str(settings.socket_path), log_config=None)
    else:
        config = uvicorn.Config(app, host=settings.host, port=settings.port, log_config=None)

    return uvicorn.Server(config)


def main() -> None:
    """Run the exec agent until interrupted."""
    setup_logging(LoggingConfig())
    try:
        settings = AgentSettings()
    except ValidationError as e:
        raise ConfigError(f"Invalid exec agent settings: {e}") from e
    logger = get_logger(__name__)
    logger.info(
        "agent_starting",
        owner_id=settings.owner_id,
        socket_path=str(settings.socket_path) if settings.socket_path else None,
    )
    build_server(settings).run()
