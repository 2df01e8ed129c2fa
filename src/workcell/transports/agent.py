"""HTTP client side of the in-worker exec protocol."""

from __future__ import annotations

from pathlib import Path

import httpx

from workcell.agent.protocol import ExecRequest, ExecResponse
from workcell.errors import TransportError
from workcell.logging import get_logger
from workcell.transports.base import ExecTransport


class AgentTransport(ExecTransport):
    """Sends commands to an exec agent over HTTP or a unix domain socket.

    The run target is the owner id the agent is expected to serve; the
    agent refuses requests addressed to any other owner.

    Attributes:
        base_url: Agent base URL (a placeholder host is used with sockets)
        socket_path: Unix socket the agent listens on, if any
        timeout_seconds: Request timeout covering the whole command run
    """

    name = "agent"

    def __init__(
        self,
        base_url: str | None = None,
        socket_path: Path | None = None,
        timeout_seconds: float = 3600.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if base_url is None and socket_path is None and transport is None:
            raise ValueError("AgentTransport needs a base_url, socket_path or transport")
        self.base_url = base_url or "http://workcell-agent"
        self.socket_path = socket_path
        self.timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self.logger = get_logger(__name__)

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            transport = self._transport
            if transport is None and self.socket_path is not None:
                transport = httpx.AsyncHTTPTransport(uds=str(self.socket_path))
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout_seconds,
                transport=transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def run(
        self,
        target: str,
        command: str,
        *,
        stdin: str | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        request = ExecRequest(
            owner_id=target,
            command=command,
            cwd=cwd,
            stdin=stdin,
            env=env or {},
        )

        try:
            client = await self._get_client()
            response = await client.post("/exec", json=request.model_dump())
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise TransportError(
                f"Exec agent returned HTTP {e.response.status_code}",
                output=e.response.text[:2000],
            ) from e
        except httpx.RequestError as e:
            raise TransportError(f"Exec agent unreachable: {e}") from e

        reply = ExecResponse.model_validate(response.json())
        if not reply.success:
            self.logger.warning(
                "agent_exec_failed",
                owner_id=target,
                error=reply.error,
                exit_code=reply.exit_code,
            )
            raise TransportError(
                reply.error or "Exec agent reported failure",
                output=reply.output,
                exit_code=reply.exit_code,
            )

        return reply.output
