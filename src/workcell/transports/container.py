"""Docker exec transport.

Wraps docker-py's exec API with async compatibility. The docker-py client
is blocking, so every call is pushed to a worker thread. Commands without
standard input go through ``exec_run``; commands with input attach to the
exec socket and stream the input over it.
"""

from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable

from docker.errors import APIError, DockerException, NotFound
from docker.utils.socket import frames_iter

import docker
from workcell.errors import TransportError
from workcell.logging import get_logger
from workcell.transports.base import ExecTransport, build_shell_script

STDIN_CHUNK_SIZE = 64 * 1024


class ContainerTransport(ExecTransport):
    """Executes commands inside a running, named Docker container.

    Attributes:
        client_factory: Callable returning a connected Docker client. Shared
            with the container backend so both use one connection.
    """

    name = "container"

    def __init__(self, client_factory: Callable[[], docker.DockerClient]) -> None:
        self.client_factory = client_factory
        self.logger = get_logger(__name__)

    def _exec(
        self,
        target: str,
        script: str,
        cwd: str | None,
        env: dict[str, str] | None,
    ) -> tuple[int | None, str]:
        client = self.client_factory()
        container = client.containers.get(target)
        result = container.exec_run(
            ["sh", "-c", script],
            stdout=True,
            stderr=True,
            workdir=cwd,
            environment=env or None,
        )
        raw = result.output or b""
        return result.exit_code, raw.decode("utf-8", errors="replace")

    def _exec_with_stdin(
        self,
        target: str,
        script: str,
        data: bytes,
        cwd: str | None,
        env: dict[str, str] | None,
    ) -> tuple[int | None, str]:
        api = self.client_factory().api
        exec_id = api.exec_create(
            target,
            ["sh", "-c", script],
            stdout=True,
            stderr=True,
            stdin=True,
            workdir=cwd,
            environment=env or None,
        )["Id"]
        sock = api.exec_start(exec_id, socket=True)
        # Unwrap the SocketIO docker-py returns for plain sockets
        raw_sock = getattr(sock, "_sock", sock)

        # Written from a second thread so output can drain while input flows
        writer = threading.Thread(target=self._send_stdin, args=(raw_sock, data), daemon=True)
        writer.start()
        chunks: list[bytes] = []
        try:
            for _stream_id, chunk in frames_iter(sock, tty=False):
                chunks.append(chunk)
        finally:
            writer.join(timeout=1.0)
            sock.close()
            if raw_sock is not sock:
                raw_sock.close()

        exit_code = api.exec_inspect(exec_id).get("ExitCode")
        return exit_code, b"".join(chunks).decode("utf-8", errors="replace")

    def _send_stdin(self, raw_sock: Any, data: bytes) -> None:
        try:
            for offset in range(0, len(data), STDIN_CHUNK_SIZE):
                raw_sock.sendall(data[offset : offset + STDIN_CHUNK_SIZE])
        except OSError as e:
            # The command exited before reading all of its input
            self.logger.warning("container_stdin_write_failed", error=str(e), bytes_total=len(data))

    async def run(
        self,
        target: str,
        command: str,
        *,
        stdin: str | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        self.logger.debug(
            "container_exec_starting",
            container=target,
            command=command[:200],
            has_stdin=stdin is not None,
        )

        try:
            if stdin is None:
                exit_code, output = await asyncio.to_thread(self._exec, target, command, cwd, env)
            else:
                data = stdin.encode("utf-8")
                script = build_shell_script(command, stdin_bytes=len(data))
                exit_code, output = await asyncio.to_thread(self._exec_with_stdin, target, script, data, cwd, env)
        except NotFound as e:
            raise TransportError(f"Container not found: {target}") from e
        except APIError as e:
            raise TransportError(f"Docker exec failed in {target}: {e.explanation or e}") from e
        except DockerException as e:
            raise TransportError(f"Docker exec failed in {target}: {e}") from e
        except OSError as e:
            raise TransportError(f"Docker exec socket failed in {target}: {e}") from e

        if exit_code != 0:
            self.logger.warning(
                "container_exec_failed",
                container=target,
                exit_code=exit_code,
                output=output[-500:],
            )
            raise TransportError(
                f"Command exited with status {exit_code} in container {target}",
                output=output,
                exit_code=exit_code,
            )

        self.logger.debug("container_exec_succeeded", container=target, output_bytes=len(output))
        return output
