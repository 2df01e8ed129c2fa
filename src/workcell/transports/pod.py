"""Kubernetes pod exec transport.

Opens a multiplexed exec websocket against a running pod and collects
standard output and standard error in separate buffers. When a command
fails, the stderr text is folded into the error message and whatever
stdout arrived is kept on the error for diagnostics, including when the
websocket drops mid-command. Standard input is written to the websocket
in chunks rather than embedded in the command.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

from kubernetes.client import CoreV1Api
from kubernetes.client.rest import ApiException
from kubernetes.stream import stream

from workcell.errors import TransportError
from workcell.logging import get_logger
from workcell.transports.base import ExecTransport, build_shell_script

STDIN_CHUNK_SIZE = 64 * 1024


class PodTransport(ExecTransport):
    """Executes commands inside a pod through the Kubernetes exec API.

    Attributes:
        api_factory: Callable returning a configured CoreV1Api
        namespace: Namespace of the target pods
        container: Container name inside the pod (None for single-container pods)
        update_interval: Seconds to block per websocket read
    """

    name = "pod"

    def __init__(
        self,
        api_factory: Callable[[], CoreV1Api],
        namespace: str,
        container: str | None = None,
        update_interval: float = 1.0,
    ) -> None:
        self.api_factory = api_factory
        self.namespace = namespace
        self.container = container
        self.update_interval = update_interval
        self.logger = get_logger(__name__)

    def _stream(
        self,
        target: str,
        script: str,
        data: bytes | None,
        stdout_parts: list[str],
        stderr_parts: list[str],
    ) -> int | None:
        api = self.api_factory()
        kwargs: dict[str, Any] = {
            "command": ["sh", "-c", script],
            "stderr": True,
            "stdin": data is not None,
            "stdout": True,
            "tty": False,
            "_preload_content": False,
        }
        if self.container:
            kwargs["container"] = self.container

        resp = stream(
            api.connect_get_namespaced_pod_exec,
            target,
            self.namespace,
            **kwargs,
        )

        try:
            if data:
                for offset in range(0, len(data), STDIN_CHUNK_SIZE):
                    resp.write_stdin(data[offset : offset + STDIN_CHUNK_SIZE])
            while resp.is_open():
                resp.update(timeout=self.update_interval)
                if resp.peek_stdout():
                    stdout_parts.append(resp.read_stdout())
                if resp.peek_stderr():
                    stderr_parts.append(resp.read_stderr())
            # Frames that arrived with the close
            if resp.peek_stdout():
                stdout_parts.append(resp.read_stdout())
            if resp.peek_stderr():
                stderr_parts.append(resp.read_stderr())
        finally:
            resp.close()

        return resp.returncode

    async def run(
        self,
        target: str,
        command: str,
        *,
        stdin: str | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        data = stdin.encode("utf-8") if stdin is not None else None
        script = build_shell_script(
            command,
            stdin_bytes=len(data) if data is not None else None,
            cwd=cwd,
            env=env,
        )

        self.logger.debug(
            "pod_exec_starting",
            pod=target,
            namespace=self.namespace,
            command=command[:200],
            stdin_bytes=len(data) if data is not None else 0,
        )

        stdout_parts: list[str] = []
        stderr_parts: list[str] = []
        try:
            returncode = await asyncio.to_thread(self._stream, target, script, data, stdout_parts, stderr_parts)
        except ApiException as e:
            raise TransportError(
                f"Pod exec failed in {target}: {e.status} {e.reason}",
                output="".join(stdout_parts),
            ) from e
        except Exception as e:
            # websocket and connection errors from the stream client
            stdout = "".join(stdout_parts)
            self.logger.warning(
                "pod_exec_stream_failed",
                pod=target,
                error=str(e),
                error_type=type(e).__name__,
                stdout_bytes=len(stdout),
            )
            raise TransportError(f"Pod exec stream failed in {target}: {e}", output=stdout) from e

        stdout = "".join(stdout_parts)
        stderr = "".join(stderr_parts)
        if returncode != 0:
            message = f"Command exited with status {returncode} in pod {target}"
            if stderr:
                message += f"\nStderr: {stderr.strip()}"
            self.logger.warning(
                "pod_exec_failed",
                pod=target,
                returncode=returncode,
                stderr=stderr[-500:],
                stdout_bytes=len(stdout),
            )
            raise TransportError(message, output=stdout, exit_code=returncode)

        self.logger.info("pod_exec_succeeded", pod=target, output_bytes=len(stdout))
        return stdout
