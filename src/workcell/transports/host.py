"""Local subprocess exec transport."""

from __future__ import annotations

import asyncio
import os

from workcell.errors import TransportError
from workcell.logging import get_logger
from workcell.transports.base import ExecTransport


class HostTransport(ExecTransport):
    """Runs commands as local subprocesses rooted at the worker workspace.

    Standard error is merged into standard output so the captured text
    matches what a user would have seen in a terminal.
    """

    name = "host"

    def __init__(self, shell: str = "sh") -> None:
        self.shell = shell
        self.logger = get_logger(__name__)

    async def run(
        self,
        target: str,
        command: str,
        *,
        stdin: str | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        workdir = cwd or target
        proc_env = {**os.environ, **env} if env else None

        self.logger.debug(
            "host_command_starting",
            cwd=workdir,
            command=command[:200],
            has_stdin=stdin is not None,
        )

        try:
            proc = await asyncio.create_subprocess_exec(
                self.shell,
                "-c",
                command,
                cwd=workdir,
                env=proc_env,
                stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except (FileNotFoundError, NotADirectoryError, PermissionError) as e:
            raise TransportError(f"Failed to start command in {workdir}: {e}") from e

        try:
            stdout_bytes, _ = await proc.communicate(
                stdin.encode("utf-8") if stdin is not None else None
            )
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        output = stdout_bytes.decode("utf-8", errors="replace")

        if proc.returncode != 0:
            self.logger.warning(
                "host_command_failed",
                cwd=workdir,
                returncode=proc.returncode,
                output=output[-500:],
            )
            raise TransportError(
                f"Command exited with status {proc.returncode}",
                output=output,
                exit_code=proc.returncode,
            )

        self.logger.debug("host_command_succeeded", cwd=workdir, output_bytes=len(output))
        return output
