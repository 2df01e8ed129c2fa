"""Exec transport interface.

An exec transport sends one shell command into a specific worker and
returns its captured output. The command text is always passed as a single
shell-interpreted string; no argv parsing is attempted.
"""

from __future__ import annotations

import shlex
from abc import ABC, abstractmethod


class ExecTransport(ABC):
    """Sends shell commands into a worker.

    Implementations raise ``TransportError`` when the command cannot be
    delivered or exits with a non-zero status. The error carries whatever
    output was captured so callers can attach it to diagnostics.
    """

    name: str = "transport"

    @abstractmethod
    async def run(
        self,
        target: str,
        command: str,
        *,
        stdin: str | None = None,
        cwd: str | None = None,
        env: dict[str, str] | None = None,
    ) -> str:
        """Run a command in the worker identified by target.

        Args:
            target: Worker address understood by the transport (workspace
                path, container name, pod name or agent owner id)
            command: Shell command text
            stdin: Text written to the command's standard input
            cwd: Working directory override
            env: Environment additions

        Returns:
            Captured output of the command.

        Raises:
            TransportError: If delivery fails or the command exits non-zero.
        """

    async def close(self) -> None:
        """Release transport resources. Default is a no-op."""


def build_shell_script(
    command: str,
    *,
    stdin_bytes: int | None = None,
    cwd: str | None = None,
    env: dict[str, str] | None = None,
) -> str:
    """Wrap a command so that cwd and env travel inside the script.

    Used by transports whose platform exec call cannot set every option
    natively. Standard input is never embedded in the script; the transport
    streams it over the exec connection. When ``stdin_bytes`` is given the
    command reads exactly that many bytes and then sees end of input, so
    the transport does not need to half-close the stream.

    Args:
        command: Shell command text
        stdin_bytes: Length of the standard input the transport will send
        cwd: Directory to change into first
        env: Variables exported before the command runs

    Returns:
        A single script suitable for ``sh -c``.
    """
    parts: list[str] = []
    for name, value in (env or {}).items():
        parts.append(f"export {name}={shlex.quote(value)}")
    if cwd:
        parts.append(f"cd {shlex.quote(cwd)}")

    if stdin_bytes is not None:
        parts.append(f"head -c {stdin_bytes} | sh -c {shlex.quote(command)}")
    elif parts:
        # Keep "a; b" commands from escaping the && chain
        parts.append(f"sh -c {shlex.quote(command)}")
    else:
        return command

    return " && ".join(parts)
