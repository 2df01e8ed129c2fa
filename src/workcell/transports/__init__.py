"""Exec transports: ways of sending a command into a worker."""

from __future__ import annotations

from workcell.transports.agent import AgentTransport
from workcell.transports.base import ExecTransport, build_shell_script
from workcell.transports.container import ContainerTransport
from workcell.transports.host import HostTransport
from workcell.transports.pod import PodTransport

__all__ = [
    "AgentTransport",
    "ContainerTransport",
    "ExecTransport",
    "HostTransport",
    "PodTransport",
    "build_shell_script",
]
