"""Worker backends and the fixed fallback order they are tried in."""

from __future__ import annotations

from workcell.backends.base import ReadinessProbe, WorkerBackend, worker_name
from workcell.backends.container import ContainerBackend
from workcell.backends.host import HostBackend
from workcell.backends.pod import PodBackend
from workcell.config import WorkcellConfig
from workcell.logging import get_logger
from workcell.transports.agent import AgentTransport
from workcell.transports.base import ExecTransport

logger = get_logger(__name__)

__all__ = [
    "ContainerBackend",
    "HostBackend",
    "PodBackend",
    "ReadinessProbe",
    "WorkerBackend",
    "build_backends",
    "worker_name",
]


def build_backends(config: WorkcellConfig) -> list[WorkerBackend]:
    """Build the enabled backends in fallback order: pod, container, host.

    The host backend is always present and closes the chain.

    Args:
        config: Workcell configuration

    Returns:
        Backends in the order the dispatcher tries them.
    """
    backends: list[WorkerBackend] = []
    if config.pod.enabled:
        backends.append(PodBackend(config))
    if config.container.enabled:
        backends.append(ContainerBackend(config))

    host_transport: ExecTransport | None = None
    if config.host.agent_url or config.host.agent_socket:
        host_transport = AgentTransport(
            base_url=config.host.agent_url,
            socket_path=config.host.agent_socket,
            timeout_seconds=config.host.agent_timeout_seconds,
        )
    backends.append(
        HostBackend(
            config.dispatch.workspaces_dir,
            transport=host_transport,
            poll_interval=config.dispatch.poll_interval_seconds,
        )
    )

    logger.info("backends_configured", order=[b.kind.value for b in backends])
    return backends
