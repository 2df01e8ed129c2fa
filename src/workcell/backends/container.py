"""Docker container backend.

Each worker is a long-running container started from the repository's
image with the task workspace, the session directory and (optionally) the
tool credentials bind-mounted in. Containers are started with
``auto_remove`` so a stopped worker disappears on its own.

Example usage:
    >>> from workcell.config import WorkcellConfig
    >>> from workcell.backends.container import ContainerBackend
    >>>
    >>> backend = ContainerBackend(WorkcellConfig())
    >>> worker = await backend.create(task)
    >>> await backend.wait_ready(worker, timeout=120)
    >>> print(await backend.exec(worker, "git status"))
    >>> await backend.delete(worker)
"""

from __future__ import annotations

import asyncio
import os
import shlex
from typing import Any

from docker.errors import APIError, DockerException, ImageNotFound, NotFound

import docker
from workcell.backends.base import ReadinessProbe, WorkerBackend, worker_name
from workcell.config import WorkcellConfig
from workcell.errors import CreationFailed, ExecutionFailed
from workcell.models import BackendKind, Task, Worker, WorkerState
from workcell.transports.container import ContainerTransport

IDLE_COMMAND = ["tail", "-f", "/dev/null"]
LOG_TAIL_LINES = 200


def parse_port_mappings(ports: list[str]) -> dict[str, int]:
    """Convert ``host:container[/proto]`` strings to docker-py's port mapping.

    Args:
        ports: Mappings such as ``["8080:80", "5353:53/udp"]``

    Returns:
        Mapping of container port spec to host port.

    Raises:
        ValueError: If a mapping is malformed.
    """
    mapping: dict[str, int] = {}
    for entry in ports:
        host, sep, container = entry.partition(":")
        if not sep or not host or not container:
            raise ValueError(f"Invalid port mapping: {entry}")
        if "/" not in container:
            container = f"{container}/tcp"
        mapping[container] = int(host)
    return mapping


class ContainerBackend(WorkerBackend):
    """Creates workers as Docker containers.

    Attributes:
        config: Full Workcell configuration (container, repository,
            resource and security sections are used)
    """

    kind = BackendKind.CONTAINER

    def __init__(self, config: WorkcellConfig) -> None:
        self.config = config
        self._client: docker.DockerClient | None = None
        super().__init__(
            ContainerTransport(self._get_client),
            poll_interval=config.dispatch.poll_interval_seconds,
        )

    def _get_client(self) -> docker.DockerClient:
        """Get or create the Docker client connection.

        Returns:
            Active Docker client instance

        Raises:
            DockerException: If unable to connect to Docker daemon
        """
        if self._client is None:
            try:
                docker_host = os.environ.get("DOCKER_HOST")
                if docker_host:
                    self._client = docker.DockerClient(base_url=docker_host)
                elif self.config.container.rootless and hasattr(os, "getuid"):
                    xdg_runtime = os.environ.get("XDG_RUNTIME_DIR", f"/run/user/{os.getuid()}")
                    try:
                        self._client = docker.DockerClient(base_url=f"unix://{xdg_runtime}/docker.sock")
                    except DockerException:
                        self._client = docker.DockerClient.from_env()
                else:
                    self._client = docker.DockerClient.from_env()

                self.logger.info("docker_client_connected", rootless=self.config.container.rootless)
            except DockerException as e:
                self.logger.error(
                    "docker_client_connection_failed",
                    error=str(e),
                    error_type=type(e).__name__,
                )
                raise

        return self._client

    def build_run_kwargs(self, task: Task, name: str) -> dict[str, Any]:
        """Assemble ``containers.run`` arguments for a task.

        Args:
            task: Task the container is created for
            name: Container name

        Returns:
            Keyword arguments for docker-py's ``containers.run``.
        """
        dispatch = self.config.dispatch
        container_cfg = self.config.container
        repo = self.config.repository_for(task.repository)
        limits = self.config.resource_limits
        security = self.config.security

        host_workspace = (dispatch.workspaces_dir / task.id).resolve()
        volumes: dict[str, dict[str, str]] = {
            str(host_workspace): {"bind": repo.workspace, "mode": "rw"},
            str(dispatch.sessions_dir.resolve()): {"bind": container_cfg.sessions_mount_path, "mode": "rw"},
        }
        if container_cfg.auth_dir is not None:
            volumes[str(container_cfg.auth_dir.resolve())] = {
                "bind": container_cfg.auth_mount_path,
                "mode": "rw",
            }

        environment = {
            **repo.env_pairs(),
            "TASK_ID": task.id,
            "REPOSITORY": task.repository,
            "WORKSPACE": repo.workspace,
        }

        kwargs: dict[str, Any] = {
            "image": repo.image,
            "command": IDLE_COMMAND,
            "name": name,
            "detach": True,
            "auto_remove": True,
            "working_dir": repo.workspace,
            "volumes": volumes,
            "environment": environment,
            "labels": {
                "workcell.task-id": task.id,
                "workcell.repository": task.repository,
                "workcell.managed": "true",
            },
            "privileged": security.privileged,
            "read_only": security.read_only_root,
        }
        if repo.ports:
            kwargs["ports"] = parse_port_mappings(repo.ports)
        if limits.memory:
            kwargs["mem_limit"] = limits.memory
        if limits.cpu:
            kwargs["nano_cpus"] = int(float(limits.cpu) * 1_000_000_000)
        if security.user is not None:
            kwargs["user"] = str(security.user)
        if security.cap_add:
            kwargs["cap_add"] = security.cap_add
        if security.cap_drop:
            kwargs["cap_drop"] = security.cap_drop
        return kwargs

    def _run_container(self, kwargs: dict[str, Any]) -> Any:
        client = self._get_client()
        return client.containers.run(**kwargs)

    async def create(self, task: Task) -> Worker:
        dispatch = self.config.dispatch
        repo = self.config.repository_for(task.repository)
        name = worker_name(self.config.container.name_prefix, task.id, task.repository)
        host_workspace = dispatch.workspaces_dir / task.id

        try:
            await asyncio.to_thread(host_workspace.mkdir, parents=True, exist_ok=True)
            await asyncio.to_thread(dispatch.sessions_dir.mkdir, parents=True, exist_ok=True)
            kwargs = self.build_run_kwargs(task, name)
        except (OSError, ValueError) as e:
            raise CreationFailed(
                f"Cannot prepare container {name}: {e}",
                backend=self.kind.value,
                task_id=task.id,
            ) from e

        self.logger.info("container_creating", container=name, image=repo.image, task_id=task.id)

        try:
            container = await self._create_on_platform(name, lambda: self._run_container(kwargs))
        except ImageNotFound as e:
            raise CreationFailed(
                f"Image not found: {repo.image}",
                backend=self.kind.value,
                task_id=task.id,
            ) from e
        except APIError as e:
            raise CreationFailed(
                f"Docker rejected container {name}: {e.explanation or e}",
                backend=self.kind.value,
                task_id=task.id,
            ) from e
        except DockerException as e:
            raise CreationFailed(
                f"Docker unavailable: {e}",
                backend=self.kind.value,
                task_id=task.id,
            ) from e

        auth_dir = self.config.container.auth_dir
        worker = Worker(
            id=name,
            task_id=task.id,
            backend=self.kind,
            workspace_path=repo.workspace,
            repository=task.repository,
            host_workspace=host_workspace,
            auth_mount_ref=str(auth_dir) if auth_dir is not None else None,
            image=repo.image,
            metadata={
                "container_id": getattr(container, "id", None),
                "session_dir": self.config.container.sessions_mount_path,
            },
        )
        worker.transition(WorkerState.CREATED)
        self.logger.info("container_created", container=name, container_id=worker.metadata["container_id"])
        return worker

    def _inspect(self, name: str) -> tuple[str, str | None]:
        container = self._get_client().containers.get(name)
        container.reload()
        health = (container.attrs.get("State") or {}).get("Health") or {}
        return container.status, health.get("Status")

    async def _probe(self, worker: Worker) -> ReadinessProbe:
        try:
            status, health = await asyncio.to_thread(self._inspect, worker.id)
        except NotFound:
            return ReadinessProbe(ready=False, terminal=True, detail="container not found")
        except (APIError, DockerException) as e:
            # Transient daemon errors keep the wait going
            self.logger.warning("container_probe_failed", container=worker.id, error=str(e))
            return ReadinessProbe(ready=False, detail=f"probe failed: {e}")

        detail = status if health is None else f"{status} ({health})"
        if status in ("exited", "dead", "removing"):
            return ReadinessProbe(ready=False, terminal=True, detail=detail)
        if status != "running":
            return ReadinessProbe(ready=False, detail=detail)
        # Images without a health check are ready once running
        return ReadinessProbe(ready=health in (None, "healthy"), detail=detail)

    async def _on_ready(self, worker: Worker) -> None:
        paths = [worker.workspace_path, self.config.container.sessions_mount_path]
        command = "mkdir -p " + " ".join(shlex.quote(p) for p in paths)
        try:
            await self.exec(worker, command, cwd="/")
        except ExecutionFailed as e:
            self.logger.warning("container_prepare_failed", container=worker.id, error=e.message)

    def _remove(self, name: str) -> None:
        client = self._get_client()
        try:
            container = client.containers.get(name)
        except NotFound:
            return
        container.stop(timeout=self.config.container.stop_timeout_seconds)
        try:
            container.remove(force=True)
        except NotFound:
            # auto_remove already took it
            pass

    async def _remove_by_name(self, name: str) -> None:
        await asyncio.to_thread(self._remove, name)
        self.logger.info("container_removed", container=name)

    def _logs(self, name: str) -> str:
        container = self._get_client().containers.get(name)
        raw = container.logs(tail=LOG_TAIL_LINES)
        return raw.decode("utf-8", errors="replace")

    async def fetch_logs(self, worker: Worker) -> str:
        try:
            return await asyncio.to_thread(self._logs, worker.id)
        except (APIError, DockerException) as e:
            self.logger.warning("container_logs_unavailable", container=worker.id, error=str(e))
            return ""

    async def close(self) -> None:
        if self._client is not None:
            await asyncio.to_thread(self._client.close)
            self._client = None
