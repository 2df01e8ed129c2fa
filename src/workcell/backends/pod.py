"""Kubernetes pod backend.

Each worker is a single-container pod in the configured namespace. On
first use the backend verifies the namespace and makes sure the worker
ServiceAccount, its Role and RoleBinding, and the credentials Secret
exist. Objects that already exist are left as they are.

Request bodies are plain dicts in API (camelCase) form, which the client
serializes unchanged.
"""

from __future__ import annotations

import asyncio
import base64
from pathlib import Path
from typing import Any, Callable

from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from urllib3.exceptions import HTTPError

from workcell.backends.base import ReadinessProbe, WorkerBackend, worker_name
from workcell.config import WorkcellConfig
from workcell.errors import CreationFailed
from workcell.models import BackendKind, Task, Worker, WorkerState
from workcell.transports.pod import PodTransport

IDLE_COMMAND = ["sh", "-c", "while true; do sleep 30; done"]
LOG_TAIL_LINES = 200
POD_NAME_PREFIX = "workcell-worker"

WORKER_ROLE_RULES = [
    {
        "apiGroups": [""],
        "resources": ["pods", "pods/log", "pods/exec", "persistentvolumeclaims"],
        "verbs": ["get", "list", "create", "delete", "watch"],
    }
]


def read_auth_files(auth_dir: Path) -> dict[str, str]:
    """Read regular files in a directory as base64 Secret data.

    Args:
        auth_dir: Directory holding credential files

    Returns:
        Mapping of file name to base64-encoded content.
    """
    data: dict[str, str] = {}
    for path in sorted(auth_dir.iterdir()):
        if path.is_file():
            data[path.name] = base64.b64encode(path.read_bytes()).decode("ascii")
    return data


class PodBackend(WorkerBackend):
    """Creates workers as Kubernetes pods.

    Attributes:
        config: Full Workcell configuration (pod, repository, resource and
            security sections are used)
    """

    kind = BackendKind.POD

    def __init__(
        self,
        config: WorkcellConfig,
        core_api: k8s_client.CoreV1Api | None = None,
        rbac_api: k8s_client.RbacAuthorizationV1Api | None = None,
    ) -> None:
        self.config = config
        self.namespace = config.pod.namespace
        self._core_api = core_api
        self._rbac_api = rbac_api
        self._namespace_verified = core_api is not None
        self._prerequisites_ready = False
        self._setup_lock = asyncio.Lock()
        super().__init__(
            PodTransport(self._get_core_api, self.namespace, container=config.pod.container_name),
            poll_interval=config.dispatch.poll_interval_seconds,
        )

    def _load_kube_config(self) -> None:
        kubeconfig = self.config.pod.kubeconfig
        if kubeconfig is not None:
            k8s_config.load_kube_config(config_file=str(kubeconfig))
            self.logger.info("kube_config_loaded", source=str(kubeconfig))
            return
        try:
            k8s_config.load_incluster_config()
            self.logger.info("kube_config_loaded", source="in-cluster")
        except ConfigException:
            k8s_config.load_kube_config()
            self.logger.info("kube_config_loaded", source="kubeconfig")

    def _get_core_api(self) -> k8s_client.CoreV1Api:
        """Get or create the CoreV1Api client, verifying the namespace once.

        Raises:
            ConfigException: If no cluster configuration can be loaded
            ApiException: If the namespace cannot be read
        """
        if self._core_api is None:
            self._load_kube_config()
            self._core_api = k8s_client.CoreV1Api()

        if not self._namespace_verified:
            self._core_api.read_namespace(
                self.namespace,
                _request_timeout=self.config.pod.verify_timeout_seconds,
            )
            self._namespace_verified = True
            self.logger.info("namespace_verified", namespace=self.namespace)

        return self._core_api

    def _get_rbac_api(self) -> k8s_client.RbacAuthorizationV1Api:
        if self._rbac_api is None:
            self._get_core_api()
            self._rbac_api = k8s_client.RbacAuthorizationV1Api()
        return self._rbac_api

    def _create_tolerating_conflict(
        self,
        create: Callable[..., Any],
        body: dict[str, Any],
        kind: str,
    ) -> None:
        name = body["metadata"]["name"]
        try:
            create(self.namespace, body)
            self.logger.info("k8s_object_created", kind=kind, name=name, namespace=self.namespace)
        except ApiException as e:
            if e.status != 409:
                raise
            self.logger.debug("k8s_object_exists", kind=kind, name=name, namespace=self.namespace)

    def _setup_prerequisites(self) -> None:
        pod_cfg = self.config.pod
        core = self._get_core_api()
        rbac = self._get_rbac_api()

        self._create_tolerating_conflict(
            core.create_namespaced_service_account,
            {"apiVersion": "v1", "kind": "ServiceAccount", "metadata": {"name": pod_cfg.service_account}},
            "ServiceAccount",
        )
        self._create_tolerating_conflict(
            rbac.create_namespaced_role,
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "Role",
                "metadata": {"name": pod_cfg.role_name},
                "rules": WORKER_ROLE_RULES,
            },
            "Role",
        )
        self._create_tolerating_conflict(
            rbac.create_namespaced_role_binding,
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "RoleBinding",
                "metadata": {"name": pod_cfg.role_binding_name},
                "subjects": [
                    {
                        "kind": "ServiceAccount",
                        "name": pod_cfg.service_account,
                        "namespace": self.namespace,
                    }
                ],
                "roleRef": {
                    "apiGroup": "rbac.authorization.k8s.io",
                    "kind": "Role",
                    "name": pod_cfg.role_name,
                },
            },
            "RoleBinding",
        )

        if pod_cfg.auth_dir is not None:
            self._create_tolerating_conflict(
                core.create_namespaced_secret,
                {
                    "apiVersion": "v1",
                    "kind": "Secret",
                    "metadata": {"name": pod_cfg.auth_secret_name},
                    "type": "Opaque",
                    "data": read_auth_files(pod_cfg.auth_dir),
                },
                "Secret",
            )

    async def ensure_prerequisites(self) -> None:
        """Create the worker ServiceAccount, RBAC objects and auth Secret once."""
        async with self._setup_lock:
            if self._prerequisites_ready:
                return
            await asyncio.to_thread(self._setup_prerequisites)
            self._prerequisites_ready = True

    def build_pod_manifest(self, task: Task, name: str) -> dict[str, Any]:
        """Build the pod manifest for a task.

        Args:
            task: Task the pod is created for
            name: Pod name

        Returns:
            Pod manifest as a dict.
        """
        pod_cfg = self.config.pod
        repo = self.config.repository_for(task.repository)
        limits = self.config.resource_limits
        security = self.config.security

        env = [{"name": k, "value": v} for k, v in repo.env_pairs().items()]
        env += [
            {"name": "TASK_ID", "value": task.id},
            {"name": "REPOSITORY", "value": task.repository},
            {"name": "WORKSPACE", "value": repo.workspace},
        ]

        volume_mounts = [
            {"name": "workspace", "mountPath": repo.workspace},
            {"name": "tmp", "mountPath": "/tmp"},
        ]
        volumes: list[dict[str, Any]] = [
            {"name": "workspace", "emptyDir": {}},
            {"name": "tmp", "emptyDir": {}},
        ]
        if pod_cfg.auth_dir is not None:
            volume_mounts.append({"name": "auth", "mountPath": pod_cfg.auth_mount_path, "readOnly": True})
            volumes.append({"name": "auth", "secret": {"secretName": pod_cfg.auth_secret_name}})

        container: dict[str, Any] = {
            "name": pod_cfg.container_name,
            "image": repo.image,
            "imagePullPolicy": "IfNotPresent",
            "command": IDLE_COMMAND,
            "workingDir": repo.workspace,
            "env": env,
            "volumeMounts": volume_mounts,
        }

        resources = {k: v for k, v in (("memory", limits.memory), ("cpu", limits.cpu)) if v}
        if resources:
            container["resources"] = {"limits": resources, "requests": dict(resources)}

        security_context: dict[str, Any] = {
            "privileged": security.privileged,
            "readOnlyRootFilesystem": security.read_only_root,
        }
        if security.user is not None:
            security_context["runAsUser"] = security.user
        if security.cap_add or security.cap_drop:
            security_context["capabilities"] = {"add": security.cap_add, "drop": security.cap_drop}
        container["securityContext"] = security_context

        if repo.ports:
            container["ports"] = [
                {"containerPort": int(p.partition(":")[2].split("/")[0])} for p in repo.ports
            ]

        return {
            "apiVersion": "v1",
            "kind": "Pod",
            "metadata": {
                "name": name,
                "namespace": self.namespace,
                "labels": {
                    "app": "workcell-worker",
                    "workcell/task-id": worker_name("", task.id),
                    "workcell/managed": "true",
                },
            },
            "spec": {
                "serviceAccountName": pod_cfg.service_account,
                "restartPolicy": "Never",
                "containers": [container],
                "volumes": volumes,
            },
        }

    def _create_pod(self, manifest: dict[str, Any]) -> None:
        self._get_core_api().create_namespaced_pod(self.namespace, manifest)

    async def create(self, task: Task) -> Worker:
        name = worker_name(POD_NAME_PREFIX, task.id)
        repo = self.config.repository_for(task.repository)

        try:
            await self.ensure_prerequisites()
            manifest = self.build_pod_manifest(task, name)
            await self._create_on_platform(name, lambda: self._create_pod(manifest))
        except ApiException as e:
            raise CreationFailed(
                f"Kubernetes rejected pod {name}: {e.status} {e.reason}",
                backend=self.kind.value,
                task_id=task.id,
            ) from e
        except HTTPError as e:
            raise CreationFailed(
                f"Kubernetes unreachable: {e}",
                backend=self.kind.value,
                task_id=task.id,
            ) from e
        except (ConfigException, OSError, ValueError) as e:
            raise CreationFailed(
                f"Kubernetes unavailable: {e}",
                backend=self.kind.value,
                task_id=task.id,
            ) from e

        worker = Worker(
            id=name,
            task_id=task.id,
            backend=self.kind,
            workspace_path=repo.workspace,
            repository=task.repository,
            auth_mount_ref=self.config.pod.auth_secret_name if self.config.pod.auth_dir else None,
            image=repo.image,
            metadata={"namespace": self.namespace},
        )
        worker.transition(WorkerState.CREATED)
        self.logger.info("pod_created", pod=name, namespace=self.namespace, task_id=task.id)
        return worker

    def _read_status(self, name: str) -> tuple[str, bool]:
        pod = self._get_core_api().read_namespaced_pod_status(name, self.namespace)
        phase = pod.status.phase or "Unknown"
        conditions = pod.status.conditions or []
        ready = any(c.type == "Ready" and c.status == "True" for c in conditions)
        return phase, ready

    async def _probe(self, worker: Worker) -> ReadinessProbe:
        try:
            phase, ready = await asyncio.to_thread(self._read_status, worker.id)
        except ApiException as e:
            if e.status == 404:
                return ReadinessProbe(ready=False, terminal=True, detail="pod not found")
            self.logger.warning("pod_probe_failed", pod=worker.id, status=e.status, reason=e.reason)
            return ReadinessProbe(ready=False, detail=f"probe failed: {e.reason}")
        except HTTPError as e:
            self.logger.warning("pod_probe_failed", pod=worker.id, error=str(e), error_type=type(e).__name__)
            return ReadinessProbe(ready=False, detail=f"API server unreachable: {type(e).__name__}")

        worker.metadata["phase"] = phase
        if phase in ("Failed", "Succeeded"):
            return ReadinessProbe(ready=False, terminal=True, detail=phase)
        return ReadinessProbe(ready=phase == "Running" and ready, detail=phase)

    def _delete_pod(self, name: str) -> None:
        try:
            self._get_core_api().delete_namespaced_pod(name, self.namespace, grace_period_seconds=0)
        except ApiException as e:
            if e.status != 404:
                raise

    async def _remove_by_name(self, name: str) -> None:
        await asyncio.to_thread(self._delete_pod, name)
        self.logger.info("pod_deleted", pod=name, namespace=self.namespace)

    async def fetch_logs(self, worker: Worker) -> str:
        try:
            return await asyncio.to_thread(
                self._get_core_api().read_namespaced_pod_log,
                worker.id,
                self.namespace,
                container=self.config.pod.container_name,
                tail_lines=LOG_TAIL_LINES,
            )
        except (ApiException, ConfigException, HTTPError) as e:
            self.logger.warning("pod_logs_unavailable", pod=worker.id, error=str(e))
            return ""
