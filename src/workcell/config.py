"""Configuration management for Workcell.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Programmatic overrides (passed to WorkcellConfig constructor)
2. Environment variables (WORKCELL_* prefix)
3. TOML configuration file
4. Default values defined in this module

Example TOML configuration:
    [dispatch]
    primary_command = "claude --print"
    max_concurrent_tasks = 4

    [container]
    enabled = true

    [repositories."acme/api"]
    image = "ghcr.io/acme/api-worker:latest"
    env = ["NODE_ENV=development"]

Example environment variable override:
    WORKCELL_POD__ENABLED=true
    WORKCELL_POD__NAMESPACE="automation"
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import tomli
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from workcell.errors import ConfigError


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None for stdout only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKCELL_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="json")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=50, ge=1, le=1000)
    retention_count: int = Field(default=10, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class DispatchConfig(BaseSettings):
    """Task dispatch configuration.

    Attributes:
        primary_command: Shell command run in the worker for every task. The
            task context is written to its standard input.
        append_task_flags: Append ``--max-turns`` and ``--output-format`` from
            the task to the primary command.
        max_concurrent_tasks: Upper bound on tasks processed at once.
        readiness_timeout_seconds: Maximum wait for a worker to become ready.
        poll_interval_seconds: Interval between readiness polls.
        execution_timeout_seconds: Optional hard deadline on the primary
            command. None leaves the bound to the executed tool.
        shutdown_grace_seconds: Time to let in-flight tasks finish on shutdown.
        workspaces_dir: Host directory holding per-task workspaces.
        sessions_dir: Host directory holding continuation session files.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKCELL_DISPATCH__",
        extra="forbid",
    )

    primary_command: str = Field(default="claude --print")
    append_task_flags: bool = Field(default=True)
    max_concurrent_tasks: int = Field(default=4, ge=1, le=64)
    readiness_timeout_seconds: float = Field(default=120.0, gt=0, le=3600)
    poll_interval_seconds: float = Field(default=2.0, gt=0, le=60)
    execution_timeout_seconds: float | None = Field(default=None, gt=0)
    shutdown_grace_seconds: float = Field(default=30.0, ge=0, le=3600)
    workspaces_dir: Path = Field(default=Path("workspaces"))
    sessions_dir: Path = Field(default=Path("sessions"))

    @field_validator("primary_command")
    @classmethod
    def validate_primary_command(cls, v: str) -> str:
        """Reject an empty primary command."""
        if not v.strip():
            raise ValueError("primary_command must not be empty")
        return v.strip()


class HostConfig(BaseSettings):
    """Host backend configuration.

    Attributes:
        agent_url: Base URL of an in-worker exec agent. When set (or when
            agent_socket is set) host commands are sent through the agent
            instead of spawning local subprocesses.
        agent_socket: Unix socket path of the exec agent.
        agent_timeout_seconds: HTTP timeout for agent requests.
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKCELL_HOST__",
        extra="forbid",
    )

    agent_url: str | None = Field(default=None)
    agent_socket: Path | None = Field(default=None)
    agent_timeout_seconds: float = Field(default=3600.0, gt=0)


class ContainerConfig(BaseSettings):
    """Docker container backend configuration.

    Attributes:
        enabled: Include the container backend in the fallback order
        rootless: Prefer the rootless Docker daemon socket
        name_prefix: Prefix for worker container names
        stop_timeout_seconds: Grace period before a stopped container is killed
        auth_dir: Host directory with tool credentials bind-mounted into workers
        auth_mount_path: Mount point of auth_dir inside the container
        sessions_mount_path: In-container directory for session files
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKCELL_CONTAINER__",
        extra="forbid",
    )

    enabled: bool = Field(default=False)
    rootless: bool = Field(default=False)
    name_prefix: str = Field(default="workcell-worker")
    stop_timeout_seconds: int = Field(default=10, ge=0, le=300)
    auth_dir: Path | None = Field(default=None)
    auth_mount_path: str = Field(default="/home/worker/.claude")
    sessions_mount_path: str = Field(default="/app/sessions")


class PodConfig(BaseSettings):
    """Kubernetes pod backend configuration.

    Attributes:
        enabled: Include the pod backend in the fallback order
        namespace: Namespace that worker pods are created in
        service_account: ServiceAccount the worker pods run as
        role_name: Role granting workers access to pods and exec
        role_binding_name: Binding of role_name to service_account
        auth_secret_name: Secret holding tool credentials for workers
        auth_dir: Host directory whose files populate the auth secret
        auth_mount_path: Mount point of the auth secret inside the pod
        container_name: Name of the worker container in the pod
        kubeconfig: Explicit kubeconfig path (in-cluster config is tried first)
        verify_timeout_seconds: Timeout for the initial namespace check
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKCELL_POD__",
        extra="forbid",
    )

    enabled: bool = Field(default=False)
    namespace: str = Field(default="workcell")
    service_account: str = Field(default="workcell-worker")
    role_name: str = Field(default="workcell-worker-role")
    role_binding_name: str = Field(default="workcell-worker-binding")
    auth_secret_name: str = Field(default="workcell-auth")
    auth_dir: Path | None = Field(default=None)
    auth_mount_path: str = Field(default="/app/auth")
    container_name: str = Field(default="worker")
    kubeconfig: Path | None = Field(default=None)
    verify_timeout_seconds: int = Field(default=10, ge=1, le=120)


class ReporterConfig(BaseSettings):
    """Result reporter configuration.

    Attributes:
        webhook_url: Endpoint receiving task results. None logs results only.
        auth_header: Optional Authorization header value
        timeout_seconds: HTTP request timeout
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKCELL_REPORTER__",
        extra="forbid",
    )

    webhook_url: str | None = Field(default=None)
    auth_header: str | None = Field(default=None)
    timeout_seconds: int = Field(default=30, ge=1, le=300)


class RepositoryConfig(BaseModel):
    """Worker settings for a single target repository.

    Attributes:
        image: Container image used for container and pod workers
        workspace: Workspace path inside the worker
        env: Extra environment variables as ``NAME=value`` strings
        ports: Port mappings (``host:container``) for container workers
        commands: Named helper commands made known to the executed tool
    """

    model_config = {"extra": "forbid"}

    image: str = Field(default="workcell-worker:latest")
    workspace: str = Field(default="/workspace")
    env: list[str] = Field(default_factory=list)
    ports: list[str] = Field(default_factory=list)
    commands: dict[str, str] = Field(default_factory=dict)

    @field_validator("image")
    @classmethod
    def validate_image(cls, v: str) -> str:
        """Reject an empty image reference."""
        if not v.strip():
            raise ValueError("image must not be empty")
        return v

    def env_pairs(self) -> dict[str, str]:
        """Parse ``env`` into a name/value mapping.

        Entries without ``=`` map to an empty value.

        Returns:
            Ordered mapping of variable names to values.
        """
        pairs: dict[str, str] = {}
        for entry in self.env:
            name, _, value = entry.partition("=")
            pairs[name] = value
        return pairs


class ResourceLimits(BaseModel):
    """Resource constraints applied to container and pod workers.

    Attributes:
        memory: Memory limit (e.g. ``"2g"`` for Docker, ``"2Gi"`` for Kubernetes)
        cpu: CPU limit in cores (e.g. ``"1.5"``)
    """

    model_config = {"extra": "forbid"}

    memory: str | None = None
    cpu: str | None = None


class SecurityConfig(BaseModel):
    """Security settings applied to container and pod workers."""

    model_config = {"extra": "forbid"}

    read_only_root: bool = False
    privileged: bool = False
    user: int | None = None
    cap_add: list[str] = Field(default_factory=list)
    cap_drop: list[str] = Field(default_factory=list)


class WorkcellConfig(BaseSettings):
    """Root configuration for Workcell.

    This is the main configuration class that aggregates all subsystem configurations.
    Configuration can be loaded from:
    1. TOML files (using load_config function)
    2. Environment variables (WORKCELL_* prefix)
    3. Direct instantiation with keyword arguments

    Environment variable format for nested config:
        WORKCELL_<SECTION>__<KEY>=value
    """

    model_config = SettingsConfigDict(
        env_prefix="WORKCELL_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    dispatch: DispatchConfig = Field(default_factory=DispatchConfig)
    host: HostConfig = Field(default_factory=HostConfig)
    container: ContainerConfig = Field(default_factory=ContainerConfig)
    pod: PodConfig = Field(default_factory=PodConfig)
    reporter: ReporterConfig = Field(default_factory=ReporterConfig)
    repositories: dict[str, RepositoryConfig] = Field(default_factory=dict)
    default_repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    resource_limits: ResourceLimits = Field(default_factory=ResourceLimits)
    security: SecurityConfig = Field(default_factory=SecurityConfig)

    @model_validator(mode="after")
    def validate_backends(self) -> WorkcellConfig:
        """Check settings that enabled backends cannot run without."""
        if self.pod.enabled and not self.pod.namespace.strip():
            raise ValueError("pod.namespace is required when the pod backend is enabled")
        if self.host.agent_url and self.host.agent_socket:
            raise ValueError("host.agent_url and host.agent_socket are mutually exclusive")
        return self

    def repository_for(self, repository: str) -> RepositoryConfig:
        """Return worker settings for a repository, falling back to the default.

        Args:
            repository: Repository identifier (e.g. ``"owner/name"``)

        Returns:
            Matching RepositoryConfig, or ``default_repository``.
        """
        return self.repositories.get(repository, self.default_repository)


def load_config(config_path: Path | None = None) -> WorkcellConfig:
    """Load configuration from TOML file with environment variable overrides.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./workcell.toml (current directory)
    3. ~/.config/workcell/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        WorkcellConfig: Fully resolved configuration instance.

    Raises:
        ConfigError: If config_path does not exist, the TOML cannot be
            parsed, or the resulting settings are invalid.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise ConfigError(f"Config file not found: {config_path}")
        selected_path: Path | None = config_path
    else:
        search_paths = [
            Path.cwd() / "workcell.toml",
            Path.home() / ".config" / "workcell" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        try:
            with open(selected_path, "rb") as f:
                toml_data = tomli.load(f)
        except tomli.TOMLDecodeError as e:
            raise ConfigError(f"Invalid TOML in {selected_path}: {e}") from e

    # Pydantic overlays environment variables on top of the TOML data
    try:
        return WorkcellConfig(**toml_data)
    except ValidationError as e:
        if selected_path:
            raise ConfigError(f"Invalid configuration in {selected_path}: {e}") from e
        raise ConfigError(f"Invalid configuration: {e}") from e
