"""Unit tests for configuration management.

Tests cover:
- Default configuration values
- TOML file loading
- Environment variable overrides
- Repository lookup with default fallback
- Validation errors for invalid configurations
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from workcell.config import (
    ContainerConfig,
    DispatchConfig,
    PodConfig,
    RepositoryConfig,
    WorkcellConfig,
    load_config,
)
from workcell.errors import ConfigError


class TestDispatchConfig:
    """Test DispatchConfig defaults and validation."""

    def test_default_values(self) -> None:
        """Test that default dispatch values are correct."""
        config = DispatchConfig()
        assert config.primary_command == "claude --print"
        assert config.append_task_flags is True
        assert config.max_concurrent_tasks == 4
        assert config.readiness_timeout_seconds == 120.0
        assert config.poll_interval_seconds == 2.0
        assert config.execution_timeout_seconds is None
        assert config.workspaces_dir == Path("workspaces")
        assert config.sessions_dir == Path("sessions")

    def test_empty_primary_command_rejected(self) -> None:
        """Test that a blank primary command is rejected."""
        with pytest.raises(ValidationError, match="primary_command"):
            DispatchConfig(primary_command="   ")

    def test_primary_command_stripped(self) -> None:
        """Test that surrounding whitespace is removed."""
        assert DispatchConfig(primary_command="  cat \n").primary_command == "cat"

    def test_timeout_must_be_positive(self) -> None:
        """Test that a non-positive readiness timeout is rejected."""
        with pytest.raises(ValidationError):
            DispatchConfig(readiness_timeout_seconds=0)


class TestBackendConfigs:
    """Test container and pod section defaults."""

    def test_backends_disabled_by_default(self) -> None:
        """Test that only the host backend is active out of the box."""
        assert ContainerConfig().enabled is False
        assert PodConfig().enabled is False

    def test_pod_defaults(self) -> None:
        """Test pod naming defaults."""
        config = PodConfig()
        assert config.namespace == "workcell"
        assert config.service_account == "workcell-worker"
        assert config.container_name == "worker"


class TestRepositoryConfig:
    """Test per-repository worker settings."""

    def test_env_pairs(self) -> None:
        """Test NAME=value parsing, including values containing '='."""
        repo = RepositoryConfig(env=["A=1", "B=x=y", "EMPTY"])
        assert repo.env_pairs() == {"A": "1", "B": "x=y", "EMPTY": ""}

    def test_repository_for_falls_back_to_default(self) -> None:
        """Test lookup of a configured and an unknown repository."""
        config = WorkcellConfig(
            repositories={"acme/api": RepositoryConfig(image="acme/api-worker:1")},
        )
        assert config.repository_for("acme/api").image == "acme/api-worker:1"
        assert config.repository_for("other/repo") is config.default_repository

    def test_empty_image_rejected(self) -> None:
        """Test that an empty image reference is rejected."""
        with pytest.raises(ValidationError, match="image"):
            RepositoryConfig(image=" ")


class TestWorkcellConfig:
    """Test root configuration validation."""

    def test_defaults(self) -> None:
        """Test that all sections are populated."""
        config = WorkcellConfig()
        assert config.logging.level == "INFO"
        assert config.reporter.webhook_url is None
        assert config.repositories == {}

    def test_agent_url_and_socket_mutually_exclusive(self) -> None:
        """Test that both agent endpoints cannot be set together."""
        with pytest.raises(ValidationError, match="mutually exclusive"):
            WorkcellConfig(host={"agent_url": "http://agent", "agent_socket": "/tmp/a.sock"})

    def test_pod_requires_namespace(self) -> None:
        """Test that an enabled pod backend needs a namespace."""
        with pytest.raises(ValidationError, match="namespace"):
            WorkcellConfig(pod={"enabled": True, "namespace": " "})

    def test_unknown_key_rejected(self) -> None:
        """Test that unknown settings fail loudly."""
        with pytest.raises(ValidationError):
            WorkcellConfig(dispatch={"bogus": 1})

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test nested environment variable overrides."""
        monkeypatch.setenv("WORKCELL_CONTAINER__ENABLED", "true")
        monkeypatch.setenv("WORKCELL_DISPATCH__MAX_CONCURRENT_TASKS", "9")
        config = WorkcellConfig()
        assert config.container.enabled is True
        assert config.dispatch.max_concurrent_tasks == 9


class TestLoadConfig:
    """Test TOML loading."""

    def test_load_explicit_file(self, tmp_path: Path) -> None:
        """Test loading sections and repositories from TOML."""
        config_file = tmp_path / "workcell.toml"
        config_file.write_text(
            """
[dispatch]
primary_command = "cat"
append_task_flags = false

[container]
enabled = true

[repositories."acme/api"]
image = "ghcr.io/acme/api-worker:latest"
env = ["NODE_ENV=development"]
"""
        )

        config = load_config(config_file)

        assert config.dispatch.primary_command == "cat"
        assert config.dispatch.append_task_flags is False
        assert config.container.enabled is True
        assert config.repository_for("acme/api").env_pairs() == {"NODE_ENV": "development"}

    def test_missing_explicit_file(self, tmp_path: Path) -> None:
        """Test that a missing explicit path raises ConfigError."""
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "absent.toml")

    def test_invalid_toml(self, tmp_path: Path) -> None:
        """Test that malformed TOML raises ConfigError."""
        config_file = tmp_path / "bad.toml"
        config_file.write_text("[dispatch\nprimary_command = ")
        with pytest.raises(ConfigError, match="Invalid TOML"):
            load_config(config_file)

    def test_invalid_values(self, tmp_path: Path) -> None:
        """Test that schema violations raise ConfigError."""
        config_file = tmp_path / "workcell.toml"
        config_file.write_text("[dispatch]\nmax_concurrent_tasks = 0\n")
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(config_file)

    def test_search_current_directory(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that ./workcell.toml is found without an explicit path."""
        (tmp_path / "workcell.toml").write_text('[pod]\nnamespace = "automation"\n')
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path / "home"))

        config = load_config()
        assert config.pod.namespace == "automation"
