"""Integration tests for the host backend and local subprocess transport.

These tests start real ``sh`` subprocesses in temporary directories.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from workcell.backends.host import HostBackend
from workcell.errors import CreationFailed, ExecutionFailed, ReadinessTimeout, TransportError
from workcell.models import Task, WorkerState
from workcell.transports.agent import AgentTransport
from workcell.transports.host import HostTransport


@pytest.fixture
def task() -> Task:
    """Create a sample task."""
    return Task(id="42", instruction="Hello", repository="acme/api")


class TestHostTransport:
    """Test local command execution."""

    @pytest.mark.asyncio
    async def test_runs_in_working_directory(self, tmp_path: Path) -> None:
        """Test that commands run in the target directory."""
        output = await HostTransport().run(str(tmp_path), "pwd")
        assert Path(output.strip()).resolve() == tmp_path.resolve()

    @pytest.mark.asyncio
    async def test_stdin_and_env(self, tmp_path: Path) -> None:
        """Test stdin delivery and environment additions."""
        output = await HostTransport().run(
            str(tmp_path),
            'cat; echo "id=$TASK_ID"',
            stdin="line one\nline 'two'\n",
            env={"TASK_ID": "42"},
        )
        assert output == "line one\nline 'two'\nid=42\n"

    @pytest.mark.asyncio
    async def test_stderr_merged(self, tmp_path: Path) -> None:
        """Test that stderr is captured with stdout."""
        output = await HostTransport().run(str(tmp_path), "echo out; echo err >&2")
        assert "out" in output
        assert "err" in output

    @pytest.mark.asyncio
    async def test_nonzero_exit(self, tmp_path: Path) -> None:
        """Test that a failing command raises with its output and status."""
        with pytest.raises(TransportError) as exc_info:
            await HostTransport().run(str(tmp_path), "echo partial; exit 3")

        assert exc_info.value.exit_code == 3
        assert exc_info.value.output == "partial\n"

    @pytest.mark.asyncio
    async def test_missing_directory(self, tmp_path: Path) -> None:
        """Test that a missing working directory is a transport error."""
        with pytest.raises(TransportError, match="Failed to start"):
            await HostTransport().run(str(tmp_path / "absent"), "true")

    @pytest.mark.asyncio
    async def test_cancellation_kills_process(self, tmp_path: Path) -> None:
        """Test that cancelling a run stops the subprocess."""
        running = asyncio.create_task(HostTransport().run(str(tmp_path), "sleep 30"))
        await asyncio.sleep(0.1)
        running.cancel()

        with pytest.raises(asyncio.CancelledError):
            await asyncio.wait_for(running, timeout=5)


class TestHostBackend:
    """Test the host backend lifecycle."""

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, tmp_path: Path, task: Task) -> None:
        """Test create, ready, exec and delete against a real workspace."""
        backend = HostBackend(tmp_path / "workspaces", poll_interval=0.01)

        worker = await backend.create(task)
        assert worker.id == "host-42"
        assert worker.state == WorkerState.CREATED
        assert (tmp_path / "workspaces" / "42").is_dir()

        await backend.wait_ready(worker, timeout=1)
        assert worker.state == WorkerState.READY

        await backend.exec(worker, "echo data > note.txt")
        assert (tmp_path / "workspaces" / "42" / "note.txt").read_text() == "data\n"

        await backend.delete(worker)
        assert worker.state == WorkerState.DELETED
        # Workspace survives for later turns
        assert (tmp_path / "workspaces" / "42").is_dir()

    @pytest.mark.asyncio
    async def test_exec_failure(self, tmp_path: Path, task: Task) -> None:
        """Test that command failures surface as ExecutionFailed."""
        backend = HostBackend(tmp_path, poll_interval=0.01)
        worker = await backend.create(task)
        await backend.wait_ready(worker, timeout=1)

        with pytest.raises(ExecutionFailed) as exc_info:
            await backend.exec(worker, "echo nope; exit 1")

        assert exc_info.value.exit_code == 1
        assert "nope" in exc_info.value.output

    @pytest.mark.asyncio
    async def test_creation_failure(self, tmp_path: Path, task: Task) -> None:
        """Test that an unusable workspaces directory fails creation."""
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        backend = HostBackend(blocker)

        with pytest.raises(CreationFailed) as exc_info:
            await backend.create(task)

        assert exc_info.value.backend == "host"

    @pytest.mark.asyncio
    async def test_removed_workspace_is_terminal(self, tmp_path: Path, task: Task) -> None:
        """Test that a vanished workspace fails readiness at once."""
        backend = HostBackend(tmp_path, poll_interval=0.01)
        worker = await backend.create(task)
        (tmp_path / "42").rmdir()

        with pytest.raises(ReadinessTimeout):
            await backend.wait_ready(worker, timeout=5)

    @pytest.mark.asyncio
    async def test_agent_mode_targets_task_id(self, tmp_path: Path, task: Task) -> None:
        """Test that the exec agent is addressed by task id."""
        transport = AgentTransport(base_url="http://agent")
        backend = HostBackend(tmp_path, transport=transport)
        worker = await backend.create(task)

        assert backend.exec_target(worker) == "42"
        await backend.close()
