"""End-to-end tests for dispatching tasks to the host backend.

The primary command is ``cat`` so the rendered task context comes back as
the output, which makes every step of the flow observable without an
external tool.
"""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from workcell.config import WorkcellConfig
from workcell.models import BackendKind, Task
from workcell.orchestrator.dispatcher import TaskDispatcher


@pytest.fixture
def config(tmp_path: Path) -> WorkcellConfig:
    """Create a host-only configuration with an echoing primary command."""
    return WorkcellConfig(
        dispatch={
            "primary_command": "cat",
            "append_task_flags": False,
            "poll_interval_seconds": 0.01,
            "readiness_timeout_seconds": 5,
            "workspaces_dir": tmp_path / "workspaces",
            "sessions_dir": tmp_path / "sessions",
        }
    )


@pytest.fixture
def reporter() -> AsyncMock:
    """Create a mock result reporter."""
    mock = AsyncMock()
    mock.post_result = AsyncMock()
    mock.close = AsyncMock()
    return mock


@pytest.mark.e2e
@pytest.mark.asyncio
class TestHostDispatch:
    """Test complete task flows on the host backend."""

    async def test_task_round_trip(self, config: WorkcellConfig, reporter: AsyncMock, tmp_path: Path) -> None:
        """Test workspace, context, session and report for one task."""
        dispatcher = TaskDispatcher.from_config(config, reporter=reporter)

        result = await dispatcher.handle(Task(id="42", instruction="Hello"))

        assert result.success is True
        assert result.backend == BackendKind.HOST
        assert (tmp_path / "workspaces" / "42").is_dir()
        lines = result.output.splitlines()
        assert "Issue ID: #42" in lines
        assert "Task: Hello" in lines

        session = dispatcher.sessions.get("42")
        assert session is not None
        assert session.session_path == tmp_path / "sessions" / "issue-42.session"
        assert (tmp_path / "sessions").is_dir()

        reporter.post_result.assert_awaited_once()
        assert reporter.post_result.call_args.kwargs == {"success": True}
        assert dispatcher.active_workers() == []

        await dispatcher.shutdown()
        reporter.close.assert_awaited_once()

    async def test_directives_run_in_workspace(self, config: WorkcellConfig, reporter: AsyncMock, tmp_path: Path) -> None:
        """Test that EXEC: lines printed by the primary command run afterwards."""
        config.dispatch.primary_command = "cat >/dev/null; echo 'EXEC: echo first > log.txt'; echo 'EXEC: echo second >> log.txt'"
        dispatcher = TaskDispatcher.from_config(config, reporter=reporter)

        result = await dispatcher.handle(Task(id="7", instruction="Write a log"))

        assert result.success is True
        assert result.directives_run == 2
        assert (tmp_path / "workspaces" / "7" / "log.txt").read_text() == "first\nsecond\n"

    async def test_failing_command_reported(self, config: WorkcellConfig, reporter: AsyncMock) -> None:
        """Test that a non-zero primary command yields one failure report."""
        config.dispatch.primary_command = "echo broken >&2; exit 5"
        dispatcher = TaskDispatcher.from_config(config, reporter=reporter)

        result = await dispatcher.handle(Task(id="9", instruction="Fail"))

        assert result.success is False
        assert "broken" in result.output
        reporter.post_result.assert_awaited_once()
        message = reporter.post_result.call_args.args[1]
        assert message.startswith("Task #9 failed:")
        assert "status 5" in message

    async def test_second_turn_reuses_session(self, config: WorkcellConfig, reporter: AsyncMock) -> None:
        """Test that a follow-up task with the same id keeps its session."""
        dispatcher = TaskDispatcher.from_config(config, reporter=reporter)

        await dispatcher.handle(Task(id="42", instruction="First"))
        first = dispatcher.sessions.get("42")
        first_used = first.last_used
        await dispatcher.handle(Task(id="42", instruction="Second"))
        second = dispatcher.sessions.get("42")

        assert second is first
        assert second.last_used > first_used
        assert len(dispatcher.sessions) == 1
