"""Unit tests for the task dispatcher.

Tests cover:
- Backend fallback order and when it applies
- Worker cleanup on every path, exactly once
- Primary command construction, stdin context and environment
- EXEC: directive handling
- Session bookkeeping
- Result reporting
- Concurrency: shared workers, bounded submission, cancellation
- Shutdown and stale worker reaping
"""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Callable
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from urllib3.exceptions import MaxRetryError

from workcell.backends.base import ReadinessProbe, WorkerBackend
from workcell.backends.container import ContainerBackend
from workcell.backends.host import HostBackend
from workcell.backends.pod import PodBackend
from workcell.config import WorkcellConfig
from workcell.errors import BackendUnavailable, CreationFailed, ExecutionFailed, ReadinessTimeout
from workcell.logging import get_correlation_id
from workcell.models import BackendKind, Task, Worker, WorkerState
from workcell.orchestrator.dispatcher import TaskDispatcher
from workcell.orchestrator.registry import WorkerRegistry
from workcell.orchestrator.sessions import SessionRegistry
from workcell.transports.base import ExecTransport

Responder = Callable[[str, "str | None"], str]


class FakeBackend(WorkerBackend):
    """In-memory backend recording every lifecycle call."""

    def __init__(
        self,
        kind: BackendKind,
        *,
        fail_create: bool = False,
        never_ready: bool = False,
        responder: Responder | None = None,
        exec_delay: float = 0.0,
    ) -> None:
        self.kind = kind
        transport = MagicMock(spec=ExecTransport)
        transport.close = AsyncMock()
        super().__init__(transport, poll_interval=0.01)
        self.fail_create = fail_create
        self.never_ready = never_ready
        self.responder = responder or (lambda command, stdin: "ok")
        self.exec_delay = exec_delay
        self.created: list[Worker] = []
        self.deleted: list[str] = []
        self.commands: list[tuple[str, str | None, dict[str, str] | None]] = []
        self.logs_fetched: list[str] = []

    async def create(self, task: Task) -> Worker:
        if self.fail_create:
            raise CreationFailed(f"{self.kind.value} rejected", backend=self.kind.value, task_id=task.id)
        worker = Worker(
            id=f"{self.kind.value}-{task.id}-{len(self.created)}",
            task_id=task.id,
            backend=self.kind,
            workspace_path=f"/workspace/{task.id}",
        )
        worker.transition(WorkerState.CREATED)
        self.created.append(worker)
        return worker

    async def _probe(self, worker: Worker) -> ReadinessProbe:
        return ReadinessProbe(ready=not self.never_ready, detail="Pending")

    async def _delete(self, worker: Worker) -> None:
        self.deleted.append(worker.id)

    async def fetch_logs(self, worker: Worker) -> str:
        self.logs_fetched.append(worker.id)
        return "image pull backoff"

    async def exec(self, worker, command, *, stdin=None, cwd=None, env=None) -> str:
        self.commands.append((command, stdin, env))
        if self.exec_delay:
            await asyncio.sleep(self.exec_delay)
        return self.responder(command, stdin)


def _failing_on(bad: set[str]) -> Responder:
    def respond(command: str, stdin: str | None) -> str:
        if command in bad:
            raise ExecutionFailed(f"{command} failed", output="err", exit_code=1)
        return f"ran {command}"

    return respond


@pytest.fixture
def config(tmp_path: Path) -> WorkcellConfig:
    """Create a fast-polling configuration rooted in a temp directory."""
    return WorkcellConfig(
        dispatch={
            "primary_command": "claude --print",
            "readiness_timeout_seconds": 0.05,
            "poll_interval_seconds": 0.01,
            "max_concurrent_tasks": 2,
            "shutdown_grace_seconds": 0.1,
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


@pytest.fixture
def task() -> Task:
    """Create a sample task."""
    return Task(id="42", instruction="Hello", repository="acme/api")


def _dispatcher(config: WorkcellConfig, reporter: AsyncMock, *backends: WorkerBackend) -> TaskDispatcher:
    return TaskDispatcher(config, backends, reporter)


class TestBackendSelection:
    """Test fallback through the configured backends."""

    @pytest.mark.asyncio
    async def test_first_backend_used(self, config, reporter, task) -> None:
        """Test that a healthy first backend serves the task alone."""
        pod = FakeBackend(BackendKind.POD)
        host = FakeBackend(BackendKind.HOST)
        dispatcher = _dispatcher(config, reporter, pod, host)

        output = await dispatcher.process(task)

        assert output == "ok"
        assert len(pod.created) == 1
        assert host.created == []

    @pytest.mark.asyncio
    async def test_creation_failure_falls_back(self, config, reporter, task) -> None:
        """Test that a rejected pod leads to the container, and host is never tried."""
        pod = FakeBackend(BackendKind.POD, fail_create=True)
        container = FakeBackend(BackendKind.CONTAINER)
        host = FakeBackend(BackendKind.HOST)
        dispatcher = _dispatcher(config, reporter, pod, container, host)

        result = await dispatcher.handle(task)

        assert result.success is True
        assert result.backend == BackendKind.CONTAINER
        assert len(container.created) == 1
        assert host.created == []

    @pytest.mark.asyncio
    async def test_readiness_timeout_falls_back_and_cleans_up(self, config, reporter, task) -> None:
        """Test that an unready worker is inspected, deleted, and skipped."""
        pod = FakeBackend(BackendKind.POD, never_ready=True)
        host = FakeBackend(BackendKind.HOST)
        dispatcher = _dispatcher(config, reporter, pod, host)

        await dispatcher.process(task)

        stuck = pod.created[0]
        assert pod.logs_fetched == [stuck.id]
        assert pod.deleted == [stuck.id]
        assert stuck.state == WorkerState.DELETED
        assert len(host.created) == 1

    @pytest.mark.asyncio
    async def test_unreachable_kubernetes_falls_back_to_host(self, config, reporter, task) -> None:
        """Test that a connection failure under the Kubernetes client is a creation failure."""
        core_api = MagicMock()
        core_api.create_namespaced_service_account.side_effect = MaxRetryError(pool=None, url="/api/v1")
        pod = PodBackend(config, core_api=core_api, rbac_api=MagicMock())
        host = FakeBackend(BackendKind.HOST)
        dispatcher = _dispatcher(config, reporter, pod, host)

        result = await dispatcher.handle(task)

        assert result.success is True
        assert result.backend == BackendKind.HOST
        assert len(host.created) == 1
        core_api.create_namespaced_pod.assert_not_called()

    @pytest.mark.asyncio
    async def test_kubernetes_lost_during_readiness_falls_back(self, config, reporter, task) -> None:
        """Test that a pod whose API server drops during readiness is deleted and skipped."""
        core_api = MagicMock()
        core_api.read_namespaced_pod_status.side_effect = MaxRetryError(pool=None, url="/api/v1")
        core_api.read_namespaced_pod_log.side_effect = MaxRetryError(pool=None, url="/api/v1")
        pod = PodBackend(config, core_api=core_api, rbac_api=MagicMock())
        host = FakeBackend(BackendKind.HOST)
        dispatcher = _dispatcher(config, reporter, pod, host)

        result = await dispatcher.handle(task)

        assert result.success is True
        assert result.backend == BackendKind.HOST
        core_api.delete_namespaced_pod.assert_called_once()

    @pytest.mark.asyncio
    async def test_all_backends_fail(self, config, reporter, task) -> None:
        """Test that exhausting every backend raises BackendUnavailable."""
        pod = FakeBackend(BackendKind.POD, fail_create=True)
        host = FakeBackend(BackendKind.HOST, never_ready=True)
        dispatcher = _dispatcher(config, reporter, pod, host)

        with pytest.raises(BackendUnavailable) as exc_info:
            await dispatcher.process(task)

        kinds = [kind for kind, _ in exc_info.value.attempts]
        assert kinds == ["pod", "host"]
        assert isinstance(exc_info.value.attempts[0][1], CreationFailed)
        assert isinstance(exc_info.value.attempts[1][1], ReadinessTimeout)
        assert exc_info.value.attempts[1][1].logs == "image pull backoff"
        assert host.deleted == [host.created[0].id]
        assert dispatcher.active_workers() == []

    @pytest.mark.asyncio
    async def test_execution_failure_does_not_fall_back(self, config, reporter, task) -> None:
        """Test that a failing primary command surfaces directly."""
        pod = FakeBackend(BackendKind.POD, responder=_failing_on({"claude --print --max-turns 10 --output-format text"}))
        host = FakeBackend(BackendKind.HOST)
        dispatcher = _dispatcher(config, reporter, pod, host)

        with pytest.raises(ExecutionFailed):
            await dispatcher.process(task)

        assert host.created == []
        assert pod.deleted == [pod.created[0].id]

    def test_requires_a_backend(self, config, reporter) -> None:
        """Test that an empty backend list is rejected."""
        with pytest.raises(ValueError):
            TaskDispatcher(config, [], reporter)


class TestExecution:
    """Test primary command execution."""

    def test_primary_command_flags(self, config, reporter) -> None:
        """Test that task flags are appended to the primary command."""
        dispatcher = _dispatcher(config, reporter, FakeBackend(BackendKind.HOST))
        task = Task(id="1", instruction="x", max_turns=3, output_format="stream-json")

        assert dispatcher.build_primary_command(task) == "claude --print --max-turns 3 --output-format stream-json"

    def test_primary_command_without_flags(self, config, reporter) -> None:
        """Test a plain primary command."""
        config.dispatch.append_task_flags = False
        config.dispatch.primary_command = "cat"
        dispatcher = _dispatcher(config, reporter, FakeBackend(BackendKind.HOST))

        assert dispatcher.build_primary_command(Task(id="1", instruction="x")) == "cat"

    @pytest.mark.asyncio
    async def test_context_and_environment(self, config, reporter, task, tmp_path) -> None:
        """Test the stdin context and environment of the primary command."""
        host = FakeBackend(BackendKind.HOST)
        dispatcher = _dispatcher(config, reporter, host)

        await dispatcher.process(task)

        command, stdin, env = host.commands[0]
        assert command.startswith("claude --print")
        assert "Issue ID: #42" in stdin.splitlines()
        assert "Task: Hello" in stdin.splitlines()
        assert env == {
            "TASK_ID": "42",
            "REPOSITORY": "acme/api",
            "SESSION_FILE": str(tmp_path / "sessions" / "issue-42.session"),
        }

    @pytest.mark.asyncio
    async def test_session_file_inside_container(self, config, reporter, task) -> None:
        """Test that a worker-side session directory is honoured."""
        container = FakeBackend(BackendKind.CONTAINER)
        original_create = container.create

        async def create_with_mount(t: Task) -> Worker:
            worker = await original_create(t)
            worker.metadata["session_dir"] = "/app/sessions"
            return worker

        container.create = create_with_mount
        dispatcher = _dispatcher(config, reporter, container)

        await dispatcher.process(task)

        _, _, env = container.commands[0]
        assert env["SESSION_FILE"] == "/app/sessions/issue-42.session"

    @pytest.mark.asyncio
    async def test_execution_timeout(self, config, reporter, task) -> None:
        """Test that the optional execution deadline is enforced."""
        config.dispatch.execution_timeout_seconds = 0.05
        host = FakeBackend(BackendKind.HOST, exec_delay=5)
        dispatcher = _dispatcher(config, reporter, host)

        with pytest.raises(ExecutionFailed, match="did not finish"):
            await dispatcher.process(task)

        assert host.deleted == [host.created[0].id]


class TestDirectives:
    """Test secondary command handling."""

    @pytest.mark.asyncio
    async def test_directives_run_in_order(self, config, reporter, task) -> None:
        """Test that every directive runs after the primary command, in order."""

        def respond(command: str, stdin: str | None) -> str:
            if command.startswith("claude"):
                return "done\nEXEC: npm test\n  EXEC:ls -la  \nEXEC:   "
            return "fine"

        host = FakeBackend(BackendKind.HOST, responder=respond)
        dispatcher = _dispatcher(config, reporter, host)

        result = await dispatcher.handle(task)

        assert [c for c, _, _ in host.commands[1:]] == ["npm test", "ls -la"]
        assert result.directives_run == 2
        assert result.directives_failed == 0

    @pytest.mark.asyncio
    async def test_failed_directive_does_not_stop_the_rest(self, config, reporter, task) -> None:
        """Test that a failing directive is counted and the others still run."""
        primary = "claude --print --max-turns 10 --output-format text"

        def respond(command: str, stdin: str | None) -> str:
            if command == primary:
                return "EXEC: first\nEXEC: broken\nEXEC: last"
            if command == "broken":
                raise ExecutionFailed("broken failed", exit_code=2)
            return "fine"

        host = FakeBackend(BackendKind.HOST, responder=respond)
        dispatcher = _dispatcher(config, reporter, host)

        result = await dispatcher.handle(task)

        assert result.success is True
        assert [c for c, _, _ in host.commands[1:]] == ["first", "broken", "last"]
        assert result.directives_run == 2
        assert result.directives_failed == 1
        reporter.post_result.assert_awaited_once()


class TestSessions:
    """Test session bookkeeping around execution."""

    @pytest.mark.asyncio
    async def test_touched_once_after_success(self, config, reporter, task) -> None:
        """Test exactly one touch per successful primary execution."""

        def respond(command: str, stdin: str | None) -> str:
            return "EXEC: a\nEXEC: b" if command.startswith("claude") else "ok"

        host = FakeBackend(BackendKind.HOST, responder=respond)
        sessions = SessionRegistry(config.dispatch.sessions_dir)
        dispatcher = TaskDispatcher(config, [host], reporter, sessions=sessions)

        with patch.object(sessions, "touch", wraps=sessions.touch) as touch:
            await dispatcher.process(task)

        touch.assert_called_once_with("42")

    @pytest.mark.asyncio
    async def test_not_touched_on_failure(self, config, reporter, task) -> None:
        """Test that a failed primary command leaves the session untouched."""
        host = FakeBackend(BackendKind.HOST, responder=_failing_on({"claude --print --max-turns 10 --output-format text"}))
        sessions = SessionRegistry(config.dispatch.sessions_dir)
        dispatcher = TaskDispatcher(config, [host], reporter, sessions=sessions)

        with patch.object(sessions, "touch") as touch:
            with pytest.raises(ExecutionFailed):
                await dispatcher.process(task)

        touch.assert_not_called()

    @pytest.mark.asyncio
    async def test_touch_precedes_cleanup(self, config, reporter, task) -> None:
        """Test that the session is recorded before the worker is deleted."""
        events: list[str] = []
        host = FakeBackend(BackendKind.HOST)
        sessions = SessionRegistry(config.dispatch.sessions_dir)
        dispatcher = TaskDispatcher(config, [host], reporter, sessions=sessions)

        original_delete = host._delete

        async def record_delete(worker: Worker) -> None:
            events.append("delete")
            await original_delete(worker)

        host._delete = record_delete
        with patch.object(sessions, "touch", side_effect=lambda _: events.append("touch")):
            await dispatcher.process(task)

        assert events == ["touch", "delete"]


class TestReporting:
    """Test result reporting from handle()."""

    @pytest.mark.asyncio
    async def test_success_reported_once(self, config, reporter, task) -> None:
        """Test the success message."""
        dispatcher = _dispatcher(config, reporter, FakeBackend(BackendKind.HOST))

        result = await dispatcher.handle(task)

        assert result.success is True
        reporter.post_result.assert_awaited_once()
        args, kwargs = reporter.post_result.call_args
        assert args[0] == "42"
        assert "Task #42 completed on the host backend." in args[1]
        assert kwargs == {"success": True}

    @pytest.mark.asyncio
    async def test_failure_reported_once(self, config, reporter, task) -> None:
        """Test that a failure is reported once and never raised."""
        dispatcher = _dispatcher(config, reporter, FakeBackend(BackendKind.HOST, fail_create=True))

        result = await dispatcher.handle(task)

        assert result.success is False
        assert "No backend could provide a worker" in result.error_detail
        reporter.post_result.assert_awaited_once()
        args, kwargs = reporter.post_result.call_args
        assert args[1].startswith("Task #42 failed:")
        assert "Traceback" not in args[1]
        assert kwargs == {"success": False}

    @pytest.mark.asyncio
    async def test_unexpected_error_reported_without_traceback(self, config, reporter, task) -> None:
        """Test that programming errors are reported generically."""

        def explode(command: str, stdin: str | None) -> str:
            raise KeyError("internal")

        host = FakeBackend(BackendKind.HOST, responder=explode)
        dispatcher = _dispatcher(config, reporter, host)

        result = await dispatcher.handle(task)

        assert result.success is False
        assert result.error_detail.startswith("Internal error: KeyError")
        assert host.deleted == [host.created[0].id]
        reporter.post_result.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reporter_failure_is_contained(self, config, reporter, task) -> None:
        """Test that a broken reporter does not fail the task."""
        reporter.post_result.side_effect = RuntimeError("webhook down")
        dispatcher = _dispatcher(config, reporter, FakeBackend(BackendKind.HOST))

        result = await dispatcher.handle(task)

        assert result.success is True

    @pytest.mark.asyncio
    async def test_long_output_truncated_in_message(self, config, reporter, task) -> None:
        """Test that reported output keeps only the tail."""
        host = FakeBackend(BackendKind.HOST, responder=lambda c, s: "x" * 10000 + "TAIL")
        dispatcher = _dispatcher(config, reporter, host)

        await dispatcher.handle(task)

        message = reporter.post_result.call_args.args[1]
        assert message.endswith("TAIL")
        assert len(message) < 4200


class TestCleanup:
    """Test worker deletion guarantees."""

    @pytest.mark.asyncio
    async def test_deleted_exactly_once_on_success(self, config, reporter, task) -> None:
        """Test cleanup after a successful run."""
        host = FakeBackend(BackendKind.HOST)
        dispatcher = _dispatcher(config, reporter, host)

        await dispatcher.process(task)

        assert host.deleted == [host.created[0].id]
        assert host.created[0].state == WorkerState.DELETED
        assert dispatcher.active_workers() == []

    @pytest.mark.asyncio
    async def test_concurrent_same_task_shares_worker(self, config, reporter, task) -> None:
        """Test that simultaneous dispatches of one id use one worker and delete it once."""
        host = FakeBackend(BackendKind.HOST, exec_delay=0.05)
        dispatcher = _dispatcher(config, reporter, host)

        outputs = await asyncio.gather(dispatcher.process(task), dispatcher.process(task))

        assert outputs == ["ok", "ok"]
        assert len(host.created) == 1
        assert host.deleted == [host.created[0].id]

    @pytest.mark.asyncio
    async def test_cancel_during_readiness_deletes_worker(self, config, reporter, task) -> None:
        """Test that cancelling while waiting for readiness still cleans up."""
        config.dispatch.readiness_timeout_seconds = 30
        pod = FakeBackend(BackendKind.POD, never_ready=True)
        dispatcher = _dispatcher(config, reporter, pod)

        running = asyncio.create_task(dispatcher.process(task))
        await asyncio.sleep(0.05)
        running.cancel()

        with pytest.raises(asyncio.CancelledError):
            await running

        assert pod.deleted == [pod.created[0].id]

    @pytest.mark.asyncio
    async def test_cancel_during_create_removes_container(self, config, reporter, task) -> None:
        """Test that a container finished after the dispatch was cancelled is removed."""
        container = MagicMock()
        client = MagicMock()
        client.containers.get.return_value = container

        def slow_run(**kwargs):
            time.sleep(0.3)
            return container

        client.containers.run.side_effect = slow_run
        backend = ContainerBackend(config)
        backend._client = client
        dispatcher = _dispatcher(config, reporter, backend)

        running = asyncio.create_task(dispatcher.handle(task))
        await asyncio.sleep(0.05)
        running.cancel()

        with pytest.raises(asyncio.CancelledError):
            await running

        client.containers.run.assert_called_once()
        container.stop.assert_called_once()
        container.remove.assert_called_once_with(force=True)
        assert dispatcher.active_workers() == []

    @pytest.mark.asyncio
    async def test_cancel_during_execution_deletes_worker(self, config, reporter, task) -> None:
        """Test that cancelling a running command still cleans up and reports."""
        host = FakeBackend(BackendKind.HOST, exec_delay=30)
        dispatcher = _dispatcher(config, reporter, host)

        running = asyncio.create_task(dispatcher.handle(task))
        await asyncio.sleep(0.05)
        running.cancel()

        with pytest.raises(asyncio.CancelledError):
            await running

        assert host.deleted == [host.created[0].id]
        reporter.post_result.assert_awaited_once()
        assert reporter.post_result.call_args.kwargs == {"success": False}


class TestSubmission:
    """Test bounded concurrent submission."""

    @pytest.mark.asyncio
    async def test_concurrency_bounded(self, config, reporter) -> None:
        """Test that no more than max_concurrent_tasks run at once."""
        running = 0
        peak = 0

        class CountingBackend(FakeBackend):
            async def exec(self, worker, command, *, stdin=None, cwd=None, env=None) -> str:
                nonlocal running, peak
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.02)
                running -= 1
                return "ok"

        dispatcher = _dispatcher(config, reporter, CountingBackend(BackendKind.HOST))

        handles = [dispatcher.submit(Task(id=str(i), instruction="x")) for i in range(6)]
        results = await asyncio.gather(*handles)

        assert all(r.success for r in results)
        assert peak == 2
        assert reporter.post_result.await_count == 6

    @pytest.mark.asyncio
    async def test_drain_waits_for_inflight(self, config, reporter) -> None:
        """Test that drain returns every submitted result."""
        dispatcher = _dispatcher(config, reporter, FakeBackend(BackendKind.HOST, exec_delay=0.01))
        for i in range(3):
            dispatcher.submit(Task(id=str(i), instruction="x"))

        results = await dispatcher.drain()

        assert sorted(r.task_id for r in results) == ["0", "1", "2"]
        assert dispatcher.inflight == 0

    @pytest.mark.asyncio
    async def test_submit_rejected_after_shutdown(self, config, reporter, task) -> None:
        """Test that shutdown closes the dispatcher to new work."""
        dispatcher = _dispatcher(config, reporter, FakeBackend(BackendKind.HOST))
        await dispatcher.shutdown()

        with pytest.raises(RuntimeError, match="shutting down"):
            dispatcher.submit(task)


class TestLifecycle:
    """Test shutdown and stale worker reaping."""

    @pytest.mark.asyncio
    async def test_shutdown_cancels_stragglers_and_cleans_up(self, config, reporter, task) -> None:
        """Test that shutdown cancels overdue tasks, deletes workers and closes resources."""
        host = FakeBackend(BackendKind.HOST, exec_delay=30)
        dispatcher = _dispatcher(config, reporter, host)

        handle = dispatcher.submit(task)
        await asyncio.sleep(0.05)
        await dispatcher.shutdown()

        assert handle.cancelled()
        assert host.deleted == [host.created[0].id]
        host.transport.close.assert_awaited_once()
        reporter.close.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_reap_stale_workers(self, config, reporter, task) -> None:
        """Test that only workers older than the limit are deleted."""
        host = FakeBackend(BackendKind.HOST, exec_delay=30)
        dispatcher = _dispatcher(config, reporter, host)

        running = asyncio.create_task(dispatcher.process(task))
        await asyncio.sleep(0.05)

        assert await dispatcher.reap_stale_workers(max_age_seconds=3600) == 0
        assert await dispatcher.reap_stale_workers(max_age_seconds=0) == 1
        assert host.deleted == [host.created[0].id]
        assert dispatcher.active_workers() == []

        running.cancel()
        with pytest.raises(asyncio.CancelledError):
            await running
        # Release after reaping must not delete again
        assert host.deleted == [host.created[0].id]


@pytest.mark.asyncio
async def test_from_config_uses_host_backend(config: WorkcellConfig) -> None:
    """Test that the default configuration dispatches to the host only."""
    dispatcher = TaskDispatcher.from_config(config)

    assert [b.kind for b in dispatcher.backends] == [BackendKind.HOST]
    assert isinstance(dispatcher.backends[0], HostBackend)
    assert isinstance(dispatcher.workers, WorkerRegistry)


@pytest.mark.asyncio
async def test_each_dispatch_has_own_correlation_id(config, reporter) -> None:
    """Test that concurrent dispatches of one task id log under different correlation ids."""
    seen: list[str | None] = []

    def respond(command: str, stdin: str | None) -> str:
        seen.append(get_correlation_id())
        return "ok"

    host = FakeBackend(BackendKind.HOST, responder=respond, exec_delay=0.02)
    dispatcher = _dispatcher(config, reporter, host)

    await asyncio.gather(
        dispatcher.handle(Task(id="42", instruction="first")),
        dispatcher.handle(Task(id="42", instruction="second")),
    )

    assert len(host.created) == 1
    assert len(seen) == 2
    assert None not in seen
    assert seen[0] != seen[1]
