"""Continuation session registry.

Maps each task id to the session file the executed tool uses to resume
its conversation on the next turn. Sessions are created lazily on first
use and live for the lifetime of the process.
"""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import structlog

from workcell.errors import WorkcellError
from workcell.models import Session

logger = structlog.get_logger(__name__)


class SessionRegistry:
    """In-memory registry of continuation sessions, keyed by task id.

    Lookups for different task ids never block each other; concurrent
    first requests for the same task id create exactly one session.

    Attributes:
        sessions_dir: Directory holding the session files.
    """

    def __init__(self, sessions_dir: Path) -> None:
        self.sessions_dir = sessions_dir
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._logger = logger.bind(component="SessionRegistry")

    def session_path_for(self, task_id: str) -> Path:
        """Return the session file path for a task id."""
        return self.sessions_dir / f"issue-{task_id}.session"

    def get(self, task_id: str) -> Session | None:
        """Return the registered session for a task id, if any."""
        return self._sessions.get(task_id)

    async def get_or_create(self, task_id: str) -> Path:
        """Return the session path for a task, registering it on first use.

        Repeated calls return the same path and never recreate the backing
        directory.

        Args:
            task_id: Task identifier.

        Returns:
            Session file path.

        Raises:
            WorkcellError: If the session directory cannot be created.
        """
        existing = self._sessions.get(task_id)
        if existing is not None:
            return existing.session_path

        lock = self._locks.setdefault(task_id, asyncio.Lock())
        async with lock:
            existing = self._sessions.get(task_id)
            if existing is not None:
                return existing.session_path

            try:
                await asyncio.to_thread(self.sessions_dir.mkdir, parents=True, exist_ok=True)
            except OSError as e:
                raise WorkcellError(
                    f"Cannot create session directory {self.sessions_dir}: {e}",
                    task_id=task_id,
                ) from e

            session = Session(task_id=task_id, session_path=self.session_path_for(task_id))
            self._sessions[task_id] = session
            self._logger.info("session_created", task_id=task_id, session_path=str(session.session_path))
            return session.session_path

    def touch(self, task_id: str) -> None:
        """Record a completed primary execution for a task.

        ``last_used`` strictly increases with every touch, even when the
        clock has not advanced. Unknown task ids are ignored.

        Args:
            task_id: Task identifier.
        """
        session = self._sessions.get(task_id)
        if session is None:
            self._logger.debug("session_touch_unknown", task_id=task_id)
            return

        now = datetime.now(timezone.utc)
        if now <= session.last_used:
            now = session.last_used + timedelta(microseconds=1)
        session.last_used = now
        self._logger.debug("session_touched", task_id=task_id, last_used=now.isoformat())

    def snapshot(self) -> list[Session]:
        """Return the registered sessions."""
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)
