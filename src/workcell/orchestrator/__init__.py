"""Task orchestration: dispatch, worker and session registries."""

from workcell.orchestrator.directives import parse_directives
from workcell.orchestrator.dispatcher import TaskDispatcher
from workcell.orchestrator.registry import WorkerRegistry
from workcell.orchestrator.sessions import SessionRegistry

__all__ = ["SessionRegistry", "TaskDispatcher", "WorkerRegistry", "parse_directives"]
