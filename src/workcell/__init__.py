"""Workcell - ephemeral worker execution engine.

This package turns free-text task requests into work performed inside an
isolated worker (host process, Docker container or Kubernetes pod), relays
in-band ``EXEC:`` directives emitted by the executed tool back into the same
worker, and reports a single result per task.
"""

__version__ = "0.1.0"
