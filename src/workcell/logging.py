"""Structured logging configuration for Workcell.

This module configures structlog with support for:
- JSON and console output formats
- File rotation based on size
- A per-dispatch correlation id
- Task and backend context binding

The logging system integrates structlog with Python's stdlib logging
for handlers (file rotation), while using structlog exclusively for
actual log emission.

Every dispatch runs in its own asyncio task. The task id, the backend and
the correlation id live in contextvars, so they follow the dispatch through
registry, backend and transport calls and never appear on another
dispatch's lines. Two dispatches of the same task id share a worker but
keep separate correlation ids.

Example usage:
    >>> from workcell.config import LoggingConfig
    >>> from workcell.logging import setup_logging, get_logger, bind_task_context, new_correlation_id
    >>>
    >>> setup_logging(LoggingConfig(level="INFO", format="console"))
    >>> logger = get_logger(__name__)
    >>> new_correlation_id()
    'a3f09c1be27d'
    >>> bind_task_context(task_id="42", backend="container")
    >>> logger.info("worker_ready", worker_id="workcell-worker-42")
"""

from __future__ import annotations

import contextvars
import logging
import logging.handlers
import sys
import uuid
from typing import Any

import structlog

from workcell.config import LoggingConfig

CORRELATION_ID_LENGTH = 12

# Set once per dispatch by new_correlation_id()
_correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)


def add_correlation_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor adding the current dispatch's correlation_id."""
    correlation_id = _correlation_id.get()
    if correlation_id is not None:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def set_correlation_id(correlation_id: str | None) -> None:
    """Set correlation ID for current context.

    Args:
        correlation_id: Correlation ID string or None to clear
    """
    _correlation_id.set(correlation_id)


def new_correlation_id() -> str:
    """Start a new correlation scope for one dispatch.

    Returns:
        The generated id, a short lowercase hex string.
    """
    correlation_id = uuid.uuid4().hex[:CORRELATION_ID_LENGTH]
    _correlation_id.set(correlation_id)
    return correlation_id


def get_correlation_id() -> str | None:
    """Get current correlation ID from context.

    Returns:
        The id set for the running dispatch, or None outside of one.
    """
    return _correlation_id.get()


def bind_task_context(task_id: str, backend: str | None = None) -> None:
    """Bind task context to all subsequent logs in the current task.

    Called once when a dispatch starts and again when a backend has been
    chosen, so early lines carry only ``task_id`` and later ones carry
    ``backend`` as well.

    Args:
        task_id: Task identifier to bind
        backend: Backend kind serving the task, once known
    """
    if backend is None:
        structlog.contextvars.bind_contextvars(task_id=task_id)
    else:
        structlog.contextvars.bind_contextvars(task_id=task_id, backend=backend)


def setup_logging(config: LoggingConfig) -> None:
    """Configure structlog with the given configuration.

    Installs one handler on the stdlib root logger (a rotating file when
    ``config.file`` is set, stdout otherwise) and the processor chain every
    Workcell logger renders through. Calling it again replaces the previous
    setup.

    Args:
        config: Logging configuration from WorkcellConfig

    Example:
        >>> from pathlib import Path
        >>> from workcell.config import LoggingConfig
        >>>
        >>> # Service deployment: JSON lines, rotated at 50 MB
        >>> setup_logging(LoggingConfig(
        ...     level="INFO",
        ...     format="json",
        ...     file=Path("/var/log/workcell/dispatcher.log"),
        ...     rotation_size_mb=50,
        ...     retention_count=3,
        ... ))
        >>>
        >>> # Local runs against the host backend
        >>> setup_logging(LoggingConfig(level="DEBUG", format="console"))
    """
    log_level = getattr(logging, config.level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    if config.file is not None:
        config.file.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.handlers.RotatingFileHandler(
            filename=config.file,
            maxBytes=config.rotation_size_mb * 1024 * 1024,
            backupCount=config.retention_count,
            encoding="utf-8",
        )
    else:
        handler = logging.StreamHandler(sys.stdout)

    handler.setLevel(log_level)
    root_logger.addHandler(handler)

    if config.format == "json":
        renderer: Any = structlog.processors.JSONRenderer()
    else:  # console
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            # task_id and backend from bind_task_context
            structlog.contextvars.merge_contextvars,
            add_correlation_id,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance.

    Args:
        name: Logger name (typically __name__ of the calling module)

    Returns:
        Configured structlog BoundLogger instance

    Example:
        >>> logger = get_logger("workcell.backends.pod").bind(backend="pod")
        >>> logger.warning("pod_probe_failed", pod="workcell-worker-42", status=503)
    """
    return structlog.get_logger(name)
