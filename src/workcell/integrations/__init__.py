"""Outbound integrations."""

from workcell.integrations.reporter import (
    LogResultReporter,
    ResultReporter,
    WebhookResultReporter,
    build_reporter,
)

__all__ = ["LogResultReporter", "ResultReporter", "WebhookResultReporter", "build_reporter"]
