"""Result reporters.

A result reporter receives exactly one human-readable message per handled
task. The dispatcher never depends on delivery: reporter failures are
logged and otherwise ignored.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from workcell.config import ReporterConfig
from workcell.logging import get_logger

logger = get_logger(__name__)


class ResultReporter(Protocol):
    """Receives the final message for a task."""

    async def post_result(self, task_id: str, message: str, *, success: bool = True) -> None:
        """Deliver the result message for a task."""
        ...

    async def close(self) -> None:
        """Release any held resources."""
        ...


class LogResultReporter:
    """Writes results to the structured log only."""

    async def post_result(self, task_id: str, message: str, *, success: bool = True) -> None:
        logger.info(
            "task_result",
            task_id=task_id,
            success=success,
            message=message[:2000],
        )

    async def close(self) -> None:
        return None


@dataclass
class ResultPayload:
    """Webhook payload for a task result."""

    task_id: str
    success: bool
    message: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert payload to dictionary for JSON serialization."""
        return {
            "task_id": self.task_id,
            "success": self.success,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


class WebhookResultReporter:
    """Posts results as JSON to a webhook endpoint."""

    def __init__(self, config: ReporterConfig) -> None:
        if not config.webhook_url:
            raise ValueError("WebhookResultReporter requires reporter.webhook_url")
        self.config = config
        self.logger = get_logger(__name__)
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.config.timeout_seconds)
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def send(self, payload: ResultPayload) -> bool:
        """Send payload to the webhook.

        Returns True if successful, False otherwise.
        """
        try:
            client = await self._get_client()
            headers = {"Content-Type": "application/json"}
            if self.config.auth_header:
                headers["Authorization"] = self.config.auth_header

            response = await client.post(
                self.config.webhook_url,
                json=payload.to_dict(),
                headers=headers,
            )

            if response.is_success:
                self.logger.info(
                    "result_webhook_sent",
                    task_id=payload.task_id,
                    status_code=response.status_code,
                )
                return True

            self.logger.warning(
                "result_webhook_failed",
                task_id=payload.task_id,
                status_code=response.status_code,
                response_text=response.text[:200],
            )
            return False

        except httpx.RequestError as e:
            self.logger.error(
                "result_webhook_error",
                task_id=payload.task_id,
                error=str(e),
            )
            return False

    async def post_result(self, task_id: str, message: str, *, success: bool = True) -> None:
        await self.send(
            ResultPayload(
                task_id=task_id,
                success=success,
                message=message,
                timestamp=datetime.now(timezone.utc),
            )
        )


def build_reporter(config: ReporterConfig) -> ResultReporter:
    """Return a webhook reporter when a URL is configured, else a log reporter."""
    if config.webhook_url:
        return WebhookResultReporter(config)
    return LogResultReporter()
