"""
Notifications for job executions and ADR orchestration runs.

Delivery is best effort: a notification failure is logged and never fails
the job or orchestration that produced it.
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable
from typing import Any

import httpx

from scheduler_platform.config import get_settings
from scheduler_platform.core.logging import get_logger
from scheduler_platform.models.job_execution import JobExecution

logger = get_logger(__name__)


class BaseNotifier(ABC):
    """Receives execution and orchestration outcomes."""

    @abstractmethod
    async def send_job_execution_notification(
        self,
        success: bool,
        execution: JobExecution,
        schedule_name: str | None = None,
    ) -> None:
        pass

    @abstractmethod
    async def send_orchestration_summary(self, summary: dict[str, Any]) -> None:
        pass


class NullNotifier(BaseNotifier):
    """Drops every notification (used when no webhook is configured)."""

    async def send_job_execution_notification(
        self,
        success: bool,
        execution: JobExecution,
        schedule_name: str | None = None,
    ) -> None:
        logger.bind(execution_id=execution.id, success=success).debug("notification_skipped")

    async def send_orchestration_summary(self, summary: dict[str, Any]) -> None:
        logger.bind(request_id=summary.get("request_id")).debug("notification_skipped")


class WebhookNotifier(BaseNotifier):
    """Posts JSON notifications to a webhook URL."""

    def __init__(self, webhook_url: str, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.webhook_url = webhook_url
        self._transport = transport

    async def _post(self, payload: dict[str, Any]) -> bool:
        async with httpx.AsyncClient(timeout=10.0, transport=self._transport) as client:
            try:
                resp = await client.post(self.webhook_url, json=payload)
                if not resp.is_success:
                    logger.bind(status=resp.status_code, kind=payload["kind"]).error(
                        "notification_webhook_failed"
                    )
                    return False
                return True
            except httpx.TimeoutException:
                logger.bind(kind=payload["kind"]).error("notification_webhook_timeout")
                return False
            except httpx.HTTPError as e:
                logger.bind(kind=payload["kind"], error=str(e)).error("notification_send_failed")
                return False

    async def send_job_execution_notification(
        self,
        success: bool,
        execution: JobExecution,
        schedule_name: str | None = None,
    ) -> None:
        await self._post(
            {
                "kind": "job_execution",
                "success": success,
                "execution_id": execution.id,
                "schedule_id": execution.schedule_id,
                "schedule_name": schedule_name,
                "status": execution.status.value,
                "start_time": execution.start_time.isoformat(),
                "end_time": execution.end_time.isoformat() if execution.end_time else None,
                "duration_seconds": execution.duration_seconds,
                "retry_count": execution.retry_count,
                "triggered_by": execution.triggered_by,
                "error_message": (execution.error_message or "")[:2000] or None,
            }
        )

    async def send_orchestration_summary(self, summary: dict[str, Any]) -> None:
        await self._post({"kind": "adr_orchestration", **summary})


async def notify_safely(send: Awaitable[None], event: str) -> None:
    """Await a notification, logging instead of raising on failure."""
    try:
        await send
    except Exception as e:
        logger.bind(event=event, error=str(e)).warning("notification_failed")


def get_notifier() -> BaseNotifier:
    """Notifier for the configured webhook, or a no-op one."""
    settings = get_settings()
    if settings.notification_webhook_url:
        return WebhookNotifier(settings.notification_webhook_url)
    return NullNotifier()
