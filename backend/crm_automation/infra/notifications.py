from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass

import httpx

from crm_automation.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PushResult:
    status: str
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in {"sent", "skipped"}


class NoopNotificationPusher:
    async def push(self, *, company_id: uuid.UUID, user_id: str, title: str, message: str) -> PushResult:
        del company_id, user_id, title, message
        return PushResult(status="skipped")


class WebhookNotificationPusher:
    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        webhook_url: str | None = None,
        timeout_seconds: float | None = None,
    ) -> None:
        self.http_client = http_client
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.timeout_seconds = timeout_seconds or settings.notification_timeout_seconds

    async def push(self, *, company_id: uuid.UUID, user_id: str, title: str, message: str) -> PushResult:
        if not self.webhook_url:
            return PushResult(status="skipped")
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        payload = {
            "company_id": str(company_id),
            "user_id": user_id,
            "title": title,
            "message": message,
        }
        try:
            response = await client.post(self.webhook_url, json=payload, timeout=self.timeout_seconds)
        except httpx.HTTPError as exc:
            logger.warning("notification_push_failed", extra={"extra": {"reason": type(exc).__name__}})
            return PushResult(status="failed", error_code="push_request_failed")
        finally:
            if close_client:
                await client.aclose()
        if response.status_code >= 400:
            logger.warning(
                "notification_push_error",
                extra={"extra": {"status_code": response.status_code}},
            )
            return PushResult(status="failed", error_code=f"push_status_{response.status_code}")
        return PushResult(status="sent")


NotificationPusher = WebhookNotificationPusher | NoopNotificationPusher


def resolve_notification_pusher(app_settings) -> NotificationPusher:
    if not app_settings.notification_webhook_url:
        return NoopNotificationPusher()
    return WebhookNotificationPusher(
        webhook_url=app_settings.notification_webhook_url,
        timeout_seconds=app_settings.notification_timeout_seconds,
    )
