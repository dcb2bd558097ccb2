from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

import httpx

from crm_automation.infra.metrics import metrics
from crm_automation.settings import settings
from crm_automation.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError

logger = logging.getLogger(__name__)

CHANNEL_WHATSAPP = "whatsapp"
CHANNEL_INSTAGRAM = "instagram"
CHANNELS = {CHANNEL_WHATSAPP, CHANNEL_INSTAGRAM}


@dataclass(frozen=True)
class MessagingResult:
    status: str
    provider_msg_id: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.status == "sent"


class NoopMessagingAdapter:
    async def send_message(self, *, channel: str, recipient: str, body: str) -> MessagingResult:  # noqa: D401
        del recipient, body
        logger.info("message_send_skipped", extra={"extra": {"mode": "off", "channel": channel}})
        metrics.record_messaging(channel, "skipped")
        return MessagingResult(status="failed", error_code="messaging_disabled")


class HttpMessagingAdapter:
    """Posts outbound WhatsApp/Instagram messages to the messaging gateway.

    The gateway exposes ``POST {base_url}/messages`` and answers with
    ``{"id": ...}``. Every outcome comes back as a :class:`MessagingResult`;
    transport errors, timeouts and an open circuit never raise.
    """

    def __init__(
        self,
        http_client: httpx.AsyncClient | None = None,
        *,
        base_url: str | None = None,
        api_token: str | None = None,
        timeout_seconds: float | None = None,
        breaker: CircuitBreaker | None = None,
    ) -> None:
        self.http_client = http_client
        self.base_url = (base_url or settings.messaging_base_url or "").rstrip("/")
        self.api_token = api_token if api_token is not None else settings.messaging_api_token
        self.timeout_seconds = timeout_seconds or settings.messaging_timeout_seconds
        self._breaker = breaker or CircuitBreaker(
            name="messaging",
            failure_threshold=settings.messaging_circuit_failure_threshold,
            recovery_time=settings.messaging_circuit_recovery_seconds,
            window_seconds=settings.messaging_circuit_window_seconds,
            half_open_max_calls=settings.messaging_circuit_half_open_max_calls,
            timeout_seconds=self.timeout_seconds,
        )

    async def send_message(self, *, channel: str, recipient: str, body: str) -> MessagingResult:
        if not self.base_url:
            logger.warning("message_send_not_configured")
            return MessagingResult(status="failed", error_code="messaging_not_configured")
        if not recipient:
            metrics.record_messaging(channel, "skipped")
            return MessagingResult(status="failed", error_code="missing_recipient")
        try:
            result = await self._breaker.call(
                self._post_message, channel=channel, recipient=recipient, body=body
            )
        except CircuitBreakerOpenError:
            logger.warning("message_circuit_open", extra={"extra": {"channel": channel}})
            metrics.record_messaging(channel, "circuit_open")
            return MessagingResult(status="failed", error_code="circuit_open")
        except asyncio.TimeoutError:
            logger.warning("message_send_timeout", extra={"extra": {"channel": channel}})
            metrics.record_messaging(channel, "timeout")
            return MessagingResult(status="failed", error_code="provider_timeout")
        except httpx.HTTPError as exc:
            logger.warning(
                "message_request_failed",
                extra={"extra": {"channel": channel, "reason": type(exc).__name__}},
            )
            metrics.record_messaging(channel, "error")
            return MessagingResult(status="failed", error_code="provider_request_failed")
        except _ProviderStatusError as exc:
            metrics.record_messaging(channel, "error")
            return MessagingResult(status="failed", error_code=f"provider_status_{exc.status_code}")
        metrics.record_messaging(channel, "sent")
        return result

    async def _post_message(self, *, channel: str, recipient: str, body: str) -> MessagingResult:
        client = self.http_client or httpx.AsyncClient()
        close_client = self.http_client is None
        headers = {"Authorization": f"Bearer {self.api_token}"} if self.api_token else None
        try:
            response = await client.post(
                f"{self.base_url}/messages",
                json={"channel": channel, "to": recipient, "body": body},
                headers=headers,
                timeout=self.timeout_seconds,
            )
        finally:
            if close_client:
                await client.aclose()

        if response.status_code >= 400:
            logger.warning(
                "message_request_error",
                extra={"extra": {"channel": channel, "status_code": response.status_code}},
            )
            # 4xx is the caller's fault and must not trip the breaker
            if response.status_code >= 500:
                raise _ProviderStatusError(response.status_code)
            return MessagingResult(status="failed", error_code=f"provider_status_{response.status_code}")

        provider_msg_id = None
        try:
            provider_msg_id = response.json().get("id")
        except Exception:  # noqa: BLE001
            logger.warning("message_response_parse_failed")
        return MessagingResult(status="sent", provider_msg_id=provider_msg_id)


class _ProviderStatusError(RuntimeError):
    def __init__(self, status_code: int) -> None:
        super().__init__(f"provider_status_{status_code}")
        self.status_code = status_code


MessagingAdapter = HttpMessagingAdapter | NoopMessagingAdapter


def resolve_messaging_adapter(app_settings) -> MessagingAdapter:
    if app_settings.messaging_mode != "http":
        return NoopMessagingAdapter()
    return HttpMessagingAdapter(
        base_url=app_settings.messaging_base_url,
        api_token=app_settings.messaging_api_token,
        timeout_seconds=app_settings.messaging_timeout_seconds,
    )
