from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from crm_automation.domain.automations.actions import PROVIDER_DEADLINE_GRACE_SECONDS, ActionAdapters
from crm_automation.domain.automations.locks import LeadLockRegistry, lead_locks
from crm_automation.infra.messaging import MessagingAdapter, resolve_messaging_adapter
from crm_automation.infra.metrics import Metrics, configure_metrics
from crm_automation.infra.notifications import NotificationPusher, resolve_notification_pusher


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    messaging: MessagingAdapter
    notifications: NotificationPusher
    metrics: Metrics
    locks: LeadLockRegistry
    provider_timeout_seconds: float

    @property
    def action_adapters(self) -> ActionAdapters:
        return ActionAdapters(
            messaging=self.messaging,
            notifications=self.notifications,
            provider_timeout_seconds=self.provider_timeout_seconds,
        )


def build_app_services(app_settings, *, metrics: Metrics | None = None) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    return AppServices(
        messaging=resolve_messaging_adapter(app_settings),
        notifications=resolve_notification_pusher(app_settings),
        metrics=metrics_client,
        locks=lead_locks,
        provider_timeout_seconds=app_settings.messaging_timeout_seconds + PROVIDER_DEADLINE_GRACE_SECONDS,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
