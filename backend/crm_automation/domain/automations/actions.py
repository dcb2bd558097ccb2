from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.domain.automations import schemas
from crm_automation.domain.automations.db_models import AutomationExecution, AutomationRule
from crm_automation.domain.automations.execution_log import RuleSnapshot, append_execution
from crm_automation.domain.errors import DomainError, NoEligibleSeller
from crm_automation.domain.leads import service as leads_service
from crm_automation.domain.leads.db_models import Lead
from crm_automation.domain.leads.statuses import InvalidStatusTransition
from crm_automation.domain.message_templates import service as templates_service
from crm_automation.domain.notifications import service as notifications_service
from crm_automation.domain.sellers import service as sellers_service
from crm_automation.infra.messaging import MessagingAdapter, NoopMessagingAdapter
from crm_automation.infra.metrics import metrics
from crm_automation.infra.notifications import NoopNotificationPusher, NotificationPusher
from crm_automation.settings import settings

logger = logging.getLogger(__name__)

# provider errors worth another attempt; configuration problems are not
NON_RETRYABLE_ERRORS = {
    "messaging_disabled",
    "messaging_not_configured",
    "missing_recipient",
    "template_not_found",
}

# executor deadline trails the messaging adapter's own timeout by this much
PROVIDER_DEADLINE_GRACE_SECONDS = 1.0


@dataclass
class ActionAdapters:
    messaging: MessagingAdapter = field(default_factory=NoopMessagingAdapter)
    notifications: NotificationPusher = field(default_factory=NoopNotificationPusher)
    provider_timeout_seconds: float = field(
        default_factory=lambda: settings.messaging_timeout_seconds + PROVIDER_DEADLINE_GRACE_SECONDS
    )


@dataclass(frozen=True)
class _Outcome:
    success: bool
    error: str | None = None


_Handler = Callable[..., Awaitable[_Outcome]]


def _log_action(action_type: str, status: str, extra: dict[str, Any]) -> None:
    logger.info(
        "automation_action_%s" % status,
        extra={"extra": {"action_type": action_type, **extra}},
    )


def _provider_deadline(adapters: ActionAdapters) -> float:
    deadline = max(0.01, adapters.provider_timeout_seconds)
    adapter_timeout = getattr(adapters.messaging, "timeout_seconds", None)
    if adapter_timeout:
        deadline = max(deadline, adapter_timeout + PROVIDER_DEADLINE_GRACE_SECONDS)
    return deadline


async def _send_message(
    session: AsyncSession,
    *,
    rule: AutomationRule,
    lead: Lead,
    action: schemas.SendMessageAction,
    adapters: ActionAdapters,
    details: dict[str, Any],
) -> _Outcome:
    details["channel"] = action.channel
    variables = templates_service.lead_variables(lead)
    if action.template_id is not None:
        details["templateId"] = action.template_id
        template = await templates_service.get_template(
            session, company_id=rule.company_id, template_id=action.template_id
        )
        if template is None:
            details["retryable"] = False
            return _Outcome(success=False, error="template_not_found")
        body = templates_service.render_template(template.body, variables)
    else:
        body = templates_service.render_template(action.message or "", variables)

    recipient = lead.phone if action.channel == "whatsapp" else lead.instagram_handle
    try:
        result = await asyncio.wait_for(
            adapters.messaging.send_message(channel=action.channel, recipient=recipient or "", body=body),
            timeout=_provider_deadline(adapters),
        )
    except asyncio.TimeoutError:
        details["retryable"] = True
        return _Outcome(success=False, error="provider_timeout")
    except Exception as exc:  # noqa: BLE001
        details["retryable"] = True
        return _Outcome(success=False, error=f"provider_error:{type(exc).__name__}")

    if not result.ok:
        error = result.error_code or "provider_failed"
        details["retryable"] = error not in NON_RETRYABLE_ERRORS
        return _Outcome(success=False, error=error)
    if result.provider_msg_id:
        details["providerMessageId"] = result.provider_msg_id
    return _Outcome(success=True)


async def _change_status(
    session: AsyncSession,
    *,
    rule: AutomationRule,
    lead: Lead,
    action: schemas.ChangeStatusAction,
    adapters: ActionAdapters,
    details: dict[str, Any],
) -> _Outcome:
    del session, rule, adapters
    details["previousStatus"] = lead.status
    details["newStatus"] = action.new_status
    leads_service.set_status(lead, action.new_status)
    return _Outcome(success=True)


async def _assign_seller(
    session: AsyncSession,
    *,
    rule: AutomationRule,
    lead: Lead,
    action: schemas.AssignSellerAction,
    adapters: ActionAdapters,
    details: dict[str, Any],
) -> _Outcome:
    del adapters
    details["policy"] = action.policy
    if action.policy == "fixed":
        seller = await sellers_service.get_active_seller(session, rule.company_id, action.seller_id or "")
        if seller is None:
            raise NoEligibleSeller(detail=f"Seller {action.seller_id} is not an active seller of this company")
        seller_id = seller.seller_id
    else:
        loads = await sellers_service.list_sellers_by_load(session, rule.company_id)
        if not loads:
            raise NoEligibleSeller(detail="No active sellers available")
        seller_id = loads[0].seller_id
        details["sellerLoad"] = loads[0].active_lead_count
    details["previousSellerId"] = leads_service.assign_seller(lead, seller_id)
    details["sellerId"] = seller_id
    return _Outcome(success=True)


async def _add_tag(
    session: AsyncSession,
    *,
    rule: AutomationRule,
    lead: Lead,
    action: schemas.AddTagAction,
    adapters: ActionAdapters,
    details: dict[str, Any],
) -> _Outcome:
    del session, rule, adapters
    added = leads_service.add_tag(lead, action.tag)
    details["tag"] = action.tag
    details["alreadyTagged"] = not added
    return _Outcome(success=True)


async def _notify_user(
    session: AsyncSession,
    *,
    rule: AutomationRule,
    lead: Lead,
    action: schemas.NotifyUserAction,
    adapters: ActionAdapters,
    details: dict[str, Any],
) -> _Outcome:
    title = action.title or rule.name
    message = templates_service.render_template(action.message, templates_service.lead_variables(lead))
    notification = await notifications_service.create_notification(
        session,
        company_id=rule.company_id,
        user_id=action.user_id,
        title=title,
        message=message,
        lead_id=lead.lead_id,
        rule_id=str(rule.rule_id),
    )
    details["userId"] = action.user_id
    details["notificationId"] = notification.notification_id
    try:
        pushed = await asyncio.wait_for(
            adapters.notifications.push(
                company_id=rule.company_id, user_id=action.user_id, title=title, message=message
            ),
            timeout=max(0.01, adapters.provider_timeout_seconds),
        )
    except asyncio.TimeoutError:
        details["pushed"] = False
        return _Outcome(success=False, error="push_timeout")
    except Exception as exc:  # noqa: BLE001
        details["pushed"] = False
        return _Outcome(success=False, error=f"push_error:{type(exc).__name__}")
    details["pushed"] = pushed.status == "sent"
    if not pushed.ok:
        return _Outcome(success=False, error=pushed.error_code or "push_failed")
    return _Outcome(success=True)


_HANDLERS: dict[str, _Handler] = {
    schemas.ACTION_SEND_MESSAGE: _send_message,
    schemas.ACTION_CHANGE_STATUS: _change_status,
    schemas.ACTION_ASSIGN_SELLER: _assign_seller,
    schemas.ACTION_ADD_TAG: _add_tag,
    schemas.ACTION_NOTIFY_USER: _notify_user,
}


def _elapsed_ms(started: float) -> int:
    return int(round((time.perf_counter() - started) * 1000))


async def execute(
    session: AsyncSession,
    *,
    rule: AutomationRule,
    lead: Lead,
    adapters: ActionAdapters | None = None,
    attempt: int = 1,
    retry_of: uuid.UUID | None = None,
) -> AutomationExecution:
    """Run ``rule``'s action against ``lead`` once and log exactly one execution.

    The lead mutation and the log row are written under one savepoint. When
    the handler raises, the savepoint is rolled back so the lead is left as it
    was, and a failed row is logged instead. Nothing raised by a handler or a
    provider escapes this function.
    """
    adapters = adapters or ActionAdapters()
    snapshot = RuleSnapshot.of(rule)
    lead_id = lead.lead_id
    started = time.perf_counter()
    details: dict[str, Any] = {}
    log_fields = {
        "rule_id": str(snapshot.rule_id),
        "lead_id": lead_id,
        "attempt": attempt,
    }

    savepoint = await session.begin_nested()
    try:
        action = schemas.parse_action_config(snapshot.action_type, rule.action_config)
        outcome = await _HANDLERS[snapshot.action_type](
            session, rule=rule, lead=lead, action=action, adapters=adapters, details=details
        )
        details["executionTime"] = _elapsed_ms(started)
        entry = append_execution(
            session,
            rule=snapshot,
            lead_id=lead_id,
            success=outcome.success,
            error_message=outcome.error,
            execution_details=details,
            attempt=attempt,
            retry_of=retry_of,
        )
        await session.flush()
    except Exception as exc:  # noqa: BLE001
        await savepoint.rollback()
        await session.refresh(lead)
        if isinstance(exc, DomainError):
            error = exc.detail
        elif isinstance(exc, InvalidStatusTransition):
            error = str(exc)
        else:
            error = f"{type(exc).__name__}: {exc}"
            logger.exception("automation_action_crashed", extra={"extra": log_fields})
        # keep the status pair for failed status changes
        details = {
            key: value for key, value in details.items() if key in {"previousStatus", "newStatus", "channel"}
        }
        details["executionTime"] = _elapsed_ms(started)
        entry = append_execution(
            session,
            rule=snapshot,
            lead_id=lead_id,
            success=False,
            error_message=error,
            execution_details=details,
            attempt=attempt,
            retry_of=retry_of,
        )
        await session.flush()
    else:
        await savepoint.commit()

    metrics.record_automation_execution(
        snapshot.action_type, entry.success, (entry.execution_details.get("executionTime") or 0) / 1000
    )
    if entry.success:
        _log_action(snapshot.action_type, "succeeded", log_fields)
    else:
        logger.warning(
            "automation_execution_failed",
            extra={"extra": {**log_fields, "action_type": snapshot.action_type, "error": entry.error_message}},
        )
    return entry
