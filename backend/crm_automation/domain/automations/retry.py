"""Retry scheduler for failed ``send_message`` executions.

A retryable failure gets one queue item. Each due item is re-executed
through the action executor, which appends a new log row with
``attempt`` incremented and ``retry_of`` pointing at the original execution.
Items move pending -> succeeded | dead | cancelled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.domain.automations import actions
from crm_automation.domain.automations import schemas
from crm_automation.domain.automations import service as rules_service
from crm_automation.domain.automations.db_models import AutomationExecution, AutomationRetry
from crm_automation.domain.automations.locks import LeadLockRegistry, lead_locks
from crm_automation.domain.errors import NotFound
from crm_automation.domain.leads import service as leads_service
from crm_automation.infra.logging import clear_log_context, update_log_context
from crm_automation.infra.metrics import metrics
from crm_automation.settings import settings
from crm_automation.shared.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_SUCCEEDED = "succeeded"
STATUS_DEAD = "dead"
STATUS_CANCELLED = "cancelled"


@dataclass
class RetrySummary:
    processed: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    dead: int = 0
    cancelled: int = 0


def _backoff_delay(attempt: int) -> timedelta:
    delay = settings.automation_retry_base_backoff_seconds * max(1, 2 ** max(0, attempt - 1))
    return timedelta(seconds=delay)


def is_retryable(entry: AutomationExecution) -> bool:
    return (
        not entry.success
        and entry.action_type == schemas.ACTION_SEND_MESSAGE
        and bool((entry.execution_details or {}).get("retryable"))
    )


async def schedule_retry(
    session: AsyncSession, entry: AutomationExecution, *, now: datetime | None = None
) -> AutomationRetry | None:
    """Queue a first-attempt failure; later attempts are tracked on the same item."""
    if entry.retry_of is not None or not is_retryable(entry) or entry.rule_id is None:
        return None
    if settings.automation_retry_max_attempts <= 1:
        return None
    current = as_utc(now or utcnow())
    item = AutomationRetry(
        company_id=entry.company_id,
        rule_id=entry.rule_id,
        lead_id=entry.lead_id,
        original_execution_id=entry.execution_id,
        last_execution_id=entry.execution_id,
        attempts=entry.attempt,
        status=STATUS_PENDING,
        next_attempt_at=current + _backoff_delay(entry.attempt),
        last_error=entry.error_message,
    )
    session.add(item)
    await session.flush()
    metrics.record_retry("scheduled")
    logger.info(
        "automation_retry_scheduled",
        extra={
            "extra": {
                "rule_id": str(entry.rule_id),
                "lead_id": entry.lead_id,
                "execution_id": str(entry.execution_id),
            }
        },
    )
    return item


async def _due_items(session: AsyncSession, now: datetime, limit: int) -> list[AutomationRetry]:
    stmt = (
        sa.select(AutomationRetry)
        .where(AutomationRetry.status == STATUS_PENDING, AutomationRetry.next_attempt_at <= now)
        .order_by(AutomationRetry.next_attempt_at.asc())
        .limit(limit)
    )
    return list(await session.scalars(stmt))


async def _retry_one(
    session: AsyncSession,
    item: AutomationRetry,
    *,
    adapters: actions.ActionAdapters,
    now: datetime,
    locks: LeadLockRegistry,
) -> str:
    try:
        rule = await rules_service.get_rule(session, item.company_id, item.rule_id)
        lead = await leads_service.get_lead(session, item.company_id, item.lead_id)
    except NotFound as exc:
        item.status = STATUS_CANCELLED
        item.last_error = exc.detail
        return STATUS_CANCELLED

    async with locks.hold(item.lead_id):
        entry = await actions.execute(
            session,
            rule=rule,
            lead=lead,
            adapters=adapters,
            attempt=item.attempts + 1,
            retry_of=item.original_execution_id,
        )
    item.attempts += 1
    item.last_execution_id = entry.execution_id
    if entry.success:
        item.status = STATUS_SUCCEEDED
        item.last_error = None
        return STATUS_SUCCEEDED
    item.last_error = entry.error_message
    if item.attempts >= settings.automation_retry_max_attempts or not is_retryable(entry):
        item.status = STATUS_DEAD
        return STATUS_DEAD
    item.next_attempt_at = now + _backoff_delay(item.attempts)
    return STATUS_PENDING


async def process_retries(
    session: AsyncSession,
    *,
    adapters: actions.ActionAdapters | None = None,
    now: datetime | None = None,
    batch_size: int | None = None,
    locks: LeadLockRegistry = lead_locks,
) -> RetrySummary:
    current = as_utc(now or utcnow())
    adapters = adapters or actions.ActionAdapters()
    summary = RetrySummary()
    items = await _due_items(session, current, batch_size or settings.automation_retry_batch_size)
    for item in items:
        update_log_context(retry_id=str(item.retry_id), lead_id=item.lead_id)
        try:
            outcome = await _retry_one(session, item, adapters=adapters, now=current, locks=locks)
            await session.commit()
        finally:
            clear_log_context()
        summary.processed += 1
        if outcome == STATUS_SUCCEEDED:
            summary.succeeded += 1
        elif outcome == STATUS_DEAD:
            summary.dead += 1
        elif outcome == STATUS_CANCELLED:
            summary.cancelled += 1
        else:
            summary.rescheduled += 1
        metrics.record_retry(outcome)
    await _record_depth(session)
    if summary.processed:
        logger.info("automation_retries_processed", extra={"extra": summary.__dict__})
    return summary


async def _record_depth(session: AsyncSession) -> None:
    if not metrics.enabled:
        return
    rows = (
        await session.execute(
            sa.select(AutomationRetry.status, sa.func.count())
            .where(AutomationRetry.status.in_([STATUS_PENDING, STATUS_DEAD]))
            .group_by(AutomationRetry.status)
        )
    ).all()
    counts = {status: int(count) for status, count in rows}
    for status in (STATUS_PENDING, STATUS_DEAD):
        metrics.set_retry_depth(status, counts.get(status, 0))
