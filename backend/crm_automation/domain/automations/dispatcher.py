from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from crm_automation.domain.automations import actions, retry, triggers
from crm_automation.domain.automations import schemas
from crm_automation.domain.automations import service as rules_service
from crm_automation.domain.automations.db_models import AutomationExecution, AutomationRule
from crm_automation.domain.automations.locks import LeadLockRegistry, lead_locks
from crm_automation.domain.errors import InvalidConfiguration
from crm_automation.domain.leads import service as leads_service
from crm_automation.domain.leads.db_models import Lead
from crm_automation.infra.logging import clear_log_context, update_log_context
from crm_automation.settings import settings
from crm_automation.shared.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


@dataclass
class DispatchResult:
    lead_id: str
    matched_rule_ids: list[uuid.UUID] = field(default_factory=list)
    executions: list[AutomationExecution] = field(default_factory=list)


@dataclass
class TickSummary:
    leads_scanned: int = 0
    executions: int = 0
    failed_leads: int = 0


async def _execute_matches(
    session: AsyncSession,
    lead: Lead,
    matches: list[triggers.RuleMatch],
    *,
    adapters: actions.ActionAdapters,
    now: datetime | None,
) -> list[AutomationExecution]:
    executions: list[AutomationExecution] = []
    for match in matches:
        if match.fire_key is not None:
            claimed = await triggers.claim_firing(
                session, rule=match.rule, lead_id=lead.lead_id, fire_key=match.fire_key
            )
            if not claimed:
                continue
        entry = await actions.execute(session, rule=match.rule, lead=lead, adapters=adapters)
        await retry.schedule_retry(session, entry, now=now)
        # each firing is durable on its own so a later failure cannot undo it
        await session.commit()
        executions.append(entry)
    return executions


async def handle_lead_event(
    session: AsyncSession,
    company_id: uuid.UUID,
    event: triggers.LeadEvent,
    *,
    adapters: actions.ActionAdapters | None = None,
    locks: LeadLockRegistry = lead_locks,
    now: datetime | None = None,
) -> DispatchResult:
    """Evaluate and run every active rule matching ``event`` for one lead.

    The evaluate, execute and log sequence runs under the lead's lock. Raises
    ``NotFound`` when the lead is not visible to ``company_id``.
    """
    adapters = adapters or actions.ActionAdapters()
    update_log_context(company_id=str(company_id), lead_id=event.lead_id)
    try:
        async with locks.hold(event.lead_id):
            lead = await leads_service.get_lead(session, company_id, event.lead_id)
            matches = await triggers.evaluate_event(session, company_id, lead, event)
            executions = await _execute_matches(session, lead, matches, adapters=adapters, now=now)
    finally:
        clear_log_context()
    logger.info(
        "automation_event_handled",
        extra={
            "extra": {
                "lead_id": event.lead_id,
                "kind": event.kind,
                "matched": len(matches),
                "executed": len(executions),
            }
        },
    )
    return DispatchResult(
        lead_id=event.lead_id,
        matched_rule_ids=[match.rule.rule_id for match in matches],
        executions=executions,
    )


async def run_lead_tick(
    session: AsyncSession,
    company_id: uuid.UUID,
    lead_id: str,
    *,
    adapters: actions.ActionAdapters | None = None,
    locks: LeadLockRegistry = lead_locks,
    now: datetime | None = None,
) -> list[AutomationExecution]:
    adapters = adapters or actions.ActionAdapters()
    current = as_utc(now or utcnow())
    async with locks.hold(lead_id):
        lead = await leads_service.get_lead(session, company_id, lead_id)
        matches = await triggers.evaluate_tick(session, company_id, lead, now=current)
        return await _execute_matches(session, lead, matches, adapters=adapters, now=current)


async def run_rule_for_leads(
    session: AsyncSession,
    company_id: uuid.UUID,
    rule_id: uuid.UUID,
    lead_ids: list[str],
    *,
    adapters: actions.ActionAdapters | None = None,
    locks: LeadLockRegistry = lead_locks,
    now: datetime | None = None,
) -> tuple[list[AutomationExecution], list[str]]:
    """Run one active rule against explicit leads, e.g. right after a bulk import.

    Returns the executions and the ids that are not leads of ``company_id``.
    """
    adapters = adapters or actions.ActionAdapters()
    rule = await rules_service.get_rule(session, company_id, rule_id)
    if not rule.is_active:
        raise InvalidConfiguration(detail="Only active automations can be applied to leads")
    known = {lead.lead_id for lead in await leads_service.list_leads(session, company_id, lead_ids=lead_ids)}
    missing = [lead_id for lead_id in lead_ids if lead_id not in known]
    executions: list[AutomationExecution] = []
    for lead_id in dict.fromkeys(lead_ids):
        if lead_id not in known:
            continue
        async with locks.hold(lead_id):
            lead = await leads_service.get_lead(session, company_id, lead_id)
            match = triggers.RuleMatch(rule=rule)
            executions.extend(await _execute_matches(session, lead, [match], adapters=adapters, now=now))
    return executions, missing


async def _companies_with_time_rules(session: AsyncSession) -> list[uuid.UUID]:
    stmt = (
        sa.select(AutomationRule.company_id)
        .where(
            AutomationRule.is_active.is_(True),
            AutomationRule.deleted_at.is_(None),
            AutomationRule.trigger_type.in_(sorted(schemas.TIME_DRIVEN_TRIGGERS)),
        )
        .distinct()
    )
    return list(await session.scalars(stmt))


async def run_time_tick(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    company_id: uuid.UUID | None = None,
    adapters: actions.ActionAdapters | None = None,
    locks: LeadLockRegistry = lead_locks,
    now: datetime | None = None,
    batch_size: int | None = None,
    concurrency: int | None = None,
) -> TickSummary:
    """Sweep leads for due ``time_based`` and ``inactivity`` rules.

    Leads are processed concurrently, each in its own session. A failure on
    one lead is logged and does not stop the sweep.
    """
    adapters = adapters or actions.ActionAdapters()
    current = as_utc(now or utcnow())
    page_size = batch_size or settings.automation_tick_batch_size
    semaphore = asyncio.Semaphore(max(1, concurrency or settings.automation_tick_concurrency))
    summary = TickSummary()

    async with session_factory() as session:
        if company_id is not None:
            active = await rules_service.list_rules(
                session, company_id, active_only=True, trigger_types=schemas.TIME_DRIVEN_TRIGGERS
            )
            companies = [company_id] if active else []
        else:
            companies = await _companies_with_time_rules(session)

    async def _tick(tenant_id: uuid.UUID, lead_id: str) -> int:
        async with semaphore:
            async with session_factory() as lead_session:
                try:
                    executed = await run_lead_tick(
                        lead_session, tenant_id, lead_id, adapters=adapters, locks=locks, now=current
                    )
                except Exception:  # noqa: BLE001
                    await lead_session.rollback()
                    logger.exception(
                        "automation_tick_lead_failed",
                        extra={"extra": {"company_id": str(tenant_id), "lead_id": lead_id}},
                    )
                    summary.failed_leads += 1
                    return 0
        return len(executed)

    for tenant_id in companies:
        after: str | None = None
        while True:
            async with session_factory() as session:
                page = await leads_service.list_leads(session, tenant_id, after_lead_id=after, limit=page_size)
                lead_ids = [lead.lead_id for lead in page]
            if not lead_ids:
                break
            results = await asyncio.gather(*(_tick(tenant_id, lead_id) for lead_id in lead_ids))
            summary.leads_scanned += len(lead_ids)
            summary.executions += sum(results)
            after = lead_ids[-1]

    logger.info("automation_tick_complete", extra={"extra": summary.__dict__})
    return summary
