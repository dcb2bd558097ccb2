from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.domain.automations import schemas
from crm_automation.domain.automations import service as rules_service
from crm_automation.domain.automations.conditions import evaluate_conditions
from crm_automation.domain.automations.db_models import AutomationFiring, AutomationRule
from crm_automation.domain.leads.db_models import Lead
from crm_automation.domain.leads.service import lead_snapshot
from crm_automation.infra.metrics import metrics
from crm_automation.shared.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)

EVENT_KINDS = (schemas.TRIGGER_STATUS_CHANGE, schemas.TRIGGER_STAGE_CHANGE, schemas.TRIGGER_TAG_ADDED)


@dataclass(frozen=True)
class LeadEvent:
    kind: str
    lead_id: str
    previous_status: str | None = None
    new_status: str | None = None
    tag: str | None = None


@dataclass(frozen=True)
class RuleMatch:
    rule: AutomationRule
    # set for time-driven rules; the firing must be claimed before the action runs
    fire_key: str | None = None


def _event_matches(trigger, event: LeadEvent) -> bool:  # noqa: ANN001
    if isinstance(trigger, (schemas.StatusChangeTrigger, schemas.StageChangeTrigger)):
        return trigger.matches(event.previous_status, event.new_status)
    if isinstance(trigger, schemas.TagAddedTrigger):
        return event.tag is not None and event.tag.strip() == trigger.tag
    return False


def time_driven_fire_key(trigger, lead: Lead, now: datetime) -> str | None:  # noqa: ANN001
    """Return the idempotency key when the lead is past the rule's threshold.

    The key identifies one threshold crossing: the reference timestamp for
    ``time_based`` rules and the current ``last_activity_at`` for
    ``inactivity`` rules, so new activity re-arms an inactivity rule.
    """
    if isinstance(trigger, schemas.TimeBasedTrigger):
        reference = getattr(lead, trigger.reference)
        if reference is None:
            return None
        reference = as_utc(reference)
        if now - reference < timedelta(hours=trigger.hours):
            return None
        return f"threshold:{trigger.reference}:{reference.isoformat()}"
    if isinstance(trigger, schemas.InactivityTrigger):
        if lead.last_activity_at is None:
            return None
        last_activity = as_utc(lead.last_activity_at)
        if now - last_activity < timedelta(hours=trigger.hours):
            return None
        return f"inactive:{last_activity.isoformat()}"
    return None


def _report_evaluation_error(rule: AutomationRule, lead_id: str, exc: Exception) -> None:
    metrics.record_evaluation_error(rule.trigger_type)
    logger.warning(
        "automation_evaluation_error",
        extra={
            "extra": {
                "rule_id": str(rule.rule_id),
                "lead_id": lead_id,
                "trigger_type": rule.trigger_type,
                "error": f"{type(exc).__name__}: {exc}",
            }
        },
    )


async def evaluate_event(
    session: AsyncSession, company_id: uuid.UUID, lead: Lead, event: LeadEvent
) -> list[RuleMatch]:
    """Active rules of the lead's company whose trigger matches ``event``, in creation order."""
    rules = await rules_service.list_rules(
        session, company_id, active_only=True, trigger_types=(event.kind,)
    )
    snapshot = lead_snapshot(lead)
    matches: list[RuleMatch] = []
    for rule in rules:
        try:
            trigger = schemas.parse_trigger_config(rule.trigger_type, rule.trigger_config)
            fired = _event_matches(trigger, event) and evaluate_conditions(snapshot, rule.conditions_json)
        except Exception as exc:  # noqa: BLE001
            _report_evaluation_error(rule, lead.lead_id, exc)
            continue
        if fired:
            matches.append(RuleMatch(rule=rule))
    return matches


async def evaluate_tick(
    session: AsyncSession,
    company_id: uuid.UUID,
    lead: Lead,
    *,
    now: datetime | None = None,
) -> list[RuleMatch]:
    """Time-driven rules that are due for ``lead`` and have not fired for this crossing."""
    current = as_utc(now or utcnow())
    rules = await rules_service.list_rules(
        session, company_id, active_only=True, trigger_types=schemas.TIME_DRIVEN_TRIGGERS
    )
    snapshot = lead_snapshot(lead)
    matches: list[RuleMatch] = []
    for rule in rules:
        try:
            trigger = schemas.parse_trigger_config(rule.trigger_type, rule.trigger_config)
            fire_key = time_driven_fire_key(trigger, lead, current)
            if fire_key is None or not evaluate_conditions(snapshot, rule.conditions_json):
                continue
            if await has_fired(session, rule_id=rule.rule_id, lead_id=lead.lead_id, fire_key=fire_key):
                continue
        except Exception as exc:  # noqa: BLE001
            _report_evaluation_error(rule, lead.lead_id, exc)
            continue
        matches.append(RuleMatch(rule=rule, fire_key=fire_key))
    return matches


async def has_fired(session: AsyncSession, *, rule_id: uuid.UUID, lead_id: str, fire_key: str) -> bool:
    existing = await session.scalar(
        sa.select(AutomationFiring.firing_id).where(
            AutomationFiring.rule_id == rule_id,
            AutomationFiring.lead_id == lead_id,
            AutomationFiring.fire_key == fire_key,
        )
    )
    return existing is not None


async def claim_firing(
    session: AsyncSession, *, rule: AutomationRule, lead_id: str, fire_key: str
) -> bool:
    """Record the firing; ``False`` when another worker already claimed it."""
    savepoint = await session.begin_nested()
    try:
        session.add(
            AutomationFiring(
                company_id=rule.company_id,
                rule_id=rule.rule_id,
                lead_id=lead_id,
                fire_key=fire_key,
            )
        )
        await session.flush()
    except IntegrityError:
        await savepoint.rollback()
        logger.info(
            "automation_firing_already_claimed",
            extra={"extra": {"rule_id": str(rule.rule_id), "lead_id": lead_id}},
        )
        return False
    await savepoint.commit()
    return True
