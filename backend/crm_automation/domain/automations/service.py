from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.domain.automations import schemas
from crm_automation.domain.automations.conditions import validate_conditions
from crm_automation.domain.automations.db_models import AutomationExecution, AutomationRule
from crm_automation.domain.errors import NotFound

logger = logging.getLogger(__name__)


def _validated_configs(
    trigger_type: str,
    trigger_config: dict[str, Any] | None,
    action_type: str,
    action_config: dict[str, Any] | None,
) -> tuple[dict[str, Any], dict[str, Any]]:
    trigger = schemas.parse_trigger_config(trigger_type, trigger_config)
    action = schemas.parse_action_config(action_type, action_config)
    return schemas.dump_config(trigger), schemas.dump_config(action)


def _visible(company_id: uuid.UUID):  # noqa: ANN202
    return sa.and_(AutomationRule.company_id == company_id, AutomationRule.deleted_at.is_(None))


async def list_rules(
    session: AsyncSession,
    company_id: uuid.UUID,
    *,
    active_only: bool = False,
    trigger_types: tuple[str, ...] | frozenset[str] | None = None,
) -> list[AutomationRule]:
    stmt = sa.select(AutomationRule).where(_visible(company_id))
    if active_only:
        stmt = stmt.where(AutomationRule.is_active.is_(True))
    if trigger_types is not None:
        stmt = stmt.where(AutomationRule.trigger_type.in_(sorted(trigger_types)))
    stmt = stmt.order_by(AutomationRule.created_at.asc(), AutomationRule.rule_id.asc())
    return list(await session.scalars(stmt))


async def get_rule(session: AsyncSession, company_id: uuid.UUID, rule_id: uuid.UUID) -> AutomationRule:
    rule = await session.scalar(
        sa.select(AutomationRule).where(_visible(company_id), AutomationRule.rule_id == rule_id)
    )
    if rule is None:
        raise NotFound(detail="Automation rule not found")
    return rule


async def create_rule(
    session: AsyncSession, company_id: uuid.UUID, payload: schemas.RuleCreate
) -> AutomationRule:
    trigger_config, action_config = _validated_configs(
        payload.trigger_type, payload.trigger_config, payload.action_type, payload.action_config
    )
    validate_conditions(payload.conditions)
    rule = AutomationRule(
        rule_id=uuid.uuid4(),
        company_id=company_id,
        name=payload.name,
        description=payload.description,
        trigger_type=payload.trigger_type,
        trigger_config=trigger_config,
        action_type=payload.action_type,
        action_config=action_config,
        conditions_json=dict(payload.conditions),
        is_active=payload.is_active,
    )
    session.add(rule)
    await session.flush()
    logger.info(
        "automation_rule_created",
        extra={
            "extra": {
                "company_id": str(company_id),
                "rule_id": str(rule.rule_id),
                "trigger_type": rule.trigger_type,
                "action_type": rule.action_type,
            }
        },
    )
    return rule


async def update_rule(
    session: AsyncSession,
    company_id: uuid.UUID,
    rule_id: uuid.UUID,
    patch: schemas.RuleUpdate,
) -> AutomationRule:
    rule = await get_rule(session, company_id, rule_id)
    data = patch.model_dump(exclude_unset=True)

    # a kind change without a new config re-validates the old config against the new kind
    trigger_type = data.get("trigger_type") or rule.trigger_type
    action_type = data.get("action_type") or rule.action_type
    trigger_raw = data["trigger_config"] if data.get("trigger_config") is not None else rule.trigger_config
    action_raw = data["action_config"] if data.get("action_config") is not None else rule.action_config
    trigger_config, action_config = _validated_configs(trigger_type, trigger_raw, action_type, action_raw)
    if data.get("conditions") is not None:
        validate_conditions(data["conditions"])
        rule.conditions_json = dict(data["conditions"])

    rule.trigger_type = trigger_type
    rule.trigger_config = trigger_config
    rule.action_type = action_type
    rule.action_config = action_config
    if data.get("name") is not None:
        rule.name = data["name"]
    if "description" in data:
        rule.description = data["description"]
    if data.get("is_active") is not None:
        rule.is_active = bool(data["is_active"])
    await session.flush()
    return rule


async def set_active(
    session: AsyncSession, company_id: uuid.UUID, rule_id: uuid.UUID, is_active: bool
) -> AutomationRule:
    rule = await get_rule(session, company_id, rule_id)
    rule.is_active = is_active
    await session.flush()
    logger.info(
        "automation_rule_toggled",
        extra={"extra": {"rule_id": str(rule_id), "is_active": is_active}},
    )
    return rule


async def delete_rule(
    session: AsyncSession, company_id: uuid.UUID, rule_id: uuid.UUID, *, hard: bool = False
) -> None:
    """Soft-delete by default; ``hard`` removes the row.

    Execution log rows keep their ``rule_name`` snapshot either way.
    """
    rule = await get_rule(session, company_id, rule_id)
    if hard:
        await session.delete(rule)
    else:
        rule.deleted_at = datetime.now(timezone.utc)
        rule.is_active = False
    await session.flush()
    logger.info(
        "automation_rule_deleted",
        extra={"extra": {"rule_id": str(rule_id), "hard": hard}},
    )


async def list_rule_executions(
    session: AsyncSession,
    company_id: uuid.UUID,
    rule_id: uuid.UUID,
    *,
    limit: int = 50,
) -> list[AutomationExecution]:
    await get_rule(session, company_id, rule_id)
    stmt = (
        sa.select(AutomationExecution)
        .where(AutomationExecution.company_id == company_id, AutomationExecution.rule_id == rule_id)
        .order_by(AutomationExecution.executed_at.desc())
        .limit(limit)
    )
    return list(await session.scalars(stmt))
