from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.domain.automations.db_models import AutomationExecution, AutomationRule


@dataclass(frozen=True)
class RuleSnapshot:
    """Rule fields copied onto every log row so the row outlives the rule."""

    rule_id: uuid.UUID
    company_id: uuid.UUID
    name: str
    trigger_type: str
    action_type: str

    @classmethod
    def of(cls, rule: AutomationRule) -> "RuleSnapshot":
        return cls(
            rule_id=rule.rule_id,
            company_id=rule.company_id,
            name=rule.name,
            trigger_type=rule.trigger_type,
            action_type=rule.action_type,
        )


def append_execution(
    session: AsyncSession,
    *,
    rule: AutomationRule | RuleSnapshot,
    lead_id: str,
    success: bool,
    execution_details: dict[str, Any],
    error_message: str | None = None,
    attempt: int = 1,
    retry_of: uuid.UUID | None = None,
    executed_at: datetime | None = None,
) -> AutomationExecution:
    """Stage one log row for an attempted firing.

    ``error_message`` is kept only for failures and is never empty for them.
    The caller owns the flush so the row can share a transaction with the
    lead mutation it describes.
    """
    if success:
        error_message = None
    elif not error_message:
        error_message = "unknown_error"
    entry = AutomationExecution(
        execution_id=uuid.uuid4(),
        company_id=rule.company_id,
        rule_id=rule.rule_id,
        rule_name=rule.name,
        trigger_type=rule.trigger_type,
        action_type=rule.action_type,
        lead_id=lead_id,
        success=success,
        error_message=error_message,
        execution_details=dict(execution_details),
        attempt=attempt,
        retry_of=retry_of,
    )
    if executed_at is not None:
        entry.executed_at = executed_at
    session.add(entry)
    return entry


async def list_executions(
    session: AsyncSession,
    company_id: uuid.UUID,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    rule_id: uuid.UUID | None = None,
    lead_id: str | None = None,
    limit: int | None = None,
    newest_first: bool = False,
) -> list[AutomationExecution]:
    stmt = sa.select(AutomationExecution).where(AutomationExecution.company_id == company_id)
    if start is not None:
        stmt = stmt.where(AutomationExecution.executed_at >= start)
    if end is not None:
        stmt = stmt.where(AutomationExecution.executed_at <= end)
    if rule_id is not None:
        stmt = stmt.where(AutomationExecution.rule_id == rule_id)
    if lead_id is not None:
        stmt = stmt.where(AutomationExecution.lead_id == lead_id)
    order = AutomationExecution.executed_at.desc() if newest_first else AutomationExecution.executed_at.asc()
    stmt = stmt.order_by(order)
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(await session.scalars(stmt))

