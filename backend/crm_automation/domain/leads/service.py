from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.domain.errors import NotFound
from crm_automation.domain.leads.db_models import Lead
from crm_automation.domain.leads.statuses import assert_valid_transition
from crm_automation.shared.timeutils import as_utc, utcnow

logger = logging.getLogger(__name__)


async def get_lead(session: AsyncSession, company_id: uuid.UUID, lead_id: str) -> Lead:
    lead = await session.scalar(
        select(Lead).where(Lead.company_id == company_id, Lead.lead_id == lead_id)
    )
    if lead is None:
        raise NotFound(detail="Lead not found")
    return lead


async def list_leads(
    session: AsyncSession,
    company_id: uuid.UUID,
    *,
    lead_ids: list[str] | None = None,
    after_lead_id: str | None = None,
    limit: int | None = None,
) -> list[Lead]:
    stmt = select(Lead).where(Lead.company_id == company_id)
    if lead_ids is not None:
        stmt = stmt.where(Lead.lead_id.in_(lead_ids))
    if after_lead_id is not None:
        stmt = stmt.where(Lead.lead_id > after_lead_id)
    stmt = stmt.order_by(Lead.lead_id.asc())
    if limit is not None:
        stmt = stmt.limit(limit)
    return list((await session.execute(stmt)).scalars().all())


async def create_lead(
    session: AsyncSession,
    company_id: uuid.UUID,
    *,
    name: str,
    phone: str | None = None,
    email: str | None = None,
    instagram_handle: str | None = None,
    status: str | None = None,
    tags: list[str] | None = None,
    source: str | None = None,
    created_at: datetime | None = None,
) -> Lead:
    lead = Lead(
        company_id=company_id,
        name=name,
        phone=phone,
        email=email,
        instagram_handle=instagram_handle,
        source=source,
        tags=list(tags or []),
    )
    if status:
        lead.status = status
    # set explicitly so the values are loaded without a refresh
    stamp = as_utc(created_at) if created_at is not None else utcnow()
    lead.created_at = stamp
    lead.stage_entered_at = stamp
    lead.last_activity_at = stamp
    lead.updated_at = stamp
    session.add(lead)
    await session.flush()
    return lead


def set_status(lead: Lead, target: str, *, now: datetime | None = None) -> str:
    """Move ``lead`` to ``target`` and return the previous status.

    Raises ``InvalidStatusTransition`` and leaves the lead untouched when the
    pipeline does not allow the move.
    """
    previous = lead.status
    assert_valid_transition(previous, target)
    if previous != target:
        lead.status = target
        lead.stage_entered_at = now or datetime.now(timezone.utc)
    return previous


def add_tag(lead: Lead, tag: str) -> bool:
    current = list(lead.tags or [])
    if tag in current:
        return False
    # reassign so the JSON column is flagged dirty
    lead.tags = [*current, tag]
    return True


def assign_seller(lead: Lead, seller_id: str) -> str | None:
    previous = lead.assigned_seller_id
    lead.assigned_seller_id = seller_id
    return previous


def record_activity(lead: Lead, *, now: datetime | None = None) -> None:
    lead.last_activity_at = now or datetime.now(timezone.utc)


def lead_snapshot(lead: Lead) -> dict[str, object]:
    return {
        "lead_id": lead.lead_id,
        "name": lead.name,
        "status": lead.status,
        "tags": list(lead.tags or []),
        "assigned_seller_id": lead.assigned_seller_id,
        "source": lead.source,
        "value": float(lead.value) if lead.value is not None else None,
        "has_phone": bool(lead.phone),
        "has_instagram": bool(lead.instagram_handle),
    }
