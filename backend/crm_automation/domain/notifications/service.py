from __future__ import annotations

import uuid

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.domain.notifications.db_models import UserNotification


async def create_notification(
    session: AsyncSession,
    *,
    company_id: uuid.UUID,
    user_id: str,
    title: str,
    message: str,
    lead_id: str | None = None,
    rule_id: str | None = None,
) -> UserNotification:
    notification = UserNotification(
        company_id=company_id,
        user_id=user_id,
        title=title,
        message=message,
        lead_id=lead_id,
        rule_id=rule_id,
    )
    session.add(notification)
    await session.flush()
    return notification


async def list_notifications(
    session: AsyncSession, *, company_id: uuid.UUID, user_id: str, limit: int = 50
) -> list[UserNotification]:
    stmt = (
        sa.select(UserNotification)
        .where(UserNotification.company_id == company_id, UserNotification.user_id == user_id)
        .order_by(UserNotification.created_at.desc())
        .limit(limit)
    )
    return list((await session.execute(stmt)).scalars().all())
