from __future__ import annotations

import uuid
from dataclasses import dataclass

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from crm_automation.domain.leads.db_models import Lead
from crm_automation.domain.leads.statuses import TERMINAL_STATUSES
from crm_automation.domain.sellers.db_models import Seller


@dataclass(frozen=True)
class SellerLoad:
    seller_id: str
    active_lead_count: int


async def get_active_seller(
    session: AsyncSession, company_id: uuid.UUID, seller_id: str
) -> Seller | None:
    return await session.scalar(
        sa.select(Seller).where(
            Seller.company_id == company_id,
            Seller.seller_id == seller_id,
            Seller.is_active.is_(True),
        )
    )


async def create_seller(
    session: AsyncSession, company_id: uuid.UUID, *, name: str, is_active: bool = True
) -> Seller:
    seller = Seller(company_id=company_id, name=name, is_active=is_active)
    session.add(seller)
    await session.flush()
    return seller


async def list_sellers_by_load(session: AsyncSession, company_id: uuid.UUID) -> list[SellerLoad]:
    """Active sellers ordered by open-lead count, then seller id.

    Leads in a terminal status (won/lost) do not count toward a seller's load.
    """
    load = sa.func.count(Lead.lead_id)
    stmt = (
        sa.select(Seller.seller_id, load)
        .outerjoin(
            Lead,
            sa.and_(
                Lead.assigned_seller_id == Seller.seller_id,
                Lead.company_id == company_id,
                Lead.status.notin_(sorted(TERMINAL_STATUSES)),
            ),
        )
        .where(Seller.company_id == company_id, Seller.is_active.is_(True))
        .group_by(Seller.seller_id)
        .order_by(load.asc(), Seller.seller_id.asc())
    )
    rows = (await session.execute(stmt)).all()
    return [SellerLoad(seller_id=row[0], active_lead_count=int(row[1] or 0)) for row in rows]
