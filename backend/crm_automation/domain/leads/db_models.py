from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON

from crm_automation.domain.leads.statuses import default_lead_status
from crm_automation.infra.db import UUID_TYPE
from crm_automation.infra.db import Base
from crm_automation.settings import settings


class Lead(Base):
    __tablename__ = "leads"

    lead_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    company_id: Mapped[uuid.UUID] = mapped_column(
        UUID_TYPE,
        nullable=False,
        default=lambda: settings.default_company_id,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(64))
    email: Mapped[str | None] = mapped_column(String(255))
    instagram_handle: Mapped[str | None] = mapped_column(String(64))
    source: Mapped[str | None] = mapped_column(String(100))
    value: Mapped[float | None] = mapped_column(Numeric(12, 2))
    status: Mapped[str] = mapped_column(String(32), nullable=False, default=default_lead_status)
    tags: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    assigned_seller_id: Mapped[str | None] = mapped_column(
        String(36), ForeignKey("sellers.seller_id", ondelete="SET NULL")
    )
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    stage_entered_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    __table_args__ = (
        Index("ix_leads_company_status", "company_id", "status"),
        Index("ix_leads_company_seller", "company_id", "assigned_seller_id"),
        Index("ix_leads_company_activity", "company_id", "last_activity_at"),
    )
