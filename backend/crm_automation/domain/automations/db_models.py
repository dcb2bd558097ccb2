from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from crm_automation.infra.db import UUID_TYPE, Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutomationRule(Base):
    __tablename__ = "automation_rules"

    rule_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    trigger_type: Mapped[str] = mapped_column(String(32), nullable=False)
    trigger_config: Mapped[dict[str, Any]] = mapped_column(
        sa.JSON(), nullable=False, default=dict, server_default=sa.text("'{}'")
    )
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action_config: Mapped[dict[str, Any]] = mapped_column(
        sa.JSON(), nullable=False, default=dict, server_default=sa.text("'{}'")
    )
    conditions_json: Mapped[dict[str, Any]] = mapped_column(
        sa.JSON(), nullable=False, default=dict, server_default=sa.text("'{}'")
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # python-side default keeps sub-second precision; creation order is the firing order
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow
    )

    __table_args__ = (
        Index("ix_automation_rules_company_active", "company_id", "is_active"),
        Index("ix_automation_rules_company_created", "company_id", "created_at"),
    )


class AutomationExecution(Base):
    """One attempted rule firing. Rows are never updated after insert."""

    __tablename__ = "automation_executions"

    execution_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    # weak reference: the rule may since have been hard-deleted
    rule_id: Mapped[uuid.UUID | None] = mapped_column(UUID_TYPE)
    rule_name: Mapped[str] = mapped_column(String(160), nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(32), nullable=False)
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    lead_id: Mapped[str] = mapped_column(String(36), nullable=False)
    executed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text)
    execution_details: Mapped[dict[str, Any]] = mapped_column(
        sa.JSON(), nullable=False, default=dict, server_default=sa.text("'{}'")
    )
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default="1")
    retry_of: Mapped[uuid.UUID | None] = mapped_column(UUID_TYPE)

    __table_args__ = (
        Index("ix_automation_executions_company_executed", "company_id", "executed_at"),
        Index("ix_automation_executions_rule", "rule_id"),
        Index("ix_automation_executions_lead", "lead_id"),
    )


class AutomationFiring(Base):
    """Marks that a time-driven rule already fired for a lead at a given threshold crossing."""

    __tablename__ = "automation_firings"

    firing_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    rule_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    lead_id: Mapped[str] = mapped_column(String(36), nullable=False)
    fire_key: Mapped[str] = mapped_column(String(255), nullable=False)
    fired_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("rule_id", "lead_id", "fire_key", name="uq_automation_firings_rule_lead_key"),
    )


class AutomationRetry(Base):
    __tablename__ = "automation_retries"

    retry_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, primary_key=True, default=uuid.uuid4)
    company_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    rule_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    lead_id: Mapped[str] = mapped_column(String(36), nullable=False)
    original_execution_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    last_execution_id: Mapped[uuid.UUID] = mapped_column(UUID_TYPE, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("original_execution_id", name="uq_automation_retries_original"),
        Index("ix_automation_retries_status_next", "status", "next_attempt_at"),
    )
