"""automation engine

Revision ID: 0001_automation_engine
Revises:
Create Date: 2026-10-17 00:00:00
"""
from alembic import op
import sqlalchemy as sa

revision = "0001_automation_engine"
down_revision = None
branch_labels = None
depends_on = None

UUID_TYPE = sa.Uuid(as_uuid=True)


def upgrade() -> None:
    op.create_table(
        "sellers",
        sa.Column("seller_id", sa.String(length=36), primary_key=True),
        sa.Column("company_id", UUID_TYPE, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index("ix_sellers_company_active", "sellers", ["company_id", "is_active"])

    op.create_table(
        "leads",
        sa.Column("lead_id", sa.String(length=36), primary_key=True),
        sa.Column("company_id", UUID_TYPE, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("phone", sa.String(length=64)),
        sa.Column("email", sa.String(length=255)),
        sa.Column("instagram_handle", sa.String(length=64)),
        sa.Column("source", sa.String(length=100)),
        sa.Column("value", sa.Numeric(12, 2)),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("tags", sa.JSON(), nullable=False),
        sa.Column(
            "assigned_seller_id",
            sa.String(length=36),
            sa.ForeignKey("sellers.seller_id", ondelete="SET NULL"),
        ),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("stage_entered_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            # ORM-managed updated_at (no database trigger).
            nullable=False,
        ),
    )
    op.create_index("ix_leads_company_status", "leads", ["company_id", "status"])
    op.create_index("ix_leads_company_seller", "leads", ["company_id", "assigned_seller_id"])
    op.create_index("ix_leads_company_activity", "leads", ["company_id", "last_activity_at"])

    op.create_table(
        "message_templates",
        sa.Column("template_id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("company_id", UUID_TYPE, nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("company_id", "name", name="uq_message_templates_company_name"),
    )
    op.create_index("ix_message_templates_company_id", "message_templates", ["company_id"])

    op.create_table(
        "user_notifications",
        sa.Column("notification_id", sa.String(length=36), primary_key=True),
        sa.Column("company_id", UUID_TYPE, nullable=False),
        sa.Column("user_id", sa.String(length=64), nullable=False),
        sa.Column("title", sa.String(length=255), nullable=False),
        sa.Column("message", sa.String(length=2000), nullable=False),
        sa.Column("lead_id", sa.String(length=36)),
        sa.Column("rule_id", sa.String(length=36)),
        sa.Column("read_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index(
        "ix_user_notifications_company_user",
        "user_notifications",
        ["company_id", "user_id", "created_at"],
    )

    op.create_table(
        "automation_rules",
        sa.Column("rule_id", UUID_TYPE, primary_key=True),
        sa.Column("company_id", UUID_TYPE, nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("trigger_type", sa.String(length=32), nullable=False),
        sa.Column("trigger_config", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("action_type", sa.String(length=32), nullable=False),
        sa.Column("action_config", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("conditions_json", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default="1"),
        sa.Column("deleted_at", sa.DateTime(timezone=True)),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index("ix_automation_rules_company_active", "automation_rules", ["company_id", "is_active"])
    op.create_index("ix_automation_rules_company_created", "automation_rules", ["company_id", "created_at"])

    op.create_table(
        "automation_executions",
        sa.Column("execution_id", UUID_TYPE, primary_key=True),
        sa.Column("company_id", UUID_TYPE, nullable=False),
        sa.Column("rule_id", UUID_TYPE),
        sa.Column("rule_name", sa.String(length=160), nullable=False),
        sa.Column("trigger_type", sa.String(length=32), nullable=False),
        sa.Column("action_type", sa.String(length=32), nullable=False),
        sa.Column("lead_id", sa.String(length=36), nullable=False),
        sa.Column("executed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("error_message", sa.Text()),
        sa.Column("execution_details", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("retry_of", UUID_TYPE),
    )
    op.create_index(
        "ix_automation_executions_company_executed",
        "automation_executions",
        ["company_id", "executed_at"],
    )
    op.create_index("ix_automation_executions_rule", "automation_executions", ["rule_id"])
    op.create_index("ix_automation_executions_lead", "automation_executions", ["lead_id"])

    op.create_table(
        "automation_firings",
        sa.Column("firing_id", UUID_TYPE, primary_key=True),
        sa.Column("company_id", UUID_TYPE, nullable=False),
        sa.Column("rule_id", UUID_TYPE, nullable=False),
        sa.Column("lead_id", sa.String(length=36), nullable=False),
        sa.Column("fire_key", sa.String(length=255), nullable=False),
        sa.Column("fired_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("rule_id", "lead_id", "fire_key", name="uq_automation_firings_rule_lead_key"),
    )

    op.create_table(
        "automation_retries",
        sa.Column("retry_id", UUID_TYPE, primary_key=True),
        sa.Column("company_id", UUID_TYPE, nullable=False),
        sa.Column("rule_id", UUID_TYPE, nullable=False),
        sa.Column("lead_id", sa.String(length=36), nullable=False),
        sa.Column("original_execution_id", UUID_TYPE, nullable=False),
        sa.Column("last_execution_id", UUID_TYPE, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False),
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_error", sa.Text()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("original_execution_id", name="uq_automation_retries_original"),
    )
    op.create_index("ix_automation_retries_status_next", "automation_retries", ["status", "next_attempt_at"])


def downgrade() -> None:
    op.drop_index("ix_automation_retries_status_next", table_name="automation_retries")
    op.drop_table("automation_retries")
    op.drop_table("automation_firings")
    op.drop_index("ix_automation_executions_lead", table_name="automation_executions")
    op.drop_index("ix_automation_executions_rule", table_name="automation_executions")
    op.drop_index("ix_automation_executions_company_executed", table_name="automation_executions")
    op.drop_table("automation_executions")
    op.drop_index("ix_automation_rules_company_created", table_name="automation_rules")
    op.drop_index("ix_automation_rules_company_active", table_name="automation_rules")
    op.drop_table("automation_rules")
    op.drop_index("ix_user_notifications_company_user", table_name="user_notifications")
    op.drop_table("user_notifications")
    op.drop_index("ix_message_templates_company_id", table_name="message_templates")
    op.drop_table("message_templates")
    op.drop_index("ix_leads_company_activity", table_name="leads")
    op.drop_index("ix_leads_company_seller", table_name="leads")
    op.drop_index("ix_leads_company_status", table_name="leads")
    op.drop_table("leads")
    op.drop_index("ix_sellers_company_active", table_name="sellers")
    op.drop_table("sellers")
