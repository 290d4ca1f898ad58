"""Create dunning tables.

Revision ID: 8b7e4d1c05a2
Revises: 3f1a9c2d7e40
Create Date: 2026-10-19
"""

import sqlalchemy as sa
from alembic import op

revision = "8b7e4d1c05a2"
down_revision = "3f1a9c2d7e40"
branch_labels = None
depends_on = None

OPEN_CASE_PREDICATE = "status NOT IN ('recovered', 'cancelled')"


def upgrade() -> None:
    op.create_table(
        "dunning_configs",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("plan_name", sa.String(length=100), nullable=False),
        sa.Column("grace_period_days", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("max_retry_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("retry_intervals", sa.JSON(), nullable=False),
        sa.Column("suspension_delay_days", sa.Integer(), nullable=False, server_default="7"),
        sa.Column("auto_cancel_days", sa.Integer(), nullable=False, server_default="30"),
        sa.Column(
            "send_email_notifications", sa.Boolean(), nullable=False, server_default="1"
        ),
        sa.Column(
            "send_sms_notifications", sa.Boolean(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dunning_configs_plan_name", "dunning_configs", ["plan_name"], unique=True)

    op.create_table(
        "dunning_cases",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("organization_id", sa.String(length=36), nullable=False),
        sa.Column("subscription_id", sa.String(length=255), nullable=False),
        sa.Column("invoice_id", sa.String(length=255), nullable=False),
        sa.Column("payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("payment_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("current_retry_attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retry_attempts", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("failure_code", sa.String(length=100), nullable=True),
        sa.Column("payment_failed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("grace_period_ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("recovered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("emails_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sms_sent", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("plan_name", sa.String(length=100), nullable=False),
        sa.Column("grace_period_days", sa.Integer(), nullable=False),
        sa.Column("retry_intervals", sa.JSON(), nullable=False),
        sa.Column("suspension_delay_days", sa.Integer(), nullable=False),
        sa.Column("auto_cancel_days", sa.Integer(), nullable=False),
        sa.Column(
            "send_email_notifications", sa.Boolean(), nullable=False, server_default="1"
        ),
        sa.Column(
            "send_sms_notifications", sa.Boolean(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_dunning_cases_organization_id", "dunning_cases", ["organization_id"])
    op.create_index("ix_dunning_cases_subscription_id", "dunning_cases", ["subscription_id"])
    op.create_index("ix_dunning_cases_invoice_id", "dunning_cases", ["invoice_id"])
    op.create_index("ix_dunning_cases_status", "dunning_cases", ["status"])
    op.create_index(
        "ix_dunning_cases_status_next_retry_at", "dunning_cases", ["status", "next_retry_at"]
    )
    op.create_index(
        "uq_dunning_cases_open_invoice",
        "dunning_cases",
        ["subscription_id", "invoice_id"],
        unique=True,
        sqlite_where=sa.text(OPEN_CASE_PREDICATE),
        postgresql_where=sa.text(OPEN_CASE_PREDICATE),
    )

    op.create_table(
        "dunning_retry_attempts",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("dunning_case_id", sa.String(length=36), nullable=False),
        sa.Column("attempt_number", sa.Integer(), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("failure_code", sa.String(length=100), nullable=True),
        sa.Column("payment_intent_id", sa.String(length=255), nullable=True),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ["dunning_case_id"],
            ["dunning_cases.id"],
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "dunning_case_id", "attempt_number", name="uq_retry_attempt_case_number"
        ),
    )
    op.create_index(
        "ix_dunning_retry_attempts_dunning_case_id",
        "dunning_retry_attempts",
        ["dunning_case_id"],
    )
    op.create_index("ix_dunning_retry_attempts_status", "dunning_retry_attempts", ["status"])

    op.create_table(
        "dunning_communications",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("organization_id", sa.String(length=36), nullable=False),
        sa.Column("dunning_case_id", sa.String(length=36), nullable=False),
        sa.Column("communication_type", sa.String(length=50), nullable=False),
        sa.Column("delivery_method", sa.String(length=10), nullable=False),
        sa.Column("recipient_email", sa.String(length=255), nullable=True),
        sa.Column("recipient_phone", sa.String(length=50), nullable=True),
        sa.Column("subject", sa.String(length=255), nullable=True),
        sa.Column("message_body", sa.Text(), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("provider_message_id", sa.String(length=255), nullable=True),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("opened_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("clicked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_retried_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["dunning_case_id"],
            ["dunning_cases.id"],
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_dunning_communications_organization_id",
        "dunning_communications",
        ["organization_id"],
    )
    op.create_index(
        "ix_dunning_communications_dunning_case_id",
        "dunning_communications",
        ["dunning_case_id"],
    )
    op.create_index("ix_dunning_communications_status", "dunning_communications", ["status"])

    op.create_table(
        "account_actions",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("organization_id", sa.String(length=36), nullable=False),
        sa.Column("dunning_case_id", sa.String(length=36), nullable=False),
        sa.Column("action", sa.String(length=20), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("retries", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("last_retried_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.ForeignKeyConstraint(
            ["organization_id"],
            ["organizations.id"],
            ondelete="RESTRICT",
        ),
        sa.ForeignKeyConstraint(
            ["dunning_case_id"],
            ["dunning_cases.id"],
            ondelete="RESTRICT",
        ),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_account_actions_organization_id", "account_actions", ["organization_id"])
    op.create_index("ix_account_actions_dunning_case_id", "account_actions", ["dunning_case_id"])
    op.create_index("ix_account_actions_status", "account_actions", ["status"])

    op.create_table(
        "processed_webhook_events",
        sa.Column("id", sa.String(length=36), nullable=False),
        sa.Column("provider", sa.String(length=50), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("outcome", sa.String(length=50), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "event_id", name="uq_processed_webhook_event"),
    )
    op.create_index(
        "ix_processed_webhook_events_event_id", "processed_webhook_events", ["event_id"]
    )
    op.create_index(
        "ix_processed_webhook_events_created_at", "processed_webhook_events", ["created_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_processed_webhook_events_created_at", table_name="processed_webhook_events")
    op.drop_index("ix_processed_webhook_events_event_id", table_name="processed_webhook_events")
    op.drop_table("processed_webhook_events")
    op.drop_index("ix_account_actions_status", table_name="account_actions")
    op.drop_index("ix_account_actions_dunning_case_id", table_name="account_actions")
    op.drop_index("ix_account_actions_organization_id", table_name="account_actions")
    op.drop_table("account_actions")
    op.drop_index("ix_dunning_communications_status", table_name="dunning_communications")
    op.drop_index(
        "ix_dunning_communications_dunning_case_id", table_name="dunning_communications"
    )
    op.drop_index(
        "ix_dunning_communications_organization_id", table_name="dunning_communications"
    )
    op.drop_table("dunning_communications")
    op.drop_index("ix_dunning_retry_attempts_status", table_name="dunning_retry_attempts")
    op.drop_index(
        "ix_dunning_retry_attempts_dunning_case_id", table_name="dunning_retry_attempts"
    )
    op.drop_table("dunning_retry_attempts")
    op.drop_index("uq_dunning_cases_open_invoice", table_name="dunning_cases")
    op.drop_index("ix_dunning_cases_status_next_retry_at", table_name="dunning_cases")
    op.drop_index("ix_dunning_cases_status", table_name="dunning_cases")
    op.drop_index("ix_dunning_cases_invoice_id", table_name="dunning_cases")
    op.drop_index("ix_dunning_cases_subscription_id", table_name="dunning_cases")
    op.drop_index("ix_dunning_cases_organization_id", table_name="dunning_cases")
    op.drop_table("dunning_cases")
    op.drop_index("ix_dunning_configs_plan_name", table_name="dunning_configs")
    op.drop_table("dunning_configs")
