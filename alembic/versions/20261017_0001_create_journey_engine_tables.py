"""create journey engine tables

Revision ID: 20261017_0001
Revises:
Create Date: 2026-10-17 09:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = "20261017_0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "journeys",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="DRAFT"),
        sa.Column("nodes_json", sa.JSON(), nullable=True),
        sa.Column("edges_json", sa.JSON(), nullable=True),
        sa.Column("settings_json", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_journeys_status", "journeys", ["status"], unique=False)

    op.create_table(
        "journey_enrollments",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("journey_id", sa.String(length=64), nullable=False),
        sa.Column("customer_id", sa.String(length=120), nullable=False),
        sa.Column("customer_email", sa.String(length=255), nullable=True),
        sa.Column("customer_phone", sa.String(length=40), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("current_node_id", sa.String(length=120), nullable=True),
        sa.Column("completed_nodes_json", sa.JSON(), nullable=True),
        sa.Column("entered_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("goal_achieved", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("conversion_value", sa.Float(), nullable=True),
        sa.Column("context_json", sa.JSON(), nullable=True),
        sa.Column("waiting_for_event", sa.String(length=120), nullable=True),
        sa.Column("waiting_for_event_timeout", sa.DateTime(timezone=True), nullable=True),
        sa.Column("waiting_for_goal", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("goal_node_id", sa.String(length=120), nullable=True),
        sa.Column("exit_reason", sa.String(length=40), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(["journey_id"], ["journeys.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_journey_enrollments_journey_id", "journey_enrollments", ["journey_id"], unique=False)
    op.create_index("ix_journey_enrollments_customer_id", "journey_enrollments", ["customer_id"], unique=False)
    op.create_index(
        "ix_journey_enrollments_journey_customer",
        "journey_enrollments",
        ["journey_id", "customer_id"],
        unique=False,
    )
    op.create_index(
        "ix_journey_enrollments_customer_status",
        "journey_enrollments",
        ["customer_id", "status"],
        unique=False,
    )
    op.create_index(
        "ix_journey_enrollments_journey_status",
        "journey_enrollments",
        ["journey_id", "status"],
        unique=False,
    )

    op.create_table(
        "journey_activity_logs",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("enrollment_id", sa.String(length=64), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("event_type", sa.String(length=60), nullable=False),
        sa.Column("data_json", sa.JSON(), nullable=True),
        sa.ForeignKeyConstraint(["enrollment_id"], ["journey_enrollments.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_journey_activity_logs_enrollment_id", "journey_activity_logs", ["enrollment_id"], unique=False)
    op.create_index(
        "ix_journey_activity_logs_enrollment_sequence",
        "journey_activity_logs",
        ["enrollment_id", "sequence"],
        unique=False,
    )
    op.create_index(
        "ix_journey_activity_logs_enrollment_event_type",
        "journey_activity_logs",
        ["enrollment_id", "event_type"],
        unique=False,
    )

    op.create_table(
        "journey_scheduled_executions",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("journey_id", sa.String(length=64), nullable=False),
        sa.Column("enrollment_id", sa.String(length=64), nullable=False),
        sa.Column("node_id", sa.String(length=120), nullable=False),
        sa.Column("resume_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error", sa.String(length=255), nullable=True),
        sa.Column("metadata_json", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_journey_scheduled_executions_journey_id",
        "journey_scheduled_executions",
        ["journey_id"],
        unique=False,
    )
    op.create_index(
        "ix_journey_scheduled_executions_enrollment_id",
        "journey_scheduled_executions",
        ["enrollment_id"],
        unique=False,
    )
    op.create_index(
        "ix_journey_scheduled_executions_status_resume_at",
        "journey_scheduled_executions",
        ["status", "resume_at"],
        unique=False,
    )
    op.create_index(
        "ix_journey_scheduled_executions_enrollment_status",
        "journey_scheduled_executions",
        ["enrollment_id", "status"],
        unique=False,
    )

    op.create_table(
        "journey_campaign_messages",
        sa.Column("id", sa.String(length=64), nullable=False),
        sa.Column("journey_id", sa.String(length=64), nullable=False),
        sa.Column("enrollment_id", sa.String(length=64), nullable=False),
        sa.Column("node_id", sa.String(length=120), nullable=False),
        sa.Column("recipient", sa.String(length=40), nullable=False),
        sa.Column("template_name", sa.String(length=120), nullable=False),
        sa.Column("sent_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("meta_json", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_journey_campaign_messages_journey_id", "journey_campaign_messages", ["journey_id"], unique=False)
    op.create_index(
        "ix_journey_campaign_messages_enrollment_id",
        "journey_campaign_messages",
        ["enrollment_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_journey_campaign_messages_enrollment_id", table_name="journey_campaign_messages")
    op.drop_index("ix_journey_campaign_messages_journey_id", table_name="journey_campaign_messages")
    op.drop_table("journey_campaign_messages")

    op.drop_index("ix_journey_scheduled_executions_enrollment_status", table_name="journey_scheduled_executions")
    op.drop_index("ix_journey_scheduled_executions_status_resume_at", table_name="journey_scheduled_executions")
    op.drop_index("ix_journey_scheduled_executions_enrollment_id", table_name="journey_scheduled_executions")
    op.drop_index("ix_journey_scheduled_executions_journey_id", table_name="journey_scheduled_executions")
    op.drop_table("journey_scheduled_executions")

    op.drop_index("ix_journey_activity_logs_enrollment_event_type", table_name="journey_activity_logs")
    op.drop_index("ix_journey_activity_logs_enrollment_sequence", table_name="journey_activity_logs")
    op.drop_index("ix_journey_activity_logs_enrollment_id", table_name="journey_activity_logs")
    op.drop_table("journey_activity_logs")

    op.drop_index("ix_journey_enrollments_journey_status", table_name="journey_enrollments")
    op.drop_index("ix_journey_enrollments_customer_status", table_name="journey_enrollments")
    op.drop_index("ix_journey_enrollments_journey_customer", table_name="journey_enrollments")
    op.drop_index("ix_journey_enrollments_customer_id", table_name="journey_enrollments")
    op.drop_index("ix_journey_enrollments_journey_id", table_name="journey_enrollments")
    op.drop_table("journey_enrollments")

    op.drop_index("ix_journeys_status", table_name="journeys")
    op.drop_table("journeys")
