"""create consent and compliance request tables

Revision ID: 202610180002
Revises: 202610180001
Create Date: 2026-10-18 00:02:00
"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "202610180002"
down_revision: str | None = "202610180001"
branch_labels: Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "consent_record",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("consent_type", sa.String(length=32), nullable=False),
        sa.Column("given", sa.Boolean(), nullable=False),
        sa.Column("method", sa.String(length=32), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("lead_id", sa.Uuid(), nullable=True),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.Text(), nullable=True),
        sa.Column("granted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("withdrawn_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("withdrawal_reason", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["crm_user.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["lead_id"], ["crm_lead.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_consent_record_email_type", "consent_record", ["email", "consent_type"], unique=False)
    op.create_index(
        "uq_consent_record_effective_grant",
        "consent_record",
        ["email", "consent_type"],
        unique=True,
        postgresql_where=sa.text("given AND withdrawn_at IS NULL"),
        sqlite_where=sa.text("given AND withdrawn_at IS NULL"),
    )

    op.create_table(
        "compliance_request",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("subject_email", sa.String(length=255), nullable=False),
        sa.Column("kind", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("strategy", sa.String(length=16), nullable=True),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("requested_by", sa.String(length=255), nullable=False),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("correlation_id", sa.String(length=128), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("artifact_key", sa.String(length=255), nullable=True),
        sa.Column("artifact_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retention_until", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_compliance_request_subject_status",
        "compliance_request",
        ["subject_email", "status"],
        unique=False,
    )
    op.create_index("ix_compliance_request_requested_at", "compliance_request", ["requested_at"], unique=False)
    op.create_index(
        "uq_compliance_request_in_flight",
        "compliance_request",
        ["subject_email", "kind"],
        unique=True,
        postgresql_where=sa.text("status IN ('pending', 'processing')"),
        sqlite_where=sa.text("status IN ('pending', 'processing')"),
    )


def downgrade() -> None:
    op.drop_index("uq_compliance_request_in_flight", table_name="compliance_request")
    op.drop_index("ix_compliance_request_requested_at", table_name="compliance_request")
    op.drop_index("ix_compliance_request_subject_status", table_name="compliance_request")
    op.drop_table("compliance_request")
    op.drop_index("uq_consent_record_effective_grant", table_name="consent_record")
    op.drop_index("ix_consent_record_email_type", table_name="consent_record")
    op.drop_table("consent_record")
