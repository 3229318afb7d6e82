"""Add issue_delivery_queue outbox table

Revision ID: 0003_create_issue_delivery_queue
Revises: 0002_create_idempotency_table
Create Date: 2026-10-19

"""

from collections.abc import Sequence

from alembic import op
import sqlalchemy as sa


revision: str = "0003_create_issue_delivery_queue"
down_revision: str | None = "0002_create_idempotency_table"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "issue_delivery_queue",
        sa.Column("newsletter_issue_id", sa.Uuid(), nullable=False),
        sa.Column("subscriber_email", sa.String(length=320), nullable=False),
        sa.Column("status", sa.String(length=32), server_default=sa.text("'pending'"), nullable=False),
        sa.Column("n_attempts", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("execute_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("locked_by", sa.String(length=128), nullable=True),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ["newsletter_issue_id"],
            ["newsletter_issues.newsletter_issue_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("newsletter_issue_id", "subscriber_email"),
    )
    op.create_index(
        "ix_issue_delivery_queue_status_execute_after",
        "issue_delivery_queue",
        ["status", "execute_after"],
    )


def downgrade() -> None:
    op.drop_index("ix_issue_delivery_queue_status_execute_after", table_name="issue_delivery_queue")
    op.drop_table("issue_delivery_queue")
