"""Add gift workflow table backing the status-trail outbox."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0002"
down_revision = "20261019_0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "gift_workflows",
        sa.Column("workflow_id", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("context_json", sa.Text(), nullable=False),
        sa.Column("constituent_id", sa.String(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("fund_id", sa.String(), nullable=True),
        sa.Column("api_attempted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("api_succeeded", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("api_gift_id", sa.String(), nullable=True),
        sa.Column("api_error_message", sa.Text(), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("workflow_id"),
    )
    op.create_index("ix_gift_workflows_status", "gift_workflows", ["status"], unique=False)
    op.create_index(
        "idx_gift_workflows_outbox",
        "gift_workflows",
        ["api_succeeded", "api_attempted_at", "created_at"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("idx_gift_workflows_outbox", table_name="gift_workflows")
    op.drop_index("ix_gift_workflows_status", table_name="gift_workflows")
    op.drop_table("gift_workflows")
