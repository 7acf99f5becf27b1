"""Create work item queue, event log and advisory lock tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "work_items",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("workflow_id", sa.String(), nullable=False),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("status_note", sa.Text(), nullable=True),
        sa.Column("enqueued_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("client_machine_name", sa.String(), nullable=True),
        sa.Column("client_user", sa.String(), nullable=True),
        sa.Column("constituent_id", sa.String(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=True),
        sa.Column("pledge_date", sa.Date(), nullable=True),
        sa.Column("fund_id", sa.String(), nullable=True),
        sa.Column("comments", sa.Text(), nullable=True),
        sa.Column("request_json", sa.Text(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("attempt_offset", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("suppressed", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("processed_gift_id", sa.String(), nullable=True),
        sa.Column("response_json", sa.Text(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "workflow_id",
            "transaction_type",
            name="uq_work_items_workflow_transaction",
        ),
    )
    op.create_index("ix_work_items_workflow_id", "work_items", ["workflow_id"], unique=False)
    op.create_index("ix_work_items_status", "work_items", ["status"], unique=False)
    op.create_index("ix_work_items_failure_class", "work_items", ["failure_class"], unique=False)
    op.create_index(
        "idx_work_items_queue",
        "work_items",
        ["status", "enqueued_at", "id"],
        unique=False,
    )

    op.create_table(
        "work_item_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("item_id", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["item_id"], ["work_items.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_work_item_events_item_id", "work_item_events", ["item_id"], unique=False)
    op.create_index(
        "ix_work_item_events_event_type",
        "work_item_events",
        ["event_type"],
        unique=False,
    )
    op.create_index(
        "idx_work_item_events_item_time",
        "work_item_events",
        ["item_id", "created_at"],
        unique=False,
    )

    op.create_table(
        "advisory_locks",
        sa.Column("resource", sa.String(), nullable=False),
        sa.Column("owner", sa.String(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("resource"),
    )
    op.create_index("ix_advisory_locks_owner", "advisory_locks", ["owner"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_advisory_locks_owner", table_name="advisory_locks")
    op.drop_table("advisory_locks")
    op.drop_index("idx_work_item_events_item_time", table_name="work_item_events")
    op.drop_index("ix_work_item_events_event_type", table_name="work_item_events")
    op.drop_index("ix_work_item_events_item_id", table_name="work_item_events")
    op.drop_table("work_item_events")
    op.drop_index("idx_work_items_queue", table_name="work_items")
    op.drop_index("ix_work_items_failure_class", table_name="work_items")
    op.drop_index("ix_work_items_status", table_name="work_items")
    op.drop_index("ix_work_items_workflow_id", table_name="work_items")
    op.drop_table("work_items")
