"""Add gift match challenge ledger and app settings tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0003"
down_revision = "20261019_0002"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "match_challenges",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("budget_cents", sa.Integer(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_match_challenges_active_age",
        "match_challenges",
        ["is_active", "created_at", "id"],
        unique=False,
    )

    op.create_table(
        "challenge_matches",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("source_key", sa.String(), nullable=False),
        sa.Column("source_gift_id", sa.String(), nullable=False),
        sa.Column("challenge_id", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("matched_constituent_id", sa.String(), nullable=True),
        sa.Column("matched_workflow_id", sa.String(), nullable=True),
        sa.Column("succeeded", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["challenge_id"], ["match_challenges.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_challenge_matches_source_key",
        "challenge_matches",
        ["source_key"],
        unique=False,
    )
    op.create_index(
        "ix_challenge_matches_challenge_id",
        "challenge_matches",
        ["challenge_id"],
        unique=False,
    )
    op.create_index(
        "idx_challenge_matches_challenge_ok",
        "challenge_matches",
        ["challenge_id", "succeeded"],
        unique=False,
    )

    op.create_table(
        "app_settings",
        sa.Column("key", sa.String(), nullable=False),
        sa.Column("value", sa.Text(), nullable=True),
        sa.Column("updated_by", sa.String(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("key"),
    )


def downgrade() -> None:
    op.drop_table("app_settings")
    op.drop_index("idx_challenge_matches_challenge_ok", table_name="challenge_matches")
    op.drop_index("ix_challenge_matches_challenge_id", table_name="challenge_matches")
    op.drop_index("ix_challenge_matches_source_key", table_name="challenge_matches")
    op.drop_table("challenge_matches")
    op.drop_index("idx_match_challenges_active_age", table_name="match_challenges")
    op.drop_table("match_challenges")
