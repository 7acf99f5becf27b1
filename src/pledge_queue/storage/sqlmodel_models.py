"""SQLModel ORM tables for the pledge queue."""

from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    text,
)
from sqlmodel import Field, SQLModel


class WorkItem(SQLModel, table=True):
    __tablename__ = "work_items"  # type: ignore[bad-override]
    __table_args__ = (
        UniqueConstraint(
            "workflow_id",
            "transaction_type",
            name="uq_work_items_workflow_transaction",
        ),
        Index("idx_work_items_queue", "status", "enqueued_at", "id"),
    )

    id: int | None = Field(default=None, primary_key=True)
    workflow_id: str = Field(index=True)
    transaction_type: str
    status: str = Field(index=True)
    status_note: str | None = Field(default=None, sa_column=Column(Text))
    enqueued_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    client_machine_name: str | None = None
    client_user: str | None = None
    constituent_id: str | None = None
    amount_cents: int | None = None
    pledge_date: date | None = Field(default=None, sa_column=Column(Date))
    fund_id: str | None = None
    comments: str | None = Field(default=None, sa_column=Column(Text))
    request_json: str = Field(sa_column=Column(Text, nullable=False))
    attempt_count: int = Field(default=0)
    attempt_offset: int = Field(default=0)
    suppressed: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    failure_class: str | None = Field(default=None, index=True)
    started_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_attempt_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    last_error: str | None = Field(default=None, sa_column=Column(Text))
    processed_gift_id: str | None = None
    response_json: str | None = Field(default=None, sa_column=Column(Text))
    worker_id: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class WorkItemEvent(SQLModel, table=True):
    __tablename__ = "work_item_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_work_item_events_item_time", "item_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    item_id: int = Field(
        sa_column=Column(
            ForeignKey("work_items.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = None
    status_to: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AdvisoryLockRow(SQLModel, table=True):
    __tablename__ = "advisory_locks"  # type: ignore[bad-override]

    resource: str = Field(primary_key=True)
    owner: str = Field(index=True)
    acquired_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    expires_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class GiftWorkflow(SQLModel, table=True):
    __tablename__ = "gift_workflows"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_gift_workflows_outbox", "api_succeeded", "api_attempted_at", "created_at"),
    )

    workflow_id: str = Field(primary_key=True)
    status: str = Field(index=True)
    context_json: str = Field(sa_column=Column(Text, nullable=False))
    constituent_id: str | None = None
    amount_cents: int | None = None
    fund_id: str | None = None
    api_attempted_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    api_succeeded: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    api_gift_id: str | None = None
    api_error_message: str | None = Field(default=None, sa_column=Column(Text))
    completed_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    is_deleted: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class MatchChallenge(SQLModel, table=True):
    __tablename__ = "match_challenges"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_match_challenges_active_age", "is_active", "created_at", "id"),)

    id: int | None = Field(default=None, primary_key=True)
    name: str
    budget_cents: int
    is_active: bool = Field(
        default=True,
        sa_column=Column(Boolean, nullable=False, server_default=text("1")),
    )
    created_by: str | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class ChallengeMatch(SQLModel, table=True):
    __tablename__ = "challenge_matches"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_challenge_matches_challenge_ok", "challenge_id", "succeeded"),)

    id: int | None = Field(default=None, primary_key=True)
    source_key: str = Field(index=True)
    source_gift_id: str
    challenge_id: int = Field(
        sa_column=Column(
            ForeignKey("match_challenges.id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    amount_cents: int = Field(default=0)
    matched_constituent_id: str | None = None
    matched_workflow_id: str | None = None
    succeeded: bool = Field(
        default=False,
        sa_column=Column(Boolean, nullable=False, server_default=text("0")),
    )
    error_message: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class AppSetting(SQLModel, table=True):
    __tablename__ = "app_settings"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str | None = Field(default=None, sa_column=Column(Text))
    updated_by: str | None = None
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
