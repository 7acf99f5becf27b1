"""Domain models for the pledge work queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any


class WorkItemStatus(str, Enum):
    """Durable work item lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    ACCESS_OR_AUTH = "access_or_auth"
    UNEXPECTED = "unexpected"
    VALIDATION = "validation"
    DUPLICATE_SUSPECTED = "duplicate_suspected"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    POSTING_DISABLED = "posting_disabled"


RETRYABLE_FAILURE_CLASSES = frozenset(
    {
        FailureClass.TRANSIENT,
        FailureClass.RATE_LIMITED,
        FailureClass.ACCESS_OR_AUTH,
        FailureClass.UNEXPECTED,
    },
)


class TrailEvent(str, Enum):
    """Sentinel event names written to a gift workflow status trail."""

    RETRY_ATTEMPT = "OutboxRetryAttempt"
    SUPPRESSED = "OutboxSuppressed"
    DUPLICATE_DETECTED = "OutboxDuplicateDetected"
    DUPLICATE_CHECK_UNAVAILABLE = "OutboxDuplicateCheckUnavailable"
    API_SUCCEEDED = "OutboxApiSucceeded"
    API_FAILED = "OutboxApiFailed"
    MATCHES_APPLIED = "OutboxMatchesApplied"
    MATCH_WARNING = "OutboxMatchWarning"
    MATCH_ERROR = "OutboxMatchError"
    SUPPRESSION_CLEARED = "OutboxSuppressionCleared"


@dataclass(slots=True)
class WorkItemCreate:
    """Input payload for enqueuing a submission."""

    workflow_id: str
    transaction_type: str
    request_json: str
    constituent_id: str | None = None
    amount_cents: int | None = None
    pledge_date: date | None = None
    fund_id: str | None = None
    comments: str | None = None
    client_machine_name: str | None = None
    client_user: str | None = None


@dataclass(slots=True)
class WorkItemView:
    """Readable work item view for CLI and processor logic."""

    item_id: int
    workflow_id: str
    transaction_type: str
    status: WorkItemStatus
    status_note: str | None
    enqueued_at: datetime
    request_json: str
    constituent_id: str | None
    amount_cents: int | None
    pledge_date: date | None
    fund_id: str | None
    attempt_count: int
    attempt_offset: int
    suppressed: bool
    failure_class: FailureClass | None
    started_at: datetime | None
    last_attempt_at: datetime | None
    completed_at: datetime | None
    last_error: str | None
    processed_gift_id: str | None
    worker_id: str | None
    client_machine_name: str | None
    client_user: str | None
    created_at: datetime
    updated_at: datetime

    @property
    def budget_attempts(self) -> int:
        """Attempts counted against ``max_attempts`` since the last manual retry."""

        return self.attempt_count - self.attempt_offset


@dataclass(slots=True)
class WorkItemEventView:
    """Work item event entry for audit trail."""

    event_id: int
    item_id: int
    event_type: str
    status_from: WorkItemStatus | None
    status_to: WorkItemStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class WorkItemDetails:
    """Work item with its event stream."""

    item: WorkItemView
    events: list[WorkItemEventView]


@dataclass(slots=True)
class StatusCounts:
    """Queue report; ``exhausted`` separates "nothing to do" from "everything spent"."""

    pending: int = 0
    processing: int = 0
    succeeded: int = 0
    failed: int = 0
    suppressed: int = 0
    exhausted: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.succeeded + self.failed


@dataclass(slots=True)
class StatusTrailEntry:
    """One append-only status trail entry of a gift workflow."""

    event: str
    at: datetime
    note: str | None = None


@dataclass(slots=True)
class ClaimedItem:
    """Store-neutral view of one item handed to the processor."""

    item_key: str
    lock_key: str
    transaction_type: str
    request_json: str | None
    attempt_count: int
    max_attempts: int
    exhausted: bool = False


@dataclass(slots=True)
class ProcessingSummary:
    """Aggregate processor counters for CLI reporting."""

    claimed: int = 0
    succeeded: int = 0
    failed: int = 0
    retry_scheduled: int = 0
    suppressed: int = 0
    skipped: int = 0

    def add(self, other: ProcessingSummary) -> None:
        self.claimed += other.claimed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retry_scheduled += other.retry_scheduled
        self.suppressed += other.suppressed
        self.skipped += other.skipped
