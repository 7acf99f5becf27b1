"""Persistent work-item store with structured retry columns."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from pledge_queue.config import MAX_BATCH_SIZE
from pledge_queue.engine.backoff import MAX_ATTEMPTS_REASON, RetryPolicy
from pledge_queue.engine.models import (
    FailureClass,
    StatusCounts,
    WorkItemCreate,
    WorkItemDetails,
    WorkItemEventView,
    WorkItemStatus,
    WorkItemView,
)
from pledge_queue.storage.alembic_runner import upgrade_head
from pledge_queue.storage.common import (
    build_sqlite_engine,
    optional_utc_aware,
    to_db_datetime,
    to_iso_z,
    to_utc_aware,
    truncate_note,
    utc_now,
)
from pledge_queue.storage.sqlmodel_models import WorkItem, WorkItemEvent

logger = logging.getLogger(__name__)

MAX_LIST_LIMIT = 1_000
_RETRY_CANDIDATE_FACTOR = 5
_ACTIVE_STATUSES = (WorkItemStatus.PENDING.value, WorkItemStatus.PROCESSING.value)
_STATUS_VALUES = frozenset(status.value for status in WorkItemStatus)


class WorkItemRepository:
    """Queue persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def enqueue(self, payload: WorkItemCreate) -> WorkItemView:
        """Create a Pending item, or refresh the payload of a not-yet-finished one.

        A finished item for the same business key is returned unchanged.
        """

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                existing = session.exec(
                    select(WorkItem).where(
                        WorkItem.workflow_id == payload.workflow_id,
                        WorkItem.transaction_type == payload.transaction_type,
                    ),
                ).one_or_none()

                if existing is None:
                    row = WorkItem(
                        workflow_id=payload.workflow_id,
                        transaction_type=payload.transaction_type,
                        status=WorkItemStatus.PENDING.value,
                        status_note="Queued",
                        enqueued_at=to_db_datetime(now),
                        request_json=payload.request_json,
                        created_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                        **_summary_values(payload),
                    )
                    session.add(row)
                    try:
                        session.flush()
                    except IntegrityError:
                        # Lost an insert race for the same business key; re-read it.
                        session.rollback()
                        continue
                    self._add_event(
                        session=session,
                        item_id=row.id or 0,
                        event_type="enqueued",
                        status_from=None,
                        status_to=WorkItemStatus.PENDING,
                        details={"transaction_type": payload.transaction_type},
                    )
                    session.commit()
                    session.refresh(row)
                    return _to_item_view(row)

                item_id = existing.id or 0
                previous = WorkItemStatus(existing.status)
                if existing.status not in _ACTIVE_STATUSES:
                    self._add_event(
                        session=session,
                        item_id=item_id,
                        event_type="enqueue_ignored",
                        status_from=previous,
                        status_to=previous,
                        details={"reason": f"item already {existing.status}"},
                    )
                    session.commit()
                    session.refresh(existing)
                    return _to_item_view(existing)

                result = session.exec(
                    sa_update(WorkItem)
                    .where(
                        col(WorkItem.id) == item_id,
                        col(WorkItem.status) == previous.value,
                    )
                    .values(
                        request_json=payload.request_json,
                        updated_at=to_db_datetime(now),
                        **_summary_values(payload),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    item_id=item_id,
                    event_type="enqueue_updated",
                    status_from=previous,
                    status_to=previous,
                    details={},
                )
                session.commit()
                session.refresh(existing)
                return _to_item_view(existing)

    def reset_stale_processing(self, *, stale_after: timedelta, worker_id: str) -> int:
        """Return Processing items abandoned for longer than ``stale_after`` to Pending."""

        now = utc_now()
        threshold = to_db_datetime(now - stale_after)
        last_touch = func.coalesce(col(WorkItem.last_attempt_at), col(WorkItem.started_at))
        note = f"Reset from stale Processing by {worker_id} at {to_iso_z(now)}"

        with Session(self.engine) as session:
            stale_ids = session.exec(
                select(WorkItem.id).where(
                    WorkItem.status == WorkItemStatus.PROCESSING.value,
                    col(WorkItem.completed_at).is_(None),
                    last_touch < threshold,
                ),
            ).all()

            reset = 0
            for item_id in stale_ids:
                result = session.exec(
                    sa_update(WorkItem)
                    .where(
                        col(WorkItem.id) == item_id,
                        col(WorkItem.status) == WorkItemStatus.PROCESSING.value,
                        col(WorkItem.completed_at).is_(None),
                        last_touch < threshold,
                    )
                    .values(
                        status=WorkItemStatus.PENDING.value,
                        status_note=note,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                reset += 1
                self._add_event(
                    session=session,
                    item_id=item_id or 0,
                    event_type="stale_reset",
                    status_from=WorkItemStatus.PROCESSING,
                    status_to=WorkItemStatus.PENDING,
                    details={"worker_id": worker_id},
                )
            session.commit()

        if reset:
            logger.warning("Reset %d stale Processing item(s) to Pending", reset)
        return reset

    def fail_exhausted(self, *, max_attempts: int, worker_id: str) -> int:
        """Turn unfinished items with a spent attempt budget into suppressed failures."""

        max_attempts = max(1, max_attempts)
        now = utc_now()
        reason = MAX_ATTEMPTS_REASON.format(max_attempts=max_attempts)
        budget = col(WorkItem.attempt_count) - col(WorkItem.attempt_offset)

        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkItem).where(
                    col(WorkItem.status).in_(
                        [WorkItemStatus.PENDING.value, WorkItemStatus.FAILED.value],
                    ),
                    col(WorkItem.suppressed).is_(False),
                    budget >= max_attempts,
                ),
            ).all()

            failed = 0
            for row in rows:
                previous = WorkItemStatus(row.status)
                result = session.exec(
                    sa_update(WorkItem)
                    .where(
                        col(WorkItem.id) == row.id,
                        col(WorkItem.status) == previous.value,
                        col(WorkItem.attempt_count) == row.attempt_count,
                    )
                    .values(
                        status=WorkItemStatus.FAILED.value,
                        suppressed=True,
                        failure_class=FailureClass.ATTEMPTS_EXHAUSTED.value,
                        status_note=reason,
                        last_error=row.last_error or reason,
                        completed_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                failed += 1
                self._add_event(
                    session=session,
                    item_id=row.id or 0,
                    event_type="attempts_exhausted",
                    status_from=previous,
                    status_to=WorkItemStatus.FAILED,
                    details={"max_attempts": max_attempts, "worker_id": worker_id},
                )
            session.commit()
        return failed

    def claim_batch(  # noqa: PLR0913
        self,
        *,
        max_items: int,
        max_attempts: int,
        stale_after: timedelta,
        worker_id: str,
        retry_policy: RetryPolicy | None = None,
    ) -> list[WorkItemView]:
        """Atomically move up to ``max_items`` eligible items to Processing.

        Stale Processing rows are recovered first. Pending rows with attempts left are taken
        oldest first; when ``retry_policy`` is given, failed rows whose backoff has elapsed
        are merged into the same order. A row changed by a concurrent claimer between the
        read and the conditional update is skipped.
        """

        max_items = min(MAX_BATCH_SIZE, max(1, max_items))
        max_attempts = max(1, max_attempts)
        self.reset_stale_processing(stale_after=stale_after, worker_id=worker_id)
        self.fail_exhausted(max_attempts=max_attempts, worker_id=worker_id)

        now = utc_now()
        budget = col(WorkItem.attempt_count) - col(WorkItem.attempt_offset)
        note = f"Claimed by {worker_id} at {to_iso_z(now)}"

        with Session(self.engine) as session:
            candidates = list(
                session.exec(
                    select(WorkItem)
                    .where(
                        WorkItem.status == WorkItemStatus.PENDING.value,
                        budget < max_attempts,
                    )
                    .order_by(col(WorkItem.enqueued_at).asc(), col(WorkItem.id).asc())
                    .limit(max_items)
                    .with_for_update(skip_locked=True),
                ).all(),
            )
            if retry_policy is not None:
                candidates.extend(
                    self._retry_candidates(
                        session=session,
                        max_items=max_items,
                        max_attempts=max_attempts,
                        retry_policy=retry_policy,
                        now=now,
                    ),
                )
                candidates.sort(key=lambda row: (row.enqueued_at, row.id or 0))
                candidates = candidates[:max_items]

            claimed_ids: list[int] = []
            for row in candidates:
                previous = WorkItemStatus(row.status)
                attempt = row.attempt_count + 1
                result = session.exec(
                    sa_update(WorkItem)
                    .where(
                        col(WorkItem.id) == row.id,
                        col(WorkItem.status) == previous.value,
                        col(WorkItem.attempt_count) == row.attempt_count,
                    )
                    .values(
                        status=WorkItemStatus.PROCESSING.value,
                        attempt_count=attempt,
                        started_at=func.coalesce(
                            col(WorkItem.started_at),
                            to_db_datetime(now),
                        ),
                        last_attempt_at=to_db_datetime(now),
                        completed_at=None,
                        failure_class=None,
                        worker_id=worker_id,
                        status_note=note,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                item_id = row.id or 0
                claimed_ids.append(item_id)
                self._add_event(
                    session=session,
                    item_id=item_id,
                    event_type="claimed",
                    status_from=previous,
                    status_to=WorkItemStatus.PROCESSING,
                    details={"worker_id": worker_id, "attempt": attempt},
                )

            if not claimed_ids:
                session.rollback()
                return []

            claimed_rows = session.exec(
                select(WorkItem)
                .where(col(WorkItem.id).in_(claimed_ids))
                .order_by(col(WorkItem.enqueued_at).asc(), col(WorkItem.id).asc())
                .execution_options(populate_existing=True),
            ).all()
            claimed = [_to_item_view(row) for row in claimed_rows]
            session.commit()

        logger.info("Claimed %d item(s) for %s", len(claimed), worker_id)
        return claimed

    def mark_succeeded(
        self,
        item_id: int,
        *,
        external_id: str,
        note: str,
        response_json: str | None = None,
    ) -> bool:
        """Record a successful submission; repeat calls with the same id are no-ops.

        Returns False only when the item does not exist.
        """

        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = session.get(WorkItem, item_id)
                if row is None:
                    return False
                if (
                    row.status == WorkItemStatus.SUCCEEDED.value
                    and row.processed_gift_id == external_id
                ):
                    return True

                previous = WorkItemStatus(row.status)
                if previous != WorkItemStatus.PROCESSING:
                    logger.warning(
                        "Item %s marked succeeded from status %s",
                        item_id,
                        previous.value,
                    )
                result = session.exec(
                    sa_update(WorkItem)
                    .where(col(WorkItem.id) == item_id, col(WorkItem.status) == previous.value)
                    .values(
                        status=WorkItemStatus.SUCCEEDED.value,
                        status_note=truncate_note(note),
                        processed_gift_id=external_id,
                        response_json=response_json,
                        last_error=None,
                        failure_class=None,
                        completed_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    item_id=item_id,
                    event_type="succeeded",
                    status_from=previous,
                    status_to=WorkItemStatus.SUCCEEDED,
                    details={"external_id": external_id},
                )
                session.commit()
                return True

    def mark_failed(  # noqa: PLR0913
        self,
        item_id: int,
        *,
        error_message: str,
        note: str,
        failure_class: FailureClass | None = None,
        suppressed: bool = False,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Record a failed attempt; ``suppressed`` can be raised here but never lowered.

        Returns False when the item does not exist or has already succeeded.
        ``details`` are merged into the recorded event.
        """

        error_message = truncate_note(error_message) or ""
        note = truncate_note(note) or ""
        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = session.get(WorkItem, item_id)
                if row is None:
                    return False
                if row.status == WorkItemStatus.SUCCEEDED.value:
                    logger.warning("Ignoring failure for already succeeded item %s", item_id)
                    return False

                sticky_suppressed = row.suppressed or suppressed
                class_value = failure_class.value if failure_class is not None else None
                if (
                    row.status == WorkItemStatus.FAILED.value
                    and row.last_error == error_message
                    and row.status_note == note
                    and row.failure_class == class_value
                    and row.suppressed == sticky_suppressed
                ):
                    return True

                previous = WorkItemStatus(row.status)
                result = session.exec(
                    sa_update(WorkItem)
                    .where(col(WorkItem.id) == item_id, col(WorkItem.status) == previous.value)
                    .values(
                        status=WorkItemStatus.FAILED.value,
                        status_note=note,
                        last_error=error_message,
                        failure_class=class_value,
                        suppressed=sticky_suppressed,
                        completed_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                self._add_event(
                    session=session,
                    item_id=item_id,
                    event_type="suppressed" if sticky_suppressed else "failed",
                    status_from=previous,
                    status_to=WorkItemStatus.FAILED,
                    details={
                        **(details or {}),
                        "failure_class": class_value,
                        "error_message": error_message,
                    },
                )
                session.commit()
                return True

    def record_event(self, item_id: int, *, event_type: str, message: str) -> None:
        """Append an audit/warning entry without touching the item state."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                item_id=item_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details={"message": message},
            )
            session.commit()

    def retry_item(self, item_id: int) -> WorkItemView:
        """Manual operator retry for a failed item; grants a fresh attempt budget."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(WorkItem, item_id)
            if row is None:
                raise RuntimeError(f"Work item not found: {item_id}")
            if row.status != WorkItemStatus.FAILED.value:
                raise RuntimeError(
                    f"Only failed items can be retried manually, got {row.status}.",
                )

            result = session.exec(
                sa_update(WorkItem)
                .where(
                    col(WorkItem.id) == item_id,
                    col(WorkItem.status) == WorkItemStatus.FAILED.value,
                    col(WorkItem.attempt_count) == row.attempt_count,
                )
                .values(
                    status=WorkItemStatus.PENDING.value,
                    status_note=f"Manual retry requested at {to_iso_z(now)}",
                    attempt_offset=row.attempt_count,
                    suppressed=False,
                    failure_class=None,
                    last_error=None,
                    completed_at=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Work item state changed concurrently while retrying; "
                    f"please retry command (item_id={item_id}).",
                )
            self._add_event(
                session=session,
                item_id=item_id,
                event_type="manual_retry",
                status_from=WorkItemStatus.FAILED,
                status_to=WorkItemStatus.PENDING,
                details={"attempt_offset": row.attempt_count},
            )
            session.commit()
            session.refresh(row)
            return _to_item_view(row)

    def status_counts(self, *, max_attempts: int) -> StatusCounts:
        """Per-status totals plus suppressed and budget-exhausted counts."""

        budget = col(WorkItem.attempt_count) - col(WorkItem.attempt_offset)
        counts = StatusCounts()
        with Session(self.engine) as session:
            rows = session.exec(
                select(WorkItem.status, func.count()).group_by(col(WorkItem.status)),
            ).all()
            for status, total in rows:
                if status in _STATUS_VALUES:
                    setattr(counts, status, int(total))
            counts.suppressed = int(
                session.exec(
                    select(func.count()).where(
                        WorkItem.status == WorkItemStatus.FAILED.value,
                        col(WorkItem.suppressed).is_(True),
                    ),
                ).one(),
            )
            counts.exhausted = int(
                session.exec(
                    select(func.count()).where(
                        col(WorkItem.status).in_(
                            [WorkItemStatus.PENDING.value, WorkItemStatus.FAILED.value],
                        ),
                        budget >= max(1, max_attempts),
                    ),
                ).one(),
            )
        return counts

    def list_recent(
        self,
        *,
        status: WorkItemStatus | None = None,
        limit: int = 200,
    ) -> list[WorkItemView]:
        """List most recently enqueued items, optionally filtered by status."""

        limit = min(MAX_LIST_LIMIT, max(1, limit))
        with Session(self.engine) as session:
            statement = (
                select(WorkItem)
                .order_by(col(WorkItem.enqueued_at).desc(), col(WorkItem.id).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(WorkItem.status == status.value)
            rows = session.exec(statement).all()
        return [_to_item_view(row) for row in rows]

    def get_item(self, item_id: int) -> WorkItemView | None:
        with Session(self.engine) as session:
            row = session.get(WorkItem, item_id)
            return _to_item_view(row) if row is not None else None

    def get_item_details(self, item_id: int) -> WorkItemDetails | None:
        """Return item with its event stream."""

        with Session(self.engine) as session:
            row = session.get(WorkItem, item_id)
            if row is None:
                return None
            item = _to_item_view(row)
            event_rows = session.exec(
                select(WorkItemEvent)
                .where(WorkItemEvent.item_id == item_id)
                .order_by(col(WorkItemEvent.created_at).asc(), col(WorkItemEvent.id).asc()),
            ).all()

        events: list[WorkItemEventView] = []
        for event_row in event_rows:
            details = {}
            if event_row.details_json:
                parsed = json.loads(event_row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                WorkItemEventView(
                    event_id=event_row.id or 0,
                    item_id=event_row.item_id,
                    event_type=event_row.event_type,
                    status_from=(
                        WorkItemStatus(event_row.status_from)
                        if event_row.status_from is not None
                        else None
                    ),
                    status_to=(
                        WorkItemStatus(event_row.status_to)
                        if event_row.status_to is not None
                        else None
                    ),
                    created_at=to_utc_aware(event_row.created_at),
                    details=details,
                ),
            )
        return WorkItemDetails(item=item, events=events)

    def _retry_candidates(
        self,
        *,
        session: Session,
        max_items: int,
        max_attempts: int,
        retry_policy: RetryPolicy,
        now: datetime,
    ) -> list[WorkItem]:
        """Failed rows whose backoff has elapsed, oldest first.

        Rows still backing off are paged past until ``max_items`` are found or the
        failed set is exhausted.
        """

        budget = col(WorkItem.attempt_count) - col(WorkItem.attempt_offset)
        page_size = max_items * _RETRY_CANDIDATE_FACTOR
        eligible: list[WorkItem] = []
        offset = 0
        while len(eligible) < max_items:
            rows = session.exec(
                select(WorkItem)
                .where(
                    WorkItem.status == WorkItemStatus.FAILED.value,
                    col(WorkItem.suppressed).is_(False),
                    budget < max_attempts,
                )
                .order_by(col(WorkItem.enqueued_at).asc(), col(WorkItem.id).asc())
                .offset(offset)
                .limit(page_size)
                .with_for_update(skip_locked=True),
            ).all()
            for row in rows:
                decision = retry_policy.decide(
                    attempt_count=row.attempt_count - row.attempt_offset,
                    last_attempt_at=row.last_attempt_at,
                    now=now,
                    suppressed=row.suppressed,
                )
                if decision.eligible:
                    eligible.append(row)
            if len(rows) < page_size:
                break
            offset += page_size
        return eligible[:max_items]

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        item_id: int,
        event_type: str,
        status_from: WorkItemStatus | None,
        status_to: WorkItemStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            WorkItemEvent(
                item_id=item_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(utc_now()),
            ),
        )


def _summary_values(payload: WorkItemCreate) -> dict[str, object]:
    return {
        "constituent_id": payload.constituent_id,
        "amount_cents": payload.amount_cents,
        "pledge_date": payload.pledge_date,
        "fund_id": payload.fund_id,
        "comments": payload.comments,
        "client_machine_name": payload.client_machine_name,
        "client_user": payload.client_user,
    }


def _to_item_view(row: WorkItem) -> WorkItemView:
    return WorkItemView(
        item_id=row.id or 0,
        workflow_id=row.workflow_id,
        transaction_type=row.transaction_type,
        status=WorkItemStatus(row.status),
        status_note=row.status_note,
        enqueued_at=to_utc_aware(row.enqueued_at),
        request_json=row.request_json,
        constituent_id=row.constituent_id,
        amount_cents=row.amount_cents,
        pledge_date=row.pledge_date,
        fund_id=row.fund_id,
        attempt_count=row.attempt_count,
        attempt_offset=row.attempt_offset,
        suppressed=bool(row.suppressed),
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        started_at=optional_utc_aware(row.started_at),
        last_attempt_at=optional_utc_aware(row.last_attempt_at),
        completed_at=optional_utc_aware(row.completed_at),
        last_error=row.last_error,
        processed_gift_id=row.processed_gift_id,
        worker_id=row.worker_id,
        client_machine_name=row.client_machine_name,
        client_user=row.client_user,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
