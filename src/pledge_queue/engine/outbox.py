"""Outbox variant: retry state derived from a gift workflow's status trail."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from pledge_queue.engine.models import StatusTrailEntry, TrailEvent
from pledge_queue.storage.alembic_runner import upgrade_head
from pledge_queue.storage.common import (
    build_sqlite_engine,
    from_iso,
    optional_utc_aware,
    to_db_datetime,
    to_utc_aware,
    truncate_note,
    utc_now,
)
from pledge_queue.storage.sqlmodel_models import GiftWorkflow

logger = logging.getLogger(__name__)

_SUPPRESSING_EVENTS = frozenset(
    {TrailEvent.SUPPRESSED.value, TrailEvent.DUPLICATE_DETECTED.value},
)


class WorkflowStatus(str, Enum):
    DRAFT = "draft"
    API_SUCCEEDED = "api_succeeded"
    API_FAILED = "api_failed"
    COMMITTED = "committed"


@dataclass(slots=True)
class ApiResult:
    """Outcome of the latest submission of a workflow."""

    attempted_at: datetime | None = None
    succeeded: bool = False
    gift_id: str | None = None
    error_message: str | None = None
    raw_response_json: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "attempted_at": _iso_or_none(self.attempted_at),
            "succeeded": self.succeeded,
            "gift_id": self.gift_id,
            "error_message": self.error_message,
            "raw_response_json": self.raw_response_json,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ApiResult:
        attempted_at = payload.get("attempted_at")
        return cls(
            attempted_at=from_iso(attempted_at) if attempted_at else None,
            succeeded=bool(payload.get("succeeded", False)),
            gift_id=payload.get("gift_id"),
            error_message=payload.get("error_message"),
            raw_response_json=payload.get("raw_response_json"),
        )


@dataclass(slots=True)
class GiftWorkflowContext:
    """Serialized state of one gift workflow, including its append-only status trail."""

    workflow_id: str
    request_json: str | None = None
    status: WorkflowStatus = WorkflowStatus.DRAFT
    api: ApiResult = field(default_factory=ApiResult)
    status_trail: list[StatusTrailEntry] = field(default_factory=list)
    client_machine_name: str | None = None
    client_user: str | None = None

    def add_trail(
        self,
        event: TrailEvent | str,
        note: str | None = None,
        *,
        at: datetime | None = None,
    ) -> StatusTrailEntry:
        entry = StatusTrailEntry(
            event=event.value if isinstance(event, TrailEvent) else event,
            at=to_utc_aware(at or utc_now()),
            note=truncate_note(note),
        )
        self.status_trail.append(entry)
        return entry

    def to_json(self) -> str:
        payload = {
            "workflow_id": self.workflow_id,
            "request_json": self.request_json,
            "status": self.status.value,
            "api": self.api.to_dict(),
            "status_trail": [
                {"event": entry.event, "at": entry.at.isoformat(), "note": entry.note}
                for entry in self.status_trail
            ],
            "client_machine_name": self.client_machine_name,
            "client_user": self.client_user,
        }
        return json.dumps(payload, ensure_ascii=False, sort_keys=True)

    @classmethod
    def from_json(cls, raw: str) -> GiftWorkflowContext:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("Workflow context must be a JSON object.")
        trail = [
            StatusTrailEntry(
                event=str(item.get("event", "")),
                at=from_iso(item["at"]),
                note=item.get("note"),
            )
            for item in payload.get("status_trail") or []
            if isinstance(item, dict) and item.get("at")
        ]
        api_payload = payload.get("api")
        return cls(
            workflow_id=str(payload["workflow_id"]),
            request_json=payload.get("request_json"),
            status=WorkflowStatus(payload.get("status") or WorkflowStatus.DRAFT.value),
            api=ApiResult.from_dict(api_payload) if isinstance(api_payload, dict) else ApiResult(),
            status_trail=trail,
            client_machine_name=payload.get("client_machine_name"),
            client_user=payload.get("client_user"),
        )


@dataclass(slots=True)
class GiftWorkflowRecord:
    context: GiftWorkflowContext
    is_deleted: bool
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None


def active_trail(trail: list[StatusTrailEntry]) -> list[StatusTrailEntry]:
    """Entries recorded after the latest manual suppression clear."""

    for index in range(len(trail) - 1, -1, -1):
        if trail[index].event == TrailEvent.SUPPRESSION_CLEARED.value:
            return trail[index + 1 :]
    return list(trail)


def count_retry_attempts(trail: list[StatusTrailEntry]) -> int:
    return sum(1 for entry in active_trail(trail) if entry.event == TrailEvent.RETRY_ATTEMPT.value)


def last_retry_attempt_at(trail: list[StatusTrailEntry]) -> datetime | None:
    attempts = [
        entry.at for entry in active_trail(trail) if entry.event == TrailEvent.RETRY_ATTEMPT.value
    ]
    return max(attempts) if attempts else None


def is_suppressed(trail: list[StatusTrailEntry]) -> bool:
    return any(entry.event in _SUPPRESSING_EVENTS for entry in active_trail(trail))


class OutboxRepository:
    """Gift workflow persistence for the status-trail outbox."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def save_workflow(
        self,
        context: GiftWorkflowContext,
        *,
        constituent_id: str | None = None,
        amount_cents: int | None = None,
        fund_id: str | None = None,
    ) -> GiftWorkflowRecord:
        """Insert or overwrite a workflow with its full context."""

        now = utc_now()
        with Session(self.engine) as session:
            row = session.get(GiftWorkflow, context.workflow_id)
            if row is None:
                row = GiftWorkflow(
                    workflow_id=context.workflow_id,
                    status=context.status.value,
                    context_json=context.to_json(),
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
            row.constituent_id = constituent_id or row.constituent_id
            row.amount_cents = amount_cents if amount_cents is not None else row.amount_cents
            row.fund_id = fund_id or row.fund_id
            _apply_context(row, context, now=now)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(row)

    def get_workflow(self, workflow_id: str) -> GiftWorkflowRecord | None:
        with Session(self.engine) as session:
            row = session.get(GiftWorkflow, workflow_id)
            return _to_record(row) if row is not None else None

    def list_candidate_ids(self, *, limit: int) -> list[str]:
        """Workflows attempted at least once and not yet succeeded, oldest attempt first."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(GiftWorkflow.workflow_id)
                .where(
                    col(GiftWorkflow.api_attempted_at).is_not(None),
                    col(GiftWorkflow.api_succeeded).is_(False),
                    col(GiftWorkflow.is_deleted).is_(False),
                )
                .order_by(
                    col(GiftWorkflow.api_attempted_at).asc(),
                    col(GiftWorkflow.created_at).asc(),
                )
                .limit(max(1, limit)),
            ).all()
        return list(rows)

    def append_trail(
        self,
        workflow_id: str,
        entries: list[tuple[TrailEvent | str, str | None]],
    ) -> GiftWorkflowContext:
        """Append trail entries in one transaction and return the updated context."""

        return self._modify(workflow_id, lambda context: _add_entries(context, entries))

    def save_api_result(
        self,
        workflow_id: str,
        *,
        result: ApiResult,
        entries: list[tuple[TrailEvent | str, str | None]],
    ) -> GiftWorkflowContext:
        """Store the submission outcome and its trail entries atomically."""

        def _apply(context: GiftWorkflowContext) -> None:
            context.api = result
            context.status = (
                WorkflowStatus.API_SUCCEEDED if result.succeeded else WorkflowStatus.API_FAILED
            )
            _add_entries(context, entries)

        return self._modify(workflow_id, _apply)

    def clear_suppression(self, workflow_id: str, *, cleared_by: str) -> GiftWorkflowContext:
        """Operator action: make a suppressed workflow eligible again with a fresh budget."""

        record = self.get_workflow(workflow_id)
        if record is None:
            raise RuntimeError(f"Workflow not found: {workflow_id}")
        if record.context.api.succeeded:
            raise RuntimeError(f"Workflow already succeeded: {workflow_id}")
        if not is_suppressed(record.context.status_trail):
            raise RuntimeError(f"Workflow is not suppressed: {workflow_id}")

        return self.append_trail(
            workflow_id,
            [(TrailEvent.SUPPRESSION_CLEARED, f"Suppression cleared by {cleared_by}.")],
        )

    def _modify(
        self,
        workflow_id: str,
        mutate: Callable[[GiftWorkflowContext], None],
    ) -> GiftWorkflowContext:
        while True:
            now = utc_now()
            with Session(self.engine) as session:
                row = session.get(GiftWorkflow, workflow_id)
                if row is None:
                    raise RuntimeError(f"Workflow not found: {workflow_id}")
                previous_updated_at = row.updated_at
                context = GiftWorkflowContext.from_json(row.context_json)
                mutate(context)
                values = _context_values(context, now=now, completed_at=row.completed_at)
                result = session.exec(
                    sa_update(GiftWorkflow)
                    .where(
                        col(GiftWorkflow.workflow_id) == workflow_id,
                        col(GiftWorkflow.updated_at) == previous_updated_at,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.debug("Workflow %s changed concurrently; re-reading", workflow_id)
                    continue
                session.commit()
                return context


def _add_entries(
    context: GiftWorkflowContext,
    entries: list[tuple[TrailEvent | str, str | None]],
) -> None:
    for event, note in entries:
        context.add_trail(event, note)


def _context_values(
    context: GiftWorkflowContext,
    *,
    now: datetime,
    completed_at: datetime | None,
) -> dict[str, object]:
    if context.api.succeeded and completed_at is None:
        completed_at = to_db_datetime(now)
    return {
        "status": context.status.value,
        "context_json": context.to_json(),
        "api_attempted_at": (
            to_db_datetime(context.api.attempted_at)
            if context.api.attempted_at is not None
            else None
        ),
        "api_succeeded": context.api.succeeded,
        "api_gift_id": context.api.gift_id,
        "api_error_message": truncate_note(context.api.error_message),
        "completed_at": completed_at,
        "updated_at": to_db_datetime(now),
    }


def _apply_context(row: GiftWorkflow, context: GiftWorkflowContext, *, now: datetime) -> None:
    for name, value in _context_values(context, now=now, completed_at=row.completed_at).items():
        setattr(row, name, value)


def _to_record(row: GiftWorkflow) -> GiftWorkflowRecord:
    return GiftWorkflowRecord(
        context=GiftWorkflowContext.from_json(row.context_json),
        is_deleted=bool(row.is_deleted),
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
        completed_at=optional_utc_aware(row.completed_at),
    )


def _iso_or_none(value: datetime | None) -> str | None:
    return to_utc_aware(value).isoformat() if value is not None else None
