"""Controllers for queue and outbox CLI commands."""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from pledge_queue.config import Settings
from pledge_queue.engine.backoff import RetryPolicy
from pledge_queue.engine.duplicate_check import DuplicateSafetyCheck
from pledge_queue.engine.host import ProcessorHost, default_preflight
from pledge_queue.engine.locks import (
    AdvisoryLock,
    InProcessAdvisoryLock,
    LockRegistry,
    SqlAdvisoryLock,
)
from pledge_queue.engine.models import ProcessingSummary, WorkItemCreate, WorkItemStatus
from pledge_queue.engine.outbox import (
    ApiResult,
    GiftWorkflowContext,
    OutboxRepository,
    WorkflowStatus,
    count_retry_attempts,
    is_suppressed,
)
from pledge_queue.engine.processor import ItemProcessor
from pledge_queue.engine.repository import WorkItemRepository
from pledge_queue.engine.stores import OutboxQueueStore, StructuredQueueStore, WorkItemStore
from pledge_queue.matching.service import GiftMatchService
from pledge_queue.policy import SettingsPolicyProvider
from pledge_queue.sky.auth import StaticCredentialProvider
from pledge_queue.sky.client import SkyGiftClient
from pledge_queue.sky.models import (
    TRANSACTION_TYPE_PLEDGE_CREATE,
    CreatePledgeRequest,
    from_cents,
)
from pledge_queue.storage.common import build_sqlite_engine, utc_now

DEFAULT_OUTBOX_FAILURE_NOTE = "Initial submission failed."


@dataclass(slots=True)
class QueueEnqueueCommand:
    """CLI input for structured queue enqueue."""

    db_path: Path | None
    workflow_id: str
    request_file: Path
    transaction_type: str = TRANSACTION_TYPE_PLEDGE_CREATE


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for queue and outbox workers."""

    db_path: Path | None
    once: bool
    max_cycles: int | None = None


@dataclass(slots=True)
class QueueStatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class QueueItemsCommand:
    """CLI input for item listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class QueueItemCommand:
    """CLI input for inspect/retry of one item."""

    db_path: Path | None
    item_id: int


@dataclass(slots=True)
class OutboxEnqueueCommand:
    """CLI input for handing a failed direct submission to the outbox."""

    db_path: Path | None
    workflow_id: str
    request_file: Path
    error_message: str = DEFAULT_OUTBOX_FAILURE_NOTE


@dataclass(slots=True)
class OutboxWorkflowCommand:
    """CLI input for inspect/clear of one workflow."""

    db_path: Path | None
    workflow_id: str


@dataclass(slots=True)
class _SubmissionRuntime:
    stop_event: threading.Event
    lock: AdvisoryLock
    policy: SettingsPolicyProvider
    credentials: StaticCredentialProvider
    client: SkyGiftClient
    duplicate_check: DuplicateSafetyCheck
    match_service: GiftMatchService


class QueueCliController:
    """Coordinates structured queue enqueue, worker and inspection operations."""

    def enqueue(self, command: QueueEnqueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        raw = command.request_file.read_text("utf-8")
        payload = _work_item_payload(
            settings=settings,
            workflow_id=command.workflow_id,
            transaction_type=command.transaction_type,
            raw=raw,
        )
        with _repository(settings) as repository:
            item = repository.enqueue(payload)

        return [
            "Item enqueued: "
            f"item_id={item.item_id} workflow_id={item.workflow_id} "
            f"type={item.transaction_type} status={item.status.value}",
        ]

    def run_worker(
        self,
        command: WorkerCommand,
        *,
        on_log_line: Callable[[str], None] | None = None,
    ) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        processing = settings.processing
        with _repository(settings) as repository, _submission_runtime(settings) as runtime:
            store = StructuredQueueStore(
                repository,
                max_attempts=processing.max_attempts,
                stale_after=timedelta(minutes=processing.stale_processing_minutes),
                retry_policy=_retry_policy(settings, max_attempts=processing.max_attempts),
            )
            host = _build_host(
                settings=settings,
                runtime=runtime,
                store=store,
                batch_size=processing.batch_size,
                poll_interval_seconds=processing.poll_interval_seconds,
                initial_delay_seconds=0.0,
                on_log_line=on_log_line,
            )
            summary = host.serve(max_cycles=1 if command.once else command.max_cycles)

        return [_summary_line("Queue worker", summary)]

    def status(self, command: QueueStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            counts = repository.status_counts(max_attempts=settings.processing.max_attempts)

        lines = [
            f"Items: {counts.total}",
            f"  pending={counts.pending} processing={counts.processing} "
            f"succeeded={counts.succeeded} failed={counts.failed}",
            f"  suppressed={counts.suppressed} exhausted={counts.exhausted}",
        ]
        if counts.pending == 0 and counts.processing == 0 and counts.exhausted:
            lines.append(
                f"Nothing claimable: {counts.exhausted} item(s) exhausted their "
                f"{settings.processing.max_attempts} attempt(s).",
            )
        return lines

    def list_items(self, command: QueueItemsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            items = repository.list_recent(status=status_filter, limit=command.limit)

        lines = [f"Items: {len(items)}"]
        for item in items:
            amount = "-"
            if item.amount_cents is not None:
                amount = f"{from_cents(item.amount_cents):.2f}"
            lines.append(
                f"  {item.item_id} workflow_id={item.workflow_id} status={item.status.value} "
                f"attempts={item.budget_attempts}/{settings.processing.max_attempts} "
                f"amount={amount} gift_id={item.processed_gift_id or '-'} "
                f"note={item.status_note or '-'}",
            )
        return lines

    def inspect_item(self, command: QueueItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_item_details(command.item_id)
        if details is None:
            return [f"Item not found: {command.item_id}"]

        item = details.item
        lines = [
            f"Item: {item.item_id}",
            f"Workflow: {item.workflow_id}",
            f"Type: {item.transaction_type}",
            f"Status: {item.status.value}{' (suppressed)' if item.suppressed else ''}",
            f"Attempts: {item.budget_attempts}/{settings.processing.max_attempts} "
            f"(total {item.attempt_count})",
            f"Failure class: {item.failure_class.value if item.failure_class else '-'}",
            f"Error: {item.last_error or '-'}",
            f"Note: {item.status_note or '-'}",
            f"Gift id: {item.processed_gift_id or '-'}",
            f"Worker: {item.worker_id or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def retry_item(self, command: QueueItemCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            item = repository.retry_item(command.item_id)
        return [f"Item re-queued: {item.item_id} status={item.status.value}"]


class OutboxCliController:
    """Coordinates status-trail outbox worker and operator actions."""

    def enqueue(self, command: OutboxEnqueueCommand) -> list[str]:
        """Record a workflow whose first direct submission failed."""

        settings = Settings.from_env(db_path=command.db_path)
        request = CreatePledgeRequest.from_json(command.request_file.read_text("utf-8"))
        with _outbox(settings) as repository:
            existing = repository.get_workflow(command.workflow_id)
            if existing is not None and existing.context.api.succeeded:
                raise RuntimeError(f"Workflow already succeeded: {command.workflow_id}")
            context = (
                existing.context
                if existing is not None
                else GiftWorkflowContext(
                    workflow_id=command.workflow_id,
                    client_machine_name=settings.worker.machine_name,
                    client_user=settings.worker.client_user,
                )
            )
            context.request_json = request.to_json()
            context.status = WorkflowStatus.API_FAILED
            context.api = ApiResult(
                attempted_at=utc_now(),
                succeeded=False,
                error_message=command.error_message,
            )
            repository.save_workflow(
                context,
                constituent_id=request.constituent_id,
                amount_cents=request.amount_cents,
                fund_id=request.fund_id,
            )
        return [f"Workflow queued for outbox retry: {command.workflow_id}"]

    def run_worker(
        self,
        command: WorkerCommand,
        *,
        on_log_line: Callable[[str], None] | None = None,
    ) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate_for_worker()
        outbox = settings.outbox
        if not outbox.enabled:
            return ["Outbox retry is disabled (PLEDGE_QUEUE_OUTBOX_ENABLED=false)."]
        with _outbox(settings) as repository, _submission_runtime(settings) as runtime:
            store = OutboxQueueStore(
                repository,
                retry_policy=_retry_policy(settings, max_attempts=outbox.max_attempts),
                candidate_multiplier=outbox.candidate_multiplier,
            )
            host = _build_host(
                settings=settings,
                runtime=runtime,
                store=store,
                batch_size=outbox.batch_size,
                poll_interval_seconds=outbox.poll_interval_seconds,
                initial_delay_seconds=0.0 if command.once else outbox.initial_delay_seconds,
                on_log_line=on_log_line,
            )
            summary = host.serve(max_cycles=1 if command.once else command.max_cycles)

        return [_summary_line("Outbox worker", summary)]

    def inspect(self, command: OutboxWorkflowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _outbox(settings) as repository:
            record = repository.get_workflow(command.workflow_id)
            store = OutboxQueueStore(
                repository,
                retry_policy=_retry_policy(settings, max_attempts=settings.outbox.max_attempts),
            )
        if record is None:
            return [f"Workflow not found: {command.workflow_id}"]

        context = record.context
        decision = store.decide(context) if context.api.attempted_at is not None else None
        attempted = context.api.attempted_at.isoformat() if context.api.attempted_at else "-"
        lines = [
            f"Workflow: {context.workflow_id}",
            f"Status: {context.status.value}",
            f"Deleted: {record.is_deleted}",
            f"API attempted at: {attempted}",
            f"API succeeded: {context.api.succeeded}",
            f"Gift id: {context.api.gift_id or '-'}",
            f"Error: {context.api.error_message or '-'}",
            f"Outbox retries: {count_retry_attempts(context.status_trail)}",
            f"Suppressed: {is_suppressed(context.status_trail)}",
        ]
        if decision is not None and not context.api.succeeded:
            next_at = decision.next_attempt_at.isoformat() if decision.next_attempt_at else "-"
            lines.append(f"Retry verdict: {decision.verdict.value} next_attempt_at={next_at}")
        lines.append(f"Trail: {len(context.status_trail)}")
        for entry in context.status_trail:
            lines.append(f"  {entry.at.isoformat()} {entry.event} {entry.note or ''}".rstrip())
        return lines

    def clear(self, command: OutboxWorkflowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _outbox(settings) as repository:
            repository.clear_suppression(
                command.workflow_id,
                cleared_by=settings.worker.client_user,
            )
        return [f"Suppression cleared: {command.workflow_id}"]


def _work_item_payload(
    *,
    settings: Settings,
    workflow_id: str,
    transaction_type: str,
    raw: str,
) -> WorkItemCreate:
    workflow_id = workflow_id.strip()
    if not workflow_id:
        raise ValueError("Workflow id is required.")
    payload = WorkItemCreate(
        workflow_id=workflow_id,
        transaction_type=transaction_type,
        request_json=raw,
        client_machine_name=settings.worker.machine_name,
        client_user=settings.worker.client_user,
    )
    if transaction_type != TRANSACTION_TYPE_PLEDGE_CREATE:
        # Stored as-is; the processor fails it as unsupported.
        return payload

    request = CreatePledgeRequest.from_json(raw)
    payload.request_json = request.to_json()
    payload.constituent_id = request.constituent_id
    payload.amount_cents = request.amount_cents
    payload.pledge_date = request.pledge_date
    payload.fund_id = request.fund_id
    payload.comments = request.comments
    return payload


def _retry_policy(settings: Settings, *, max_attempts: int) -> RetryPolicy:
    return RetryPolicy.from_seconds(
        base_seconds=settings.backoff.base_seconds,
        max_seconds=settings.backoff.max_seconds,
        max_attempts=max_attempts,
    )


def _build_host(  # noqa: PLR0913
    *,
    settings: Settings,
    runtime: _SubmissionRuntime,
    store: WorkItemStore,
    batch_size: int,
    poll_interval_seconds: float,
    initial_delay_seconds: float,
    on_log_line: Callable[[str], None] | None,
) -> ProcessorHost:
    processor = ItemProcessor(
        store=store,
        submitter=runtime.client,
        policy=runtime.policy,
        lock=runtime.lock,
        worker_id=settings.worker.worker_id,
        batch_size=batch_size,
        duplicate_check=runtime.duplicate_check,
        match_service=runtime.match_service,
        stop_event=runtime.stop_event,
    )
    return ProcessorHost(
        processor=processor,
        poll_interval_seconds=poll_interval_seconds,
        policy=runtime.policy,
        busy_delay_seconds=settings.processing.busy_delay_seconds,
        initial_delay_seconds=initial_delay_seconds,
        preflight=default_preflight(runtime.policy, runtime.credentials),
        on_log_line=on_log_line,
        stop_event=runtime.stop_event,
        thread_name=f"pledge-queue-{store.name}",
    )


def _summary_line(label: str, summary: ProcessingSummary) -> str:
    return (
        f"{label} summary: "
        f"claimed={summary.claimed} succeeded={summary.succeeded} failed={summary.failed} "
        f"retry_scheduled={summary.retry_scheduled} suppressed={summary.suppressed} "
        f"skipped={summary.skipped}"
    )


def _parse_status(value: str | None) -> WorkItemStatus | None:
    if value is None:
        return None
    return WorkItemStatus(value.strip().lower())


def _build_lock(settings: Settings) -> tuple[AdvisoryLock, Callable[[], None]]:
    if settings.locks.backend == "memory":
        lock = InProcessAdvisoryLock(LockRegistry(), owner=settings.worker.worker_id)
        return lock, lock.close

    engine = build_sqlite_engine(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    sql_lock = SqlAdvisoryLock(
        engine,
        owner=settings.worker.worker_id,
        lease_seconds=settings.locks.lease_seconds,
    )

    def _close() -> None:
        sql_lock.close()
        engine.dispose()

    return sql_lock, _close


@contextmanager
def _submission_runtime(settings: Settings) -> Iterator[_SubmissionRuntime]:
    stop_event = threading.Event()
    credentials = StaticCredentialProvider.from_settings(settings.sky)
    policy = SettingsPolicyProvider(settings.posting)
    lock, close_lock = _build_lock(settings)
    client = SkyGiftClient.from_settings(
        settings.sky,
        credentials=credentials,
        stop_event=stop_event,
    )
    match_service = GiftMatchService(
        settings.db_path,
        lock=lock,
        lock_wait_seconds=settings.locks.match_lock_wait_seconds,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
        stop_event=stop_event,
    )
    try:
        yield _SubmissionRuntime(
            stop_event=stop_event,
            lock=lock,
            policy=policy,
            credentials=credentials,
            client=client,
            duplicate_check=DuplicateSafetyCheck(client, settings.duplicate_check),
            match_service=match_service,
        )
    finally:
        match_service.close()
        client.close()
        close_lock()


@contextmanager
def _repository(settings: Settings) -> Iterator[WorkItemRepository]:
    repository = WorkItemRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _outbox(settings: Settings) -> Iterator[OutboxRepository]:
    repository = OutboxRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
