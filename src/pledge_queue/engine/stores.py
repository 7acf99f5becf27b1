"""State-storage strategies driven by ``ItemProcessor``."""

from __future__ import annotations

from dataclasses import replace
from datetime import timedelta
from typing import Protocol

from pledge_queue.engine.backoff import RetryDecision, RetryPolicy, RetryVerdict
from pledge_queue.engine.models import ClaimedItem, FailureClass, TrailEvent, WorkItemStatus
from pledge_queue.engine.outbox import (
    ApiResult,
    GiftWorkflowContext,
    OutboxRepository,
    count_retry_attempts,
    is_suppressed,
    last_retry_attempt_at,
)
from pledge_queue.engine.repository import WorkItemRepository
from pledge_queue.sky.models import TRANSACTION_TYPE_PLEDGE_CREATE, CreatePledgeResult
from pledge_queue.storage.common import utc_now

_QUEUE_EVENT_TYPES = {
    TrailEvent.DUPLICATE_CHECK_UNAVAILABLE: "duplicate_check_unavailable",
    TrailEvent.MATCHES_APPLIED: "matches_applied",
    TrailEvent.MATCH_WARNING: "match_warning",
    TrailEvent.MATCH_ERROR: "match_error",
}
_NO_API_CALL_CLASSES = frozenset(
    {
        FailureClass.DUPLICATE_SUSPECTED,
        FailureClass.ATTEMPTS_EXHAUSTED,
        FailureClass.POSTING_DISABLED,
    },
)


class WorkItemStore(Protocol):
    """Claim/record contract shared by the structured queue and the outbox."""

    name: str

    def claim(self, *, batch_size: int, worker_id: str) -> list[ClaimedItem]: ...

    def revalidate(self, item: ClaimedItem) -> ClaimedItem | None: ...

    def record_attempt(self, item: ClaimedItem, *, worker_id: str) -> ClaimedItem: ...

    def mark_succeeded(self, item: ClaimedItem, *, result: CreatePledgeResult, note: str) -> None:
        ...

    def mark_failed(  # noqa: PLR0913
        self,
        item: ClaimedItem,
        *,
        error_message: str,
        note: str,
        failure_class: FailureClass,
        suppressed: bool,
        details: dict[str, object] | None = None,
    ) -> None: ...

    def record_warning(self, item: ClaimedItem, *, event: TrailEvent, message: str) -> None: ...


class StructuredQueueStore:
    """``work_items`` strategy: attempts are recorded by the claim itself."""

    name = "queue"

    def __init__(
        self,
        repository: WorkItemRepository,
        *,
        max_attempts: int,
        stale_after: timedelta,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.repository = repository
        self.max_attempts = max(1, max_attempts)
        self.stale_after = stale_after
        self.retry_policy = retry_policy

    def claim(self, *, batch_size: int, worker_id: str) -> list[ClaimedItem]:
        items = self.repository.claim_batch(
            max_items=batch_size,
            max_attempts=self.max_attempts,
            stale_after=self.stale_after,
            worker_id=worker_id,
            retry_policy=self.retry_policy,
        )
        return [
            ClaimedItem(
                item_key=str(item.item_id),
                lock_key=f"queue:{item.item_id}",
                transaction_type=item.transaction_type,
                request_json=item.request_json,
                attempt_count=item.budget_attempts,
                max_attempts=self.max_attempts,
            )
            for item in items
        ]

    def revalidate(self, item: ClaimedItem) -> ClaimedItem | None:
        current = self.repository.get_item(int(item.item_key))
        if current is None:
            return None
        if current.status != WorkItemStatus.PROCESSING:
            return None
        if current.budget_attempts != item.attempt_count:
            # Reset as stale and claimed again by someone else meanwhile.
            return None
        return replace(item, request_json=current.request_json)

    def record_attempt(self, item: ClaimedItem, *, worker_id: str) -> ClaimedItem:
        return item

    def mark_succeeded(self, item: ClaimedItem, *, result: CreatePledgeResult, note: str) -> None:
        self.repository.mark_succeeded(
            int(item.item_key),
            external_id=result.gift_id,
            note=note,
            response_json=result.raw_create_response_json,
        )

    def mark_failed(  # noqa: PLR0913
        self,
        item: ClaimedItem,
        *,
        error_message: str,
        note: str,
        failure_class: FailureClass,
        suppressed: bool,
        details: dict[str, object] | None = None,
    ) -> None:
        self.repository.mark_failed(
            int(item.item_key),
            error_message=error_message,
            note=note,
            failure_class=failure_class,
            suppressed=suppressed,
            details=details,
        )

    def record_warning(self, item: ClaimedItem, *, event: TrailEvent, message: str) -> None:
        self.repository.record_event(
            int(item.item_key),
            event_type=_QUEUE_EVENT_TYPES.get(event, event.value),
            message=message,
        )


class OutboxQueueStore:
    """``gift_workflows`` strategy: attempts and suppression live in the status trail.

    The first submission happens outside the queue, so the attempt count is the
    number of ``OutboxRetryAttempt`` entries plus one. Backoff is anchored at the
    latest retry, or at the original submission while no retry has happened yet.
    """

    name = "outbox"

    def __init__(
        self,
        repository: OutboxRepository,
        *,
        retry_policy: RetryPolicy,
        candidate_multiplier: int = 5,
    ) -> None:
        self.repository = repository
        self.retry_policy = retry_policy
        self.candidate_multiplier = max(1, candidate_multiplier)

    def claim(self, *, batch_size: int, worker_id: str) -> list[ClaimedItem]:
        batch_size = max(1, batch_size)
        candidate_ids = self.repository.list_candidate_ids(
            limit=batch_size * self.candidate_multiplier,
        )
        claimed: list[ClaimedItem] = []
        for workflow_id in candidate_ids:
            item = self._load_eligible(workflow_id)
            if item is None:
                continue
            claimed.append(item)
            if len(claimed) >= batch_size:
                break
        return claimed

    def revalidate(self, item: ClaimedItem) -> ClaimedItem | None:
        return self._load_eligible(item.item_key)

    def record_attempt(self, item: ClaimedItem, *, worker_id: str) -> ClaimedItem:
        retry_number = item.attempt_count
        self.repository.append_trail(
            item.item_key,
            [(TrailEvent.RETRY_ATTEMPT, f"Attempt {retry_number} by {worker_id}")],
        )
        return replace(item, attempt_count=item.attempt_count + 1)

    def mark_succeeded(self, item: ClaimedItem, *, result: CreatePledgeResult, note: str) -> None:
        self.repository.save_api_result(
            item.item_key,
            result=ApiResult(
                attempted_at=utc_now(),
                succeeded=True,
                gift_id=result.gift_id,
                raw_response_json=result.raw_create_response_json,
            ),
            entries=[(TrailEvent.API_SUCCEEDED, f"GiftId: {result.gift_id}")],
        )

    def mark_failed(  # noqa: PLR0913
        self,
        item: ClaimedItem,
        *,
        error_message: str,
        note: str,
        failure_class: FailureClass,
        suppressed: bool,
        details: dict[str, object] | None = None,
    ) -> None:
        """Trail entries carry messages only; classifier ``details`` are not persisted here."""

        if failure_class == FailureClass.DUPLICATE_SUSPECTED:
            self.repository.append_trail(
                item.item_key,
                [
                    (TrailEvent.DUPLICATE_DETECTED, note),
                    (TrailEvent.SUPPRESSED, error_message),
                ],
            )
            return

        if failure_class in _NO_API_CALL_CLASSES:
            self.repository.append_trail(item.item_key, [(TrailEvent.SUPPRESSED, note)])
            return

        entries: list[tuple[TrailEvent | str, str | None]] = [
            (TrailEvent.API_FAILED, error_message),
        ]
        if suppressed:
            entries.append((TrailEvent.SUPPRESSED, note))
        self.repository.save_api_result(
            item.item_key,
            result=ApiResult(attempted_at=utc_now(), succeeded=False, error_message=error_message),
            entries=entries,
        )

    def record_warning(self, item: ClaimedItem, *, event: TrailEvent, message: str) -> None:
        self.repository.append_trail(item.item_key, [(event, message)])

    def decide(self, context: GiftWorkflowContext) -> RetryDecision:
        """Retry eligibility derived from the workflow's status trail."""

        trail = context.status_trail
        retries = count_retry_attempts(trail)
        anchor = last_retry_attempt_at(trail) if retries else context.api.attempted_at
        return self.retry_policy.decide(
            attempt_count=retries + 1,
            last_attempt_at=anchor,
            now=utc_now(),
            suppressed=is_suppressed(trail),
        )

    def _load_eligible(self, workflow_id: str) -> ClaimedItem | None:
        record = self.repository.get_workflow(workflow_id)
        if record is None or record.is_deleted:
            return None
        context = record.context
        if context.api.succeeded or context.api.attempted_at is None:
            return None

        decision = self.decide(context)
        if decision.verdict in {RetryVerdict.SUPPRESSED, RetryVerdict.WAIT}:
            return None
        return ClaimedItem(
            item_key=workflow_id,
            lock_key=f"outbox:{workflow_id}",
            transaction_type=TRANSACTION_TYPE_PLEDGE_CREATE,
            request_json=context.request_json,
            attempt_count=count_retry_attempts(context.status_trail) + 1,
            max_attempts=self.retry_policy.max_attempts,
            exhausted=decision.verdict == RetryVerdict.EXHAUSTED,
        )
