from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import allure
import pytest

from pledge_queue.engine.backoff import RetryPolicy, RetryVerdict
from pledge_queue.engine.models import FailureClass, TrailEvent
from pledge_queue.engine.outbox import (
    ApiResult,
    GiftWorkflowContext,
    OutboxRepository,
    WorkflowStatus,
    active_trail,
    count_retry_attempts,
    is_suppressed,
    last_retry_attempt_at,
)
from pledge_queue.engine.stores import OutboxQueueStore
from pledge_queue.sky.models import CreatePledgeResult
from pledge_queue.storage.common import utc_now

pytestmark = [
    allure.epic("Pledge Queue"),
    allure.feature("Status-Trail Outbox"),
]


def _repository(tmp_path: Path) -> OutboxRepository:
    repository = OutboxRepository(tmp_path / "outbox.db")
    repository.init_schema()
    return repository


def _store(repository: OutboxRepository, *, max_attempts: int = 8) -> OutboxQueueStore:
    return OutboxQueueStore(
        repository,
        retry_policy=RetryPolicy.from_seconds(
            base_seconds=60,
            max_seconds=1_800,
            max_attempts=max_attempts,
        ),
    )


def _failed_workflow(
    repository: OutboxRepository,
    workflow_id: str,
    pledge_request,
    *,
    attempted_ago: timedelta = timedelta(hours=1),
) -> GiftWorkflowContext:
    context = GiftWorkflowContext(
        workflow_id=workflow_id,
        request_json=pledge_request().to_json(),
        status=WorkflowStatus.API_FAILED,
        api=ApiResult(
            attempted_at=utc_now() - attempted_ago,
            succeeded=False,
            error_message="HTTP 503",
        ),
    )
    repository.save_workflow(context, constituent_id="280", amount_cents=15_000, fund_id="12")
    return context


def test_workflow_statuses_match_written_states() -> None:
    assert [status.value for status in WorkflowStatus] == [
        "draft",
        "api_succeeded",
        "api_failed",
        "committed",
    ]


def test_context_round_trips_through_json() -> None:
    context = GiftWorkflowContext(workflow_id="wf-1", request_json="{}")
    context.add_trail(TrailEvent.RETRY_ATTEMPT, "Attempt 1 by w")

    restored = GiftWorkflowContext.from_json(context.to_json())

    assert restored.workflow_id == "wf-1"
    assert restored.status_trail[0].event == "OutboxRetryAttempt"
    assert restored.status_trail[0].at == context.status_trail[0].at


def test_trail_derivation_restarts_after_suppression_clear() -> None:
    context = GiftWorkflowContext(workflow_id="wf-1")
    context.add_trail(TrailEvent.RETRY_ATTEMPT, "Attempt 1")
    context.add_trail(TrailEvent.RETRY_ATTEMPT, "Attempt 2")
    context.add_trail(TrailEvent.DUPLICATE_DETECTED, "Potential duplicates")
    assert count_retry_attempts(context.status_trail) == 2
    assert is_suppressed(context.status_trail)

    context.add_trail(TrailEvent.SUPPRESSION_CLEARED, "Suppression cleared by ops.")

    assert active_trail(context.status_trail) == []
    assert count_retry_attempts(context.status_trail) == 0
    assert last_retry_attempt_at(context.status_trail) is None
    assert not is_suppressed(context.status_trail)


def test_candidates_exclude_succeeded_and_unattempted(tmp_path: Path, pledge_request) -> None:
    repository = _repository(tmp_path)
    _failed_workflow(repository, "wf-failed", pledge_request)
    repository.save_workflow(GiftWorkflowContext(workflow_id="wf-draft"))
    done = _failed_workflow(repository, "wf-done", pledge_request)
    done.api = ApiResult(attempted_at=utc_now(), succeeded=True, gift_id="g-1")
    repository.save_workflow(done)

    assert repository.list_candidate_ids(limit=10) == ["wf-failed"]
    repository.close()


def test_claim_respects_backoff_from_initial_attempt(tmp_path: Path, pledge_request) -> None:
    repository = _repository(tmp_path)
    _failed_workflow(repository, "wf-fresh", pledge_request, attempted_ago=timedelta(seconds=5))
    _failed_workflow(repository, "wf-old", pledge_request)
    store = _store(repository)

    claimed = store.claim(batch_size=5, worker_id="w")

    assert [item.item_key for item in claimed] == ["wf-old"]
    assert claimed[0].attempt_count == 1
    assert claimed[0].lock_key == "outbox:wf-old"
    repository.close()


def test_record_attempt_appends_trail_and_anchors_backoff(tmp_path: Path, pledge_request) -> None:
    repository = _repository(tmp_path)
    _failed_workflow(repository, "wf-1", pledge_request)
    store = _store(repository)
    item = store.claim(batch_size=1, worker_id="w")[0]

    attempted = store.record_attempt(item, worker_id="worker-a")
    store.mark_failed(
        attempted,
        error_message="HTTP 503",
        note="Failed by worker-a.",
        failure_class=FailureClass.TRANSIENT,
        suppressed=False,
    )

    assert attempted.attempt_count == 2
    record = repository.get_workflow("wf-1")
    assert record is not None
    events = [entry.event for entry in record.context.status_trail]
    assert events == ["OutboxRetryAttempt", "OutboxApiFailed"]
    assert record.context.status_trail[0].note == "Attempt 1 by worker-a"
    assert store.decide(record.context).verdict == RetryVerdict.WAIT
    assert store.claim(batch_size=1, worker_id="w") == []
    repository.close()


def test_mark_succeeded_records_gift_and_completes(tmp_path: Path, pledge_request) -> None:
    repository = _repository(tmp_path)
    _failed_workflow(repository, "wf-1", pledge_request)
    store = _store(repository)
    item = store.record_attempt(store.claim(batch_size=1, worker_id="w")[0], worker_id="w")

    store.mark_succeeded(
        item,
        result=CreatePledgeResult(gift_id="g-77", raw_create_response_json='{"id": "g-77"}'),
        note="Posted",
    )

    record = repository.get_workflow("wf-1")
    assert record is not None
    assert record.context.api.succeeded
    assert record.context.api.gift_id == "g-77"
    assert record.context.status == WorkflowStatus.API_SUCCEEDED
    assert record.completed_at is not None
    assert record.context.status_trail[-1].note == "GiftId: g-77"
    assert repository.list_candidate_ids(limit=5) == []
    repository.close()


def test_duplicate_suppression_is_sticky_until_cleared(tmp_path: Path, pledge_request) -> None:
    repository = _repository(tmp_path)
    _failed_workflow(repository, "wf-1", pledge_request)
    store = _store(repository)
    item = store.record_attempt(store.claim(batch_size=1, worker_id="w")[0], worker_id="w")

    store.mark_failed(
        item,
        error_message="Manual review required.",
        note="Potential duplicates in SKY: g-1 | 2026-10-01 | 150.00",
        failure_class=FailureClass.DUPLICATE_SUSPECTED,
        suppressed=True,
    )

    record = repository.get_workflow("wf-1")
    assert record is not None
    assert [entry.event for entry in record.context.status_trail][-2:] == [
        "OutboxDuplicateDetected",
        "OutboxSuppressed",
    ]
    assert store.claim(batch_size=1, worker_id="w") == []

    repository.clear_suppression("wf-1", cleared_by="ops")

    reclaimed = store.claim(batch_size=1, worker_id="w")
    assert [row.item_key for row in reclaimed] == ["wf-1"]
    assert reclaimed[0].attempt_count == 1
    repository.close()


def test_exhausted_workflow_is_handed_out_flagged(tmp_path: Path, pledge_request) -> None:
    repository = _repository(tmp_path)
    _failed_workflow(repository, "wf-1", pledge_request)
    repository.append_trail(
        "wf-1",
        [(TrailEvent.RETRY_ATTEMPT, f"Attempt {index}") for index in range(1, 3)],
    )
    store = _store(repository, max_attempts=3)

    claimed = store.claim(batch_size=1, worker_id="w")

    assert len(claimed) == 1
    assert claimed[0].exhausted
    repository.close()


def test_clear_suppression_rejects_invalid_targets(tmp_path: Path, pledge_request) -> None:
    repository = _repository(tmp_path)
    _failed_workflow(repository, "wf-1", pledge_request)

    with pytest.raises(RuntimeError, match="not suppressed"):
        repository.clear_suppression("wf-1", cleared_by="ops")
    with pytest.raises(RuntimeError, match="Workflow not found"):
        repository.clear_suppression("missing", cleared_by="ops")
    repository.close()
