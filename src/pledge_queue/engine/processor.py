"""Per-item processing: lock, validate, duplicate check, submit, record."""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Protocol

from pledge_queue.engine.backoff import MAX_ATTEMPTS_REASON
from pledge_queue.engine.duplicate_check import DUPLICATE_SUPPRESSION_REASON, DuplicateSafetyCheck
from pledge_queue.engine.failure_classifier import classify_submission_failure
from pledge_queue.engine.locks import AdvisoryLock, held
from pledge_queue.engine.models import ClaimedItem, FailureClass, ProcessingSummary, TrailEvent
from pledge_queue.engine.stores import WorkItemStore
from pledge_queue.matching.service import GiftMatchService
from pledge_queue.policy import PolicyProvider
from pledge_queue.sky.models import (
    SUPPORTED_TRANSACTION_TYPES,
    CreatePledgeRequest,
    CreatePledgeResult,
    PledgeValidationError,
)

logger = logging.getLogger(__name__)


class PledgeSubmitter(Protocol):
    """Submission collaborator; ``SkyGiftClient`` in production."""

    def create_pledge(self, request: CreatePledgeRequest) -> CreatePledgeResult: ...


class ItemOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    RETRY_SCHEDULED = "retry_scheduled"
    SUPPRESSED = "suppressed"
    SKIPPED = "skipped"


class ItemProcessor:
    """Drives claimed items of one store through submission to SKY."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: WorkItemStore,
        submitter: PledgeSubmitter,
        policy: PolicyProvider,
        lock: AdvisoryLock,
        worker_id: str,
        batch_size: int,
        duplicate_check: DuplicateSafetyCheck | None = None,
        match_service: GiftMatchService | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.store = store
        self.submitter = submitter
        self.policy = policy
        self.lock = lock
        self.worker_id = worker_id
        self.batch_size = max(1, batch_size)
        self.duplicate_check = duplicate_check
        self.match_service = match_service
        self.stop_event = stop_event or threading.Event()

    def run_cycle(self) -> ProcessingSummary:
        """Claim one batch and process every item in claim order."""

        summary = ProcessingSummary()
        if self.stop_event.is_set():
            return summary

        items = self.store.claim(batch_size=self.batch_size, worker_id=self.worker_id)
        summary.claimed = len(items)
        if items:
            logger.info("Claimed %d transaction(s).", len(items))

        for item in items:
            if self.stop_event.is_set():
                logger.info("Stop requested; leaving %s for a later cycle", item.item_key)
                break
            outcome = self.process_item(item)
            if outcome == ItemOutcome.SUCCEEDED:
                summary.succeeded += 1
            elif outcome == ItemOutcome.RETRY_SCHEDULED:
                summary.failed += 1
                summary.retry_scheduled += 1
            elif outcome == ItemOutcome.SUPPRESSED:
                summary.failed += 1
                summary.suppressed += 1
            else:
                summary.skipped += 1
        return summary

    def process_item(self, item: ClaimedItem) -> ItemOutcome:
        """Process one item; never raises."""

        try:
            with held(self.lock, item.lock_key) as acquired:
                if not acquired:
                    logger.info("Item %s is locked by another worker; skipping", item.item_key)
                    return ItemOutcome.SKIPPED
                return self._process_locked(item)
        except Exception as error:
            logger.exception("Unexpected error processing %s %s", self.store.name, item.item_key)
            return self._record_unexpected(item, error)

    def _process_locked(self, item: ClaimedItem) -> ItemOutcome:  # noqa: PLR0911
        current = self.store.revalidate(item)
        if current is None:
            logger.info("Item %s is no longer eligible; skipping", item.item_key)
            return ItemOutcome.SKIPPED

        allowed, reason = self.policy.is_submission_allowed()
        if not allowed:
            message = f"Posting disabled: {reason or 'no reason given'}"
            return self._suppress(current, message, message, FailureClass.POSTING_DISABLED)

        if current.exhausted:
            exhausted_reason = MAX_ATTEMPTS_REASON.format(max_attempts=current.max_attempts)
            return self._suppress(
                current,
                exhausted_reason,
                exhausted_reason,
                FailureClass.ATTEMPTS_EXHAUSTED,
            )

        if current.transaction_type not in SUPPORTED_TRANSACTION_TYPES:
            message = f"Unsupported TransactionType '{current.transaction_type}'."
            return self._suppress(current, message, message, FailureClass.VALIDATION)
        try:
            request = CreatePledgeRequest.from_json(current.request_json)
        except PledgeValidationError as error:
            return self._suppress(
                current,
                str(error),
                f"Failed by {self.worker_id}.",
                FailureClass.VALIDATION,
            )

        current = self.store.record_attempt(current, worker_id=self.worker_id)

        if self.duplicate_check is not None:
            check = self.duplicate_check.check(request)
            if check.error is not None:
                self.store.record_warning(
                    current,
                    event=TrailEvent.DUPLICATE_CHECK_UNAVAILABLE,
                    message=check.error,
                )
            elif check.has_matches:
                logger.warning("Suppressed %s: %s", current.item_key, check.note)
                return self._suppress(
                    current,
                    DUPLICATE_SUPPRESSION_REASON,
                    check.note or DUPLICATE_SUPPRESSION_REASON,
                    FailureClass.DUPLICATE_SUSPECTED,
                )

        try:
            result = self.submitter.create_pledge(request)
        except Exception as error:  # noqa: BLE001
            return self._record_submission_failure(current, error)

        self.store.mark_succeeded(
            current,
            result=result,
            note=f"Posted by {self.worker_id}. GiftId={result.gift_id}",
        )
        logger.info("Succeeded: QueueId=%s, GiftId=%s", current.item_key, result.gift_id)
        self._apply_matches(current, request=request, result=result)
        return ItemOutcome.SUCCEEDED

    def _record_submission_failure(self, item: ClaimedItem, error: Exception) -> ItemOutcome:
        classification = classify_submission_failure(error)
        details = classification.to_event_details()
        error_message = str(error) or type(error).__name__
        logger.warning(
            "Failed: QueueId=%s, Error=%s, Rule=%s",
            item.item_key,
            error_message,
            classification.matched_rule,
        )

        if not classification.retryable:
            return self._suppress(
                item,
                error_message,
                f"Failed by {self.worker_id}.",
                classification.failure_class,
                details=details,
            )
        if item.attempt_count >= item.max_attempts:
            return self._suppress(
                item,
                error_message,
                MAX_ATTEMPTS_REASON.format(max_attempts=item.max_attempts),
                FailureClass.ATTEMPTS_EXHAUSTED,
                details=details,
            )

        self.store.mark_failed(
            item,
            error_message=error_message,
            note=f"Failed by {self.worker_id}.",
            failure_class=classification.failure_class,
            suppressed=False,
            details=details,
        )
        return ItemOutcome.RETRY_SCHEDULED

    def _suppress(  # noqa: PLR0913
        self,
        item: ClaimedItem,
        error_message: str,
        note: str,
        failure_class: FailureClass,
        *,
        details: dict[str, object] | None = None,
    ) -> ItemOutcome:
        self.store.mark_failed(
            item,
            error_message=error_message,
            note=note,
            failure_class=failure_class,
            suppressed=True,
            details=details,
        )
        logger.info(
            "Suppressed %s %s (%s): %s",
            self.store.name,
            item.item_key,
            failure_class.value,
            error_message,
        )
        return ItemOutcome.SUPPRESSED

    def _apply_matches(
        self,
        item: ClaimedItem,
        *,
        request: CreatePledgeRequest,
        result: CreatePledgeResult,
    ) -> None:
        if self.match_service is None:
            return
        try:
            applied = self.match_service.apply_matches(
                source_key=f"{self.store.name}:{item.item_key}",
                source_gift_id=result.gift_id,
                request=request,
            )
            if applied.allocations:
                self.store.record_warning(
                    item,
                    event=TrailEvent.MATCHES_APPLIED,
                    message=f"TotalMatched={applied.total_matched:.2f}",
                )
            for warning in applied.warnings:
                self.store.record_warning(item, event=TrailEvent.MATCH_WARNING, message=warning)
        except Exception as error:  # noqa: BLE001
            logger.warning("Match allocation failed for %s: %s", item.item_key, error)
            try:
                self.store.record_warning(item, event=TrailEvent.MATCH_ERROR, message=str(error))
            except Exception:  # noqa: BLE001
                logger.warning("Could not record match error for %s", item.item_key)

    def _record_unexpected(self, item: ClaimedItem, error: Exception) -> ItemOutcome:
        try:
            self.store.mark_failed(
                item,
                error_message=str(error) or type(error).__name__,
                note=f"Failed by {self.worker_id}.",
                failure_class=FailureClass.UNEXPECTED,
                suppressed=False,
            )
        except Exception:
            logger.exception("Could not record failure for %s", item.item_key)
            return ItemOutcome.SKIPPED
        return ItemOutcome.RETRY_SCHEDULED
