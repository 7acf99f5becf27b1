"""Exponential backoff and attempt-budget policy for automatic retries."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from pledge_queue.storage.common import to_utc_aware

MAX_ATTEMPTS_REASON = "Max retry attempts reached ({max_attempts})."


class RetryVerdict(str, Enum):
    ELIGIBLE = "eligible"
    WAIT = "wait"
    EXHAUSTED = "exhausted"
    SUPPRESSED = "suppressed"


@dataclass(slots=True)
class RetryDecision:
    verdict: RetryVerdict
    next_attempt_at: datetime | None = None
    reason: str | None = None

    @property
    def eligible(self) -> bool:
        return self.verdict == RetryVerdict.ELIGIBLE


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Pure retry policy.

    ``attempt_count`` is the number of attempts already made. The delay exponent
    is 0-based, so after the first attempt the item waits ``base_delay``, after
    the second ``2 * base_delay`` and so on, capped at ``max_delay``.
    """

    base_delay: timedelta
    max_delay: timedelta
    max_attempts: int

    @classmethod
    def from_seconds(
        cls,
        *,
        base_seconds: float,
        max_seconds: float,
        max_attempts: int,
    ) -> RetryPolicy:
        return cls(
            base_delay=timedelta(seconds=base_seconds),
            max_delay=timedelta(seconds=max_seconds),
            max_attempts=max(1, max_attempts),
        )

    def delay_for(self, retry_index: int) -> timedelta:
        """Delay before retry number ``retry_index`` (0-based): ``min(base * 2^k, max)``."""

        exponent = max(0, retry_index)
        base_seconds = self.base_delay.total_seconds()
        max_seconds = self.max_delay.total_seconds()
        # Cap the exponent before multiplying to keep the float finite.
        if exponent >= 64:
            return self.max_delay
        return timedelta(seconds=min(base_seconds * (2**exponent), max_seconds))

    def next_eligible_at(
        self,
        attempt_count: int,
        last_attempt_at: datetime | None,
    ) -> datetime | None:
        if last_attempt_at is None:
            return None
        return to_utc_aware(last_attempt_at) + self.delay_for(attempt_count - 1)

    def is_exhausted(self, attempt_count: int) -> bool:
        return attempt_count >= self.max_attempts

    def exhausted_reason(self) -> str:
        return MAX_ATTEMPTS_REASON.format(max_attempts=self.max_attempts)

    def decide(
        self,
        *,
        attempt_count: int,
        last_attempt_at: datetime | None,
        now: datetime,
        suppressed: bool = False,
    ) -> RetryDecision:
        """Decide whether another automatic attempt may start now."""

        if suppressed:
            return RetryDecision(verdict=RetryVerdict.SUPPRESSED)
        if self.is_exhausted(attempt_count):
            return RetryDecision(verdict=RetryVerdict.EXHAUSTED, reason=self.exhausted_reason())
        next_attempt_at = self.next_eligible_at(attempt_count, last_attempt_at)
        if next_attempt_at is not None and to_utc_aware(now) < next_attempt_at:
            return RetryDecision(verdict=RetryVerdict.WAIT, next_attempt_at=next_attempt_at)
        return RetryDecision(verdict=RetryVerdict.ELIGIBLE, next_attempt_at=next_attempt_at)
