"""Best-effort duplicate gift detection against SKY before submission."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Protocol

from pledge_queue.config import DuplicateCheckSettings
from pledge_queue.sky.models import CreatePledgeRequest, GiftSearchItem

logger = logging.getLogger(__name__)

DUPLICATE_SUPPRESSION_REASON = (
    "Duplicate safety check found one or more matching gifts in SKY. Manual review required."
)
DUPLICATE_NOTE_PREFIX = "Potential duplicates in SKY: "


class GiftSearch(Protocol):
    """Search collaborator used by the duplicate check."""

    def search_gifts(
        self,
        constituent_id: str,
        from_date: date,
        to_date: date,
        *,
        limit: int = 50,
    ) -> list[GiftSearchItem]: ...


@dataclass(slots=True)
class DuplicateCheckResult:
    """Outcome of one check; ``error`` set means the check could not run."""

    matches: list[GiftSearchItem] = field(default_factory=list)
    error: str | None = None

    @property
    def has_matches(self) -> bool:
        return bool(self.matches)

    @property
    def note(self) -> str | None:
        if not self.matches:
            return None
        return DUPLICATE_NOTE_PREFIX + ", ".join(describe_hit(item) for item in self.matches)


def duplicate_window(pledge_date: date, *, days_before: int, days_after: int) -> tuple[date, date]:
    """Inclusive date window searched around the pledge date."""

    return (
        pledge_date - timedelta(days=max(0, days_before)),
        pledge_date + timedelta(days=max(0, days_after)),
    )


def is_amount_match(candidate: Decimal | None, amount: Decimal, tolerance: Decimal) -> bool:
    """Unknown candidate amounts count as matches."""

    if candidate is None:
        return True
    return abs(candidate - amount) <= tolerance


def describe_hit(item: GiftSearchItem) -> str:
    gift_date = item.gift_date.isoformat() if item.gift_date is not None else "?"
    amount = f"{item.amount:.2f}" if item.amount is not None else "?"
    return f"{item.gift_id} | {gift_date} | {amount}"


class DuplicateSafetyCheck:
    """Looks for already-posted gifts resembling a request; fails open on search errors."""

    def __init__(self, search: GiftSearch, settings: DuplicateCheckSettings) -> None:
        self.search = search
        self.settings = settings

    def check(self, request: CreatePledgeRequest) -> DuplicateCheckResult:
        if not self.settings.enabled:
            return DuplicateCheckResult()

        window_start, window_end = duplicate_window(
            request.pledge_date,
            days_before=self.settings.days_before,
            days_after=self.settings.days_after,
        )
        try:
            hits = self.search.search_gifts(
                request.constituent_id,
                window_start,
                window_end,
                limit=self.settings.search_limit,
            )
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Duplicate check unavailable for constituent %s: %s",
                request.constituent_id,
                error,
            )
            return DuplicateCheckResult(error=str(error) or type(error).__name__)

        matches: list[GiftSearchItem] = []
        for hit in hits:
            if hit.gift_date is not None and not window_start <= hit.gift_date <= window_end:
                continue
            if not is_amount_match(hit.amount, request.amount, self.settings.amount_tolerance):
                continue
            matches.append(hit)
            if len(matches) >= self.settings.max_matches:
                break
        return DuplicateCheckResult(matches=matches)
