"""Gift match challenges: budgeted, oldest-first allocation of matching pledges.

Allocation is local bookkeeping only. For every successful source pledge the active
challenges are drained oldest first; each allocation stores a committed "match
workflow" for the anonymous match donor and a ledger row counting against the
challenge budget. All allocations are serialized under one advisory lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from pathlib import Path
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from pledge_queue.engine.locks import AdvisoryLock, acquire_with_wait
from pledge_queue.engine.models import TrailEvent
from pledge_queue.engine.outbox import ApiResult, GiftWorkflowContext, WorkflowStatus
from pledge_queue.sky.models import CreatePledgeRequest, from_cents, to_cents
from pledge_queue.storage.alembic_runner import upgrade_head
from pledge_queue.storage.common import build_sqlite_engine, to_db_datetime, to_utc_aware, utc_now
from pledge_queue.storage.sqlmodel_models import (
    AppSetting,
    ChallengeMatch,
    GiftWorkflow,
    MatchChallenge,
)

logger = logging.getLogger(__name__)

MATCH_LOCK_KEY = "match-challenges"
ANONYMOUS_DONOR_SETTING = "anonymous_match_constituent_id"
NO_FUND_WARNING = "No FundId on gift; match skipped."
NO_DONOR_WARNING = "Anonymous match donor constituent id is not set."
LOCK_BUSY_WARNING = "Match ledger is busy; match skipped."


class MatchLedgerError(RuntimeError):
    """Invalid administrative request against the match ledger."""


@dataclass(slots=True)
class MatchChallengeRow:
    challenge_id: int
    name: str
    budget_cents: int
    used_cents: int
    created_at: datetime
    is_active: bool

    @property
    def remaining_cents(self) -> int:
        return self.budget_cents - self.used_cents


@dataclass(slots=True)
class MatchAdminSnapshot:
    anonymous_donor_id: str | None
    challenges: list[MatchChallengeRow]


@dataclass(slots=True)
class MatchAllocation:
    challenge_id: int
    challenge_name: str
    amount_cents: int
    matched_workflow_id: str


@dataclass(slots=True)
class MatchApplyResult:
    allocations: list[MatchAllocation] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def total_matched(self) -> Decimal:
        return from_cents(sum(allocation.amount_cents for allocation in self.allocations))


class GiftMatchService:
    """Match challenge ledger backed by SQLModel + SQLite."""

    def __init__(  # noqa: PLR0913
        self,
        db_path: Path,
        *,
        lock: AdvisoryLock,
        lock_wait_seconds: float = 10.0,
        sqlite_busy_timeout_ms: int = 5_000,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.db_path = db_path
        self.lock = lock
        self.lock_wait_seconds = lock_wait_seconds
        self.stop_event = stop_event
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        self.engine.dispose()

    def init_schema(self) -> None:
        upgrade_head(self.db_path)

    def get_admin_snapshot(self) -> MatchAdminSnapshot:
        with Session(self.engine) as session:
            return MatchAdminSnapshot(
                anonymous_donor_id=self._anonymous_donor_id(session),
                challenges=self._list_challenges(session, include_inactive=True),
            )

    def set_anonymous_donor(self, constituent_id: str, *, updated_by: str) -> None:
        constituent_id = constituent_id.strip()
        if not constituent_id:
            raise MatchLedgerError("Constituent id is required.")
        with Session(self.engine) as session:
            row = session.get(AppSetting, ANONYMOUS_DONOR_SETTING)
            if row is None:
                row = AppSetting(key=ANONYMOUS_DONOR_SETTING, updated_at=to_db_datetime(utc_now()))
            row.value = constituent_id
            row.updated_by = updated_by
            row.updated_at = to_db_datetime(utc_now())
            session.add(row)
            session.commit()

    def create_challenge(self, name: str, budget: Decimal, *, created_by: str) -> MatchChallengeRow:
        name = name.strip()
        if not name:
            raise MatchLedgerError("Challenge name is required.")
        if budget <= 0:
            raise MatchLedgerError("Challenge budget must be > 0.")

        now = utc_now()
        with Session(self.engine) as session:
            row = MatchChallenge(
                name=name,
                budget_cents=to_cents(budget),
                is_active=True,
                created_by=created_by,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("Created match challenge %s (%s)", row.id, name)
            return MatchChallengeRow(
                challenge_id=row.id or 0,
                name=row.name,
                budget_cents=row.budget_cents,
                used_cents=0,
                created_at=to_utc_aware(row.created_at),
                is_active=True,
            )

    def deactivate_challenge(self, challenge_id: int) -> None:
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(MatchChallenge)
                .where(col(MatchChallenge.id) == challenge_id)
                .values(is_active=False),
            )
            if result.rowcount != 1:
                session.rollback()
                raise MatchLedgerError(f"Match challenge not found: {challenge_id}")
            session.commit()

    def apply_matches(
        self,
        *,
        source_key: str,
        source_gift_id: str,
        request: CreatePledgeRequest,
    ) -> MatchApplyResult:
        """Allocate the pledge amount across active challenges, oldest first.

        Never raises for "not configured" situations; those come back as warnings.
        """

        if not source_gift_id.strip() or request.amount <= 0:
            return MatchApplyResult()
        if not request.fund_id.strip():
            return MatchApplyResult(warnings=[NO_FUND_WARNING])

        with Session(self.engine) as session:
            donor_id = self._anonymous_donor_id(session)
        if donor_id is None:
            return MatchApplyResult(warnings=[NO_DONOR_WARNING])

        if not acquire_with_wait(
            self.lock,
            MATCH_LOCK_KEY,
            timeout_seconds=self.lock_wait_seconds,
            stop_event=self.stop_event,
        ):
            return MatchApplyResult(warnings=[LOCK_BUSY_WARNING])
        try:
            return self._allocate(
                source_key=source_key,
                source_gift_id=source_gift_id,
                request=request,
                donor_id=donor_id,
            )
        finally:
            self.lock.release(MATCH_LOCK_KEY)

    def _allocate(
        self,
        *,
        source_key: str,
        source_gift_id: str,
        request: CreatePledgeRequest,
        donor_id: str,
    ) -> MatchApplyResult:
        result = MatchApplyResult()
        with Session(self.engine) as session:
            # Re-read under the lock so remaining budgets are current.
            usable = [
                challenge
                for challenge in self._list_challenges(session, include_inactive=False)
                if challenge.remaining_cents > 0
            ]

        unmatched_cents = request.amount_cents
        for challenge in usable:
            if unmatched_cents <= 0:
                break
            take = min(challenge.remaining_cents, unmatched_cents)
            try:
                workflow_id = self._record_allocation(
                    source_key=source_key,
                    source_gift_id=source_gift_id,
                    request=request,
                    donor_id=donor_id,
                    challenge=challenge,
                    amount_cents=take,
                )
            except Exception as error:  # noqa: BLE001
                logger.warning("Match against challenge %s failed: %s", challenge.name, error)
                result.warnings.append(f"Challenge '{challenge.name}' match failed: {error}")
                self._record_failed_allocation(
                    source_key=source_key,
                    source_gift_id=source_gift_id,
                    challenge=challenge,
                    error=error,
                )
                break
            result.allocations.append(
                MatchAllocation(
                    challenge_id=challenge.challenge_id,
                    challenge_name=challenge.name,
                    amount_cents=take,
                    matched_workflow_id=workflow_id,
                ),
            )
            unmatched_cents -= take

        self._deactivate_depleted()
        return result

    def _record_allocation(  # noqa: PLR0913
        self,
        *,
        source_key: str,
        source_gift_id: str,
        request: CreatePledgeRequest,
        donor_id: str,
        challenge: MatchChallengeRow,
        amount_cents: int,
    ) -> str:
        now = utc_now()
        match_request = CreatePledgeRequest(
            constituent_id=donor_id,
            amount=from_cents(amount_cents),
            pledge_date=request.pledge_date,
            fund_id=request.fund_id,
            frequency=request.frequency,
            number_of_installments=request.number_of_installments,
            start_date=request.start_date,
            payment_method=request.payment_method,
            comments=f"Match for challenge '{challenge.name}' (source gift {source_gift_id})",
            campaign_id=request.campaign_id,
            appeal_id=request.appeal_id,
            package_id=request.package_id,
        )
        workflow_id = f"match-{uuid4().hex}"
        context = GiftWorkflowContext(
            workflow_id=workflow_id,
            request_json=match_request.to_json(),
            status=WorkflowStatus.COMMITTED,
            api=ApiResult(),
        )
        context.add_trail(
            TrailEvent.MATCHES_APPLIED,
            f"Local match of {from_cents(amount_cents):.2f} for source {source_key}",
            at=now,
        )

        with Session(self.engine) as session:
            session.add(
                GiftWorkflow(
                    workflow_id=workflow_id,
                    status=WorkflowStatus.COMMITTED.value,
                    context_json=context.to_json(),
                    constituent_id=donor_id,
                    amount_cents=amount_cents,
                    fund_id=request.fund_id,
                    completed_at=to_db_datetime(now),
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.add(
                ChallengeMatch(
                    source_key=source_key,
                    source_gift_id=source_gift_id,
                    challenge_id=challenge.challenge_id,
                    amount_cents=amount_cents,
                    matched_constituent_id=donor_id,
                    matched_workflow_id=workflow_id,
                    succeeded=True,
                    created_at=to_db_datetime(now),
                ),
            )
            session.commit()
        return workflow_id

    def _record_failed_allocation(
        self,
        *,
        source_key: str,
        source_gift_id: str,
        challenge: MatchChallengeRow,
        error: Exception,
    ) -> None:
        try:
            with Session(self.engine) as session:
                session.add(
                    ChallengeMatch(
                        source_key=source_key,
                        source_gift_id=source_gift_id,
                        challenge_id=challenge.challenge_id,
                        amount_cents=0,
                        succeeded=False,
                        error_message=str(error),
                        created_at=to_db_datetime(utc_now()),
                    ),
                )
                session.commit()
        except Exception:  # noqa: BLE001
            logger.warning("Could not record failed match row for %s", source_key, exc_info=True)

    def _deactivate_depleted(self) -> None:
        with Session(self.engine) as session:
            depleted = [
                challenge.challenge_id
                for challenge in self._list_challenges(session, include_inactive=False)
                if challenge.remaining_cents <= 0
            ]
            if not depleted:
                return
            session.exec(
                sa_update(MatchChallenge)
                .where(col(MatchChallenge.id).in_(depleted))
                .values(is_active=False),
            )
            session.commit()
        logger.info("Deactivated depleted match challenge(s): %s", depleted)

    def _list_challenges(
        self,
        session: Session,
        *,
        include_inactive: bool,
    ) -> list[MatchChallengeRow]:
        statement = select(MatchChallenge).order_by(
            col(MatchChallenge.created_at).asc(),
            col(MatchChallenge.id).asc(),
        )
        if not include_inactive:
            statement = statement.where(col(MatchChallenge.is_active).is_(True))
        challenges = session.exec(statement).all()

        used_rows = session.exec(
            select(ChallengeMatch.challenge_id, func.sum(ChallengeMatch.amount_cents))
            .where(col(ChallengeMatch.succeeded).is_(True))
            .group_by(col(ChallengeMatch.challenge_id)),
        ).all()
        used = {challenge_id: int(total or 0) for challenge_id, total in used_rows}

        return [
            MatchChallengeRow(
                challenge_id=row.id or 0,
                name=row.name,
                budget_cents=row.budget_cents,
                used_cents=used.get(row.id or 0, 0),
                created_at=to_utc_aware(row.created_at),
                is_active=bool(row.is_active),
            )
            for row in challenges
        ]

    def _anonymous_donor_id(self, session: Session) -> str | None:
        row = session.get(AppSetting, ANONYMOUS_DONOR_SETTING)
        if row is None or not (row.value or "").strip():
            return None
        return (row.value or "").strip()
