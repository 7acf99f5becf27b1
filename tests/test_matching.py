from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import allure
import pytest
from sqlmodel import Session, select

from pledge_queue.engine.locks import InProcessAdvisoryLock, LockRegistry
from pledge_queue.matching.service import (
    LOCK_BUSY_WARNING,
    MATCH_LOCK_KEY,
    NO_DONOR_WARNING,
    NO_FUND_WARNING,
    GiftMatchService,
    MatchLedgerError,
)
from pledge_queue.storage.sqlmodel_models import ChallengeMatch, GiftWorkflow

pytestmark = [
    allure.epic("Pledge Queue"),
    allure.feature("Match Challenges"),
]


def _service(tmp_path: Path, registry: LockRegistry | None = None) -> GiftMatchService:
    service = GiftMatchService(
        tmp_path / "match.db",
        lock=InProcessAdvisoryLock(registry or LockRegistry(), owner="matcher"),
        lock_wait_seconds=0.1,
    )
    service.init_schema()
    return service


def test_allocates_oldest_challenge_first_within_budget(tmp_path: Path, pledge_request) -> None:
    service = _service(tmp_path)
    service.set_anonymous_donor("999", updated_by="ops")
    older = service.create_challenge("Spring", Decimal("100.00"), created_by="ops")
    newer = service.create_challenge("Summer", Decimal("500.00"), created_by="ops")

    result = service.apply_matches(
        source_key="queue:1",
        source_gift_id="g-1",
        request=pledge_request(amount=Decimal("150.00")),
    )

    assert [(row.challenge_id, row.amount_cents) for row in result.allocations] == [
        (older.challenge_id, 10_000),
        (newer.challenge_id, 5_000),
    ]
    assert result.total_matched == Decimal("150.00")
    assert result.warnings == []

    snapshot = service.get_admin_snapshot()
    by_id = {row.challenge_id: row for row in snapshot.challenges}
    assert by_id[older.challenge_id].remaining_cents == 0
    assert not by_id[older.challenge_id].is_active
    assert by_id[newer.challenge_id].remaining_cents == 45_000
    assert by_id[newer.challenge_id].is_active

    with Session(service.engine) as session:
        ledger = session.exec(select(ChallengeMatch)).all()
        workflows = session.exec(select(GiftWorkflow)).all()
    assert len(ledger) == 2
    assert all(row.matched_constituent_id == "999" for row in ledger)
    assert {row.workflow_id for row in workflows} == {row.matched_workflow_id for row in ledger}
    service.close()


def test_match_is_skipped_without_donor_or_fund(tmp_path: Path, pledge_request) -> None:
    service = _service(tmp_path)
    service.create_challenge("Spring", Decimal("100.00"), created_by="ops")

    no_donor = service.apply_matches(
        source_key="queue:1",
        source_gift_id="g-1",
        request=pledge_request(),
    )
    service.set_anonymous_donor("999", updated_by="ops")
    no_fund = service.apply_matches(
        source_key="queue:1",
        source_gift_id="g-1",
        request=pledge_request(fund_id=" "),
    )

    assert no_donor.warnings == [NO_DONOR_WARNING]
    assert no_fund.warnings == [NO_FUND_WARNING]
    assert no_donor.allocations == []
    service.close()


def test_busy_ledger_lock_returns_warning(tmp_path: Path, pledge_request) -> None:
    registry = LockRegistry()
    service = _service(tmp_path, registry)
    service.set_anonymous_donor("999", updated_by="ops")
    service.create_challenge("Spring", Decimal("100.00"), created_by="ops")
    InProcessAdvisoryLock(registry, owner="other-worker").try_acquire(MATCH_LOCK_KEY)

    result = service.apply_matches(
        source_key="queue:1",
        source_gift_id="g-1",
        request=pledge_request(),
    )

    assert result.warnings == [LOCK_BUSY_WARNING]
    assert result.allocations == []
    service.close()


def test_inactive_challenges_are_not_drawn(tmp_path: Path, pledge_request) -> None:
    service = _service(tmp_path)
    service.set_anonymous_donor("999", updated_by="ops")
    challenge = service.create_challenge("Spring", Decimal("100.00"), created_by="ops")
    service.deactivate_challenge(challenge.challenge_id)

    result = service.apply_matches(
        source_key="queue:1",
        source_gift_id="g-1",
        request=pledge_request(),
    )

    assert result.allocations == []
    service.close()


def test_admin_validation(tmp_path: Path) -> None:
    service = _service(tmp_path)

    with pytest.raises(MatchLedgerError, match="budget must be > 0"):
        service.create_challenge("Zero", Decimal("0"), created_by="ops")
    with pytest.raises(MatchLedgerError, match="name is required"):
        service.create_challenge("  ", Decimal("10"), created_by="ops")
    with pytest.raises(MatchLedgerError, match="not found"):
        service.deactivate_challenge(404)
    with pytest.raises(MatchLedgerError, match="Constituent id is required"):
        service.set_anonymous_donor(" ", updated_by="ops")
    service.close()
