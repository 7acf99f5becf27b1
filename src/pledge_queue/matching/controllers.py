"""Controllers for match challenge administration commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path

from pledge_queue.config import Settings
from pledge_queue.engine.locks import InProcessAdvisoryLock, LockRegistry
from pledge_queue.matching.service import GiftMatchService, MatchLedgerError
from pledge_queue.sky.models import from_cents


@dataclass(slots=True)
class MatchListCommand:
    db_path: Path | None


@dataclass(slots=True)
class MatchCreateCommand:
    """CLI input for a new match challenge."""

    db_path: Path | None
    name: str
    budget: str


@dataclass(slots=True)
class MatchDeactivateCommand:
    db_path: Path | None
    challenge_id: int


@dataclass(slots=True)
class MatchDonorCommand:
    """CLI input for the anonymous match donor setting."""

    db_path: Path | None
    constituent_id: str


class MatchCliController:
    """Admin operations on the match challenge ledger."""

    def list_challenges(self, command: MatchListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _match_service(settings) as service:
            snapshot = service.get_admin_snapshot()

        lines = [
            f"Anonymous match donor: {snapshot.anonymous_donor_id or '-'}",
            f"Challenges: {len(snapshot.challenges)}",
        ]
        for challenge in snapshot.challenges:
            lines.append(
                f"  {challenge.challenge_id} name={challenge.name} "
                f"active={challenge.is_active} "
                f"budget={from_cents(challenge.budget_cents):.2f} "
                f"used={from_cents(challenge.used_cents):.2f} "
                f"remaining={from_cents(challenge.remaining_cents):.2f} "
                f"created_at={challenge.created_at.isoformat()}",
            )
        return lines

    def create(self, command: MatchCreateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        budget = _parse_budget(command.budget)
        with _match_service(settings) as service:
            challenge = service.create_challenge(
                command.name,
                budget,
                created_by=settings.worker.client_user,
            )
        return [
            f"Challenge created: {challenge.challenge_id} name={challenge.name} "
            f"budget={from_cents(challenge.budget_cents):.2f}",
        ]

    def deactivate(self, command: MatchDeactivateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _match_service(settings) as service:
            service.deactivate_challenge(command.challenge_id)
        return [f"Challenge deactivated: {command.challenge_id}"]

    def set_donor(self, command: MatchDonorCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _match_service(settings) as service:
            service.set_anonymous_donor(
                command.constituent_id,
                updated_by=settings.worker.client_user,
            )
        return [f"Anonymous match donor set: {command.constituent_id.strip()}"]


def _parse_budget(value: str) -> Decimal:
    try:
        return Decimal(value.strip())
    except InvalidOperation as error:
        raise MatchLedgerError(f"Invalid budget amount: {value!r}") from error


@contextmanager
def _match_service(settings: Settings) -> Iterator[GiftMatchService]:
    # Admin commands never allocate, so the ledger lock is never contended here.
    service = GiftMatchService(
        settings.db_path,
        lock=InProcessAdvisoryLock(LockRegistry(), owner=settings.worker.client_user),
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    service.init_schema()
    try:
        yield service
    finally:
        service.close()
