"""Named advisory locks: zero-wait, exclusive, non-reentrant, session-scoped."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import Protocol
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col

from pledge_queue.storage.common import to_db_datetime, utc_now
from pledge_queue.storage.sqlmodel_models import AdvisoryLockRow

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 900


class LockNotHeldError(RuntimeError):
    """Release was requested for a key this session does not hold."""


class AdvisoryLock(Protocol):
    """Generic distributed mutex keyed by resource string."""

    def try_acquire(self, key: str) -> bool: ...

    def release(self, key: str) -> None: ...

    def close(self) -> None: ...


class LockRegistry:
    """Process-wide table of held keys shared by ``InProcessAdvisoryLock`` sessions."""

    def __init__(self) -> None:
        self._mutex = threading.Lock()
        self._owners: dict[str, str] = {}

    def try_acquire(self, key: str, owner: str) -> bool:
        with self._mutex:
            if key in self._owners:
                return False
            self._owners[key] = owner
            return True

    def release(self, key: str, owner: str) -> bool:
        with self._mutex:
            if self._owners.get(key) != owner:
                return False
            del self._owners[key]
            return True

    def release_all(self, owner: str) -> int:
        with self._mutex:
            keys = [key for key, holder in self._owners.items() if holder == owner]
            for key in keys:
                del self._owners[key]
            return len(keys)

    def holder(self, key: str) -> str | None:
        with self._mutex:
            return self._owners.get(key)


class InProcessAdvisoryLock:
    """Single-node lock session over a shared ``LockRegistry``."""

    def __init__(self, registry: LockRegistry, *, owner: str | None = None) -> None:
        self.registry = registry
        self.owner = owner or f"local-{uuid4().hex[:8]}"

    def try_acquire(self, key: str) -> bool:
        return self.registry.try_acquire(key, self.owner)

    def release(self, key: str) -> None:
        if not self.registry.release(key, self.owner):
            raise LockNotHeldError(f"Lock not held by {self.owner}: {key}")

    def close(self) -> None:
        self.registry.release_all(self.owner)


class SqlAdvisoryLock:
    """Lock session backed by the ``advisory_locks`` table.

    A row per held resource; the primary key makes acquisition exclusive across
    processes. Each row carries a lease so a crashed holder blocks the resource
    for at most ``lease_seconds`` before another session may take it over.
    """

    def __init__(
        self,
        engine: Engine,
        *,
        owner: str | None = None,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
    ) -> None:
        self.engine = engine
        self.owner = owner or f"sql-{uuid4().hex[:8]}"
        self.lease = timedelta(seconds=max(1, lease_seconds))
        self._held: set[str] = set()

    def try_acquire(self, key: str) -> bool:
        if key in self._held:
            return False

        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_delete(AdvisoryLockRow).where(
                    col(AdvisoryLockRow.resource) == key,
                    col(AdvisoryLockRow.expires_at) < to_db_datetime(now),
                ),
            )
            session.add(
                AdvisoryLockRow(
                    resource=key,
                    owner=self.owner,
                    acquired_at=to_db_datetime(now),
                    expires_at=to_db_datetime(now + self.lease),
                ),
            )
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return False
        self._held.add(key)
        return True

    def release(self, key: str) -> None:
        if key not in self._held:
            raise LockNotHeldError(f"Lock not held by {self.owner}: {key}")
        self._held.discard(key)
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(AdvisoryLockRow).where(
                    col(AdvisoryLockRow.resource) == key,
                    col(AdvisoryLockRow.owner) == self.owner,
                ),
            )
            session.commit()
        if result.rowcount != 1:
            logger.warning("Lease for %s expired before release by %s", key, self.owner)

    def close(self) -> None:
        self._held.clear()
        with Session(self.engine) as session:
            session.exec(
                sa_delete(AdvisoryLockRow).where(col(AdvisoryLockRow.owner) == self.owner),
            )
            session.commit()


@contextmanager
def held(lock: AdvisoryLock, key: str) -> Iterator[bool]:
    """Try the lock once; yield whether it was obtained and release on every exit path."""

    acquired = lock.try_acquire(key)
    try:
        yield acquired
    finally:
        if acquired:
            lock.release(key)


def acquire_with_wait(
    lock: AdvisoryLock,
    key: str,
    *,
    timeout_seconds: float,
    poll_seconds: float = 0.1,
    stop_event: threading.Event | None = None,
) -> bool:
    """Retry ``try_acquire`` until ``timeout_seconds`` elapses or ``stop_event`` is set."""

    deadline = time.monotonic() + max(0.0, timeout_seconds)
    while True:
        if lock.try_acquire(key):
            return True
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        delay = min(poll_seconds, remaining)
        if stop_event is not None:
            if stop_event.wait(timeout=delay):
                return False
        else:
            time.sleep(delay)
