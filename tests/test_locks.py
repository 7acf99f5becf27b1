from __future__ import annotations

import queue
import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import update as sa_update
from sqlmodel import Session, col

from pledge_queue.engine.locks import (
    InProcessAdvisoryLock,
    LockNotHeldError,
    LockRegistry,
    SqlAdvisoryLock,
    acquire_with_wait,
    held,
)
from pledge_queue.engine.repository import WorkItemRepository
from pledge_queue.storage.common import to_db_datetime, utc_now
from pledge_queue.storage.sqlmodel_models import AdvisoryLockRow

pytestmark = [
    allure.epic("Pledge Queue"),
    allure.feature("Advisory Locks"),
]


def _initialized_repository(tmp_path: Path) -> WorkItemRepository:
    repository = WorkItemRepository(tmp_path / "locks.db")
    repository.init_schema()
    return repository


def test_in_process_lock_is_exclusive_across_sessions() -> None:
    registry = LockRegistry()
    first = InProcessAdvisoryLock(registry, owner="a")
    second = InProcessAdvisoryLock(registry, owner="b")

    assert first.try_acquire("queue:1")
    assert not second.try_acquire("queue:1")
    assert second.try_acquire("queue:2")

    first.release("queue:1")
    assert second.try_acquire("queue:1")
    assert registry.holder("queue:1") == "b"


def test_in_process_lock_is_not_reentrant_and_release_requires_ownership() -> None:
    registry = LockRegistry()
    lock = InProcessAdvisoryLock(registry, owner="a")
    other = InProcessAdvisoryLock(registry, owner="b")

    assert lock.try_acquire("outbox:wf-1")
    assert not lock.try_acquire("outbox:wf-1")
    with pytest.raises(LockNotHeldError):
        other.release("outbox:wf-1")


def test_close_releases_every_key_of_the_session() -> None:
    registry = LockRegistry()
    lock = InProcessAdvisoryLock(registry, owner="a")
    lock.try_acquire("k1")
    lock.try_acquire("k2")

    lock.close()

    assert registry.holder("k1") is None
    assert registry.holder("k2") is None


def test_held_releases_on_exception() -> None:
    registry = LockRegistry()
    lock = InProcessAdvisoryLock(registry, owner="a")

    with pytest.raises(RuntimeError, match="boom"):
        with held(lock, "queue:7") as acquired:
            assert acquired
            raise RuntimeError("boom")

    assert registry.holder("queue:7") is None


def test_held_yields_false_when_busy_and_does_not_release_foreign_lock() -> None:
    registry = LockRegistry()
    owner = InProcessAdvisoryLock(registry, owner="a")
    contender = InProcessAdvisoryLock(registry, owner="b")
    owner.try_acquire("queue:7")

    with held(contender, "queue:7") as acquired:
        assert not acquired

    assert registry.holder("queue:7") == "a"


def test_sql_lock_is_exclusive_and_released(tmp_path: Path) -> None:
    repository = _initialized_repository(tmp_path)
    first = SqlAdvisoryLock(repository.engine, owner="worker-a")
    second = SqlAdvisoryLock(repository.engine, owner="worker-b")

    assert first.try_acquire("queue:1")
    assert not second.try_acquire("queue:1")
    assert not first.try_acquire("queue:1")

    first.release("queue:1")
    assert second.try_acquire("queue:1")

    with pytest.raises(LockNotHeldError):
        first.release("queue:1")

    second.close()
    first.close()
    repository.close()


def test_sql_lock_takes_over_expired_lease(tmp_path: Path) -> None:
    repository = _initialized_repository(tmp_path)
    crashed = SqlAdvisoryLock(repository.engine, owner="crashed")
    survivor = SqlAdvisoryLock(repository.engine, owner="survivor")
    assert crashed.try_acquire("queue:9")

    with Session(repository.engine) as session:
        session.exec(
            sa_update(AdvisoryLockRow)
            .where(col(AdvisoryLockRow.resource) == "queue:9")
            .values(expires_at=to_db_datetime(utc_now() - timedelta(seconds=1))),
        )
        session.commit()

    assert survivor.try_acquire("queue:9")
    survivor.close()
    repository.close()


def test_sql_lock_admits_one_of_many_threads(tmp_path: Path) -> None:
    repository = _initialized_repository(tmp_path)
    start = threading.Event()
    results: queue.Queue[bool] = queue.Queue()

    def _contend(owner: str) -> None:
        lock = SqlAdvisoryLock(repository.engine, owner=owner)
        start.wait(timeout=2)
        results.put(lock.try_acquire("match-challenges"))

    threads = [threading.Thread(target=_contend, args=(f"w{index}",)) for index in range(6)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=10)

    outcomes = [results.get_nowait() for _ in threads]
    assert outcomes.count(True) == 1
    repository.close()


def test_acquire_with_wait_gets_lock_after_release() -> None:
    registry = LockRegistry()
    holder = InProcessAdvisoryLock(registry, owner="a")
    waiter = InProcessAdvisoryLock(registry, owner="b")
    holder.try_acquire("match-challenges")

    timer = threading.Timer(0.2, lambda: holder.release("match-challenges"))
    timer.start()
    try:
        assert acquire_with_wait(waiter, "match-challenges", timeout_seconds=5, poll_seconds=0.05)
    finally:
        timer.cancel()


def test_acquire_with_wait_times_out_and_honours_stop_event() -> None:
    registry = LockRegistry()
    InProcessAdvisoryLock(registry, owner="a").try_acquire("k")
    waiter = InProcessAdvisoryLock(registry, owner="b")

    assert not acquire_with_wait(waiter, "k", timeout_seconds=0.1, poll_seconds=0.02)

    stop = threading.Event()
    stop.set()
    assert not acquire_with_wait(waiter, "k", timeout_seconds=30, stop_event=stop)
