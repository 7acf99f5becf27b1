"""Timestamp, note and engine helpers shared by the queue, outbox and ledger stores.

Timestamps are held as aware UTC in Python and written as naive UTC so that
SQLite compares them lexically in the same order as chronologically.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

MAX_NOTE_CHARS = 2_000
_ISO_Z_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def from_iso(value: str) -> datetime:
    """Parse a trail timestamp; naive input is taken as UTC."""

    return to_utc_aware(datetime.fromisoformat(value.replace("Z", "+00:00")))


def to_iso_z(value: datetime) -> str:
    return to_utc_aware(value).strftime(_ISO_Z_FORMAT)


def to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_utc_aware(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def optional_utc_aware(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return to_utc_aware(value)


def truncate_note(value: str | None, limit: int = MAX_NOTE_CHARS) -> str | None:
    """Clip operator-facing notes and errors to the column budget."""

    if value is None or len(value) <= limit:
        return value
    return value[:limit]


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine for one SQLite file shared by several processes.

    Every connection runs in WAL mode with ``busy_timeout`` so concurrent
    workers wait on each other's short write transactions instead of failing.
    """

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        _configure_connection(dbapi_connection, busy_timeout_ms=busy_timeout_ms)

    return engine


def _configure_connection(connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode = WAL")
        cursor.execute("PRAGMA synchronous = NORMAL")
        cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
        cursor.execute("PRAGMA foreign_keys = ON")
    finally:
        cursor.close()
