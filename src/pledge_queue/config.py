"""Runtime configuration for the pledge queue, outbox and SKY client."""

from __future__ import annotations

import getpass
import os
import socket
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from pathlib import Path
from urllib.parse import urlparse

MAX_BATCH_SIZE = 200
SUPPORTED_LOCK_BACKENDS = ("sql", "memory")


@dataclass(slots=True)
class ProcessingSettings:
    """Structured queue claim/drain settings."""

    poll_interval_seconds: int = 10
    batch_size: int = 10
    stale_processing_minutes: int = 30
    max_attempts: int = 5
    busy_delay_seconds: float = 1.0

    def normalized(self) -> ProcessingSettings:
        """Return a copy with floors and ceilings applied."""

        return ProcessingSettings(
            poll_interval_seconds=max(1, self.poll_interval_seconds),
            batch_size=min(MAX_BATCH_SIZE, max(1, self.batch_size)),
            stale_processing_minutes=max(1, self.stale_processing_minutes),
            max_attempts=max(1, self.max_attempts),
            busy_delay_seconds=max(0.0, self.busy_delay_seconds),
        )


@dataclass(slots=True)
class BackoffSettings:
    """Exponential backoff between automatic retries."""

    base_seconds: int = 60
    max_seconds: int = 1_800


@dataclass(slots=True)
class OutboxSettings:
    """Status-trail outbox retry loop settings."""

    enabled: bool = True
    poll_interval_seconds: int = 60
    initial_delay_seconds: int = 10
    batch_size: int = 3
    max_attempts: int = 8
    candidate_multiplier: int = 5

    def normalized(self) -> OutboxSettings:
        return OutboxSettings(
            enabled=self.enabled,
            poll_interval_seconds=min(3_600, max(10, self.poll_interval_seconds)),
            initial_delay_seconds=min(600, max(0, self.initial_delay_seconds)),
            batch_size=min(25, max(1, self.batch_size)),
            max_attempts=max(1, self.max_attempts),
            candidate_multiplier=max(1, self.candidate_multiplier),
        )


@dataclass(slots=True)
class DuplicateCheckSettings:
    """Pre-submission duplicate heuristic: window around pledge date and amount tolerance."""

    enabled: bool = True
    days_before: int = 7
    days_after: int = 2
    amount_tolerance: Decimal = Decimal("0.01")
    max_matches: int = 10
    search_limit: int = 50


@dataclass(slots=True)
class SkyApiSettings:
    """SKY gift API connection settings."""

    base_url: str = "https://api.sky.blackbaud.com/"
    access_token: str = ""
    subscription_key: str = ""
    timeout_seconds: float = 30.0
    max_rate_limit_retries: int = 10
    max_retry_after_seconds: float = 120.0
    verify_installments: bool = True


@dataclass(slots=True)
class PostingSettings:
    """Global posting kill-switch."""

    posting_enabled: bool = True
    demo_mode: bool = False


@dataclass(slots=True)
class LockSettings:
    """Advisory lock backend settings."""

    backend: str = "sql"
    lease_seconds: int = 900
    match_lock_wait_seconds: float = 10.0


@dataclass(slots=True)
class WorkerContextSettings:
    """Identity stamped on claims, notes and enqueued items."""

    worker_id: str = field(default_factory=lambda: f"pledge-queue-{socket.gethostname()}")
    machine_name: str = field(default_factory=socket.gethostname)
    client_user: str = field(default_factory=lambda: _login_user())


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".pledge_queue.db")
    sqlite_busy_timeout_ms: int = 5_000
    processing: ProcessingSettings = field(default_factory=ProcessingSettings)
    backoff: BackoffSettings = field(default_factory=BackoffSettings)
    outbox: OutboxSettings = field(default_factory=OutboxSettings)
    duplicate_check: DuplicateCheckSettings = field(default_factory=DuplicateCheckSettings)
    sky: SkyApiSettings = field(default_factory=SkyApiSettings)
    posting: PostingSettings = field(default_factory=PostingSettings)
    locks: LockSettings = field(default_factory=LockSettings)
    worker: WorkerContextSettings = field(default_factory=WorkerContextSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        hostname = socket.gethostname()
        return cls(
            db_path=db_path or Path(os.getenv("PLEDGE_QUEUE_DB_PATH", ".pledge_queue.db")),
            sqlite_busy_timeout_ms=int(os.getenv("PLEDGE_QUEUE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            processing=ProcessingSettings(
                poll_interval_seconds=int(os.getenv("PLEDGE_QUEUE_POLL_INTERVAL_SECONDS", "10")),
                batch_size=int(os.getenv("PLEDGE_QUEUE_BATCH_SIZE", "10")),
                stale_processing_minutes=int(
                    os.getenv("PLEDGE_QUEUE_STALE_PROCESSING_MINUTES", "30"),
                ),
                max_attempts=int(os.getenv("PLEDGE_QUEUE_MAX_ATTEMPTS", "5")),
                busy_delay_seconds=float(os.getenv("PLEDGE_QUEUE_BUSY_DELAY_SECONDS", "1.0")),
            ).normalized(),
            backoff=BackoffSettings(
                base_seconds=int(os.getenv("PLEDGE_QUEUE_BACKOFF_BASE_SECONDS", "60")),
                max_seconds=int(os.getenv("PLEDGE_QUEUE_BACKOFF_MAX_SECONDS", "1800")),
            ),
            outbox=OutboxSettings(
                enabled=_env_bool("PLEDGE_QUEUE_OUTBOX_ENABLED", default=True),
                poll_interval_seconds=int(os.getenv("PLEDGE_QUEUE_OUTBOX_POLL_SECONDS", "60")),
                initial_delay_seconds=int(
                    os.getenv("PLEDGE_QUEUE_OUTBOX_INITIAL_DELAY_SECONDS", "10"),
                ),
                batch_size=int(os.getenv("PLEDGE_QUEUE_OUTBOX_BATCH_SIZE", "3")),
                max_attempts=int(os.getenv("PLEDGE_QUEUE_OUTBOX_MAX_ATTEMPTS", "8")),
            ).normalized(),
            duplicate_check=DuplicateCheckSettings(
                enabled=_env_bool("PLEDGE_QUEUE_DUPLICATE_CHECK_ENABLED", default=True),
                days_before=int(os.getenv("PLEDGE_QUEUE_DUPLICATE_DAYS_BEFORE", "7")),
                days_after=int(os.getenv("PLEDGE_QUEUE_DUPLICATE_DAYS_AFTER", "2")),
                amount_tolerance=_env_decimal("PLEDGE_QUEUE_DUPLICATE_AMOUNT_TOLERANCE", "0.01"),
                max_matches=int(os.getenv("PLEDGE_QUEUE_DUPLICATE_MAX_MATCHES", "10")),
                search_limit=int(os.getenv("PLEDGE_QUEUE_DUPLICATE_SEARCH_LIMIT", "50")),
            ),
            sky=SkyApiSettings(
                base_url=os.getenv("PLEDGE_QUEUE_SKY_BASE_URL", "https://api.sky.blackbaud.com/"),
                access_token=os.getenv("PLEDGE_QUEUE_SKY_ACCESS_TOKEN", ""),
                subscription_key=os.getenv("PLEDGE_QUEUE_SKY_SUBSCRIPTION_KEY", ""),
                timeout_seconds=float(os.getenv("PLEDGE_QUEUE_SKY_TIMEOUT_SECONDS", "30")),
                max_rate_limit_retries=int(
                    os.getenv("PLEDGE_QUEUE_SKY_MAX_RATE_LIMIT_RETRIES", "10"),
                ),
                max_retry_after_seconds=float(
                    os.getenv("PLEDGE_QUEUE_SKY_MAX_RETRY_AFTER_SECONDS", "120"),
                ),
                verify_installments=_env_bool(
                    "PLEDGE_QUEUE_SKY_VERIFY_INSTALLMENTS",
                    default=True,
                ),
            ),
            posting=PostingSettings(
                posting_enabled=_env_bool("PLEDGE_QUEUE_POSTING_ENABLED", default=True),
                demo_mode=_env_bool("PLEDGE_QUEUE_DEMO_MODE", default=False),
            ),
            locks=LockSettings(
                backend=os.getenv("PLEDGE_QUEUE_LOCK_BACKEND", "sql").strip().lower(),
                lease_seconds=int(os.getenv("PLEDGE_QUEUE_LOCK_LEASE_SECONDS", "900")),
                match_lock_wait_seconds=float(
                    os.getenv("PLEDGE_QUEUE_MATCH_LOCK_WAIT_SECONDS", "10"),
                ),
            ),
            worker=WorkerContextSettings(
                worker_id=os.getenv("PLEDGE_QUEUE_WORKER_ID", f"pledge-queue-{hostname}"),
                machine_name=os.getenv("PLEDGE_QUEUE_MACHINE_NAME", hostname),
                client_user=os.getenv("PLEDGE_QUEUE_CLIENT_USER", _login_user()),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for structurally invalid values."""

        if self.backoff.base_seconds <= 0:
            raise ValueError("PLEDGE_QUEUE_BACKOFF_BASE_SECONDS must be > 0.")
        if self.backoff.max_seconds < self.backoff.base_seconds:
            raise ValueError(
                "PLEDGE_QUEUE_BACKOFF_MAX_SECONDS must be >= PLEDGE_QUEUE_BACKOFF_BASE_SECONDS.",
            )
        if self.duplicate_check.days_before < 0 or self.duplicate_check.days_after < 0:
            raise ValueError("Duplicate check window days must be >= 0.")
        if self.duplicate_check.amount_tolerance < 0:
            raise ValueError("PLEDGE_QUEUE_DUPLICATE_AMOUNT_TOLERANCE must be >= 0.")
        if self.duplicate_check.max_matches <= 0 or self.duplicate_check.search_limit <= 0:
            raise ValueError("Duplicate check max matches and search limit must be > 0.")
        if self.locks.backend not in SUPPORTED_LOCK_BACKENDS:
            raise ValueError(
                f"Unsupported PLEDGE_QUEUE_LOCK_BACKEND: {self.locks.backend!r}. "
                f"Expected one of: {', '.join(SUPPORTED_LOCK_BACKENDS)}.",
            )
        if self.locks.lease_seconds <= 0:
            raise ValueError("PLEDGE_QUEUE_LOCK_LEASE_SECONDS must be > 0.")
        if self.sky.timeout_seconds <= 0:
            raise ValueError("PLEDGE_QUEUE_SKY_TIMEOUT_SECONDS must be > 0.")
        if self.sky.max_rate_limit_retries < 0:
            raise ValueError("PLEDGE_QUEUE_SKY_MAX_RATE_LIMIT_RETRIES must be >= 0.")
        _validate_base_url(self.sky.base_url)

    def validate_for_worker(self) -> None:
        """Raise configuration error if a worker cannot talk to SKY."""

        self.validate()
        if not self.sky.access_token.strip():
            raise ValueError("PLEDGE_QUEUE_SKY_ACCESS_TOKEN is required to run a worker.")
        if not self.sky.subscription_key.strip():
            raise ValueError("PLEDGE_QUEUE_SKY_SUBSCRIPTION_KEY is required to run a worker.")


def _validate_base_url(value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            "Invalid SKY base URL: "
            f"{value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _login_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"


def _env_decimal(name: str, default: str) -> Decimal:
    raw = os.getenv(name, default).strip()
    try:
        return Decimal(raw)
    except InvalidOperation as error:
        raise ValueError(f"Invalid decimal value for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
