from __future__ import annotations

from decimal import Decimal
from pathlib import Path

import allure
import pytest

from pledge_queue.config import (
    MAX_BATCH_SIZE,
    BackoffSettings,
    LockSettings,
    OutboxSettings,
    ProcessingSettings,
    Settings,
    SkyApiSettings,
)
from pledge_queue.policy import (
    DEMO_MODE_REASON,
    POSTING_DISABLED_REASON,
    SettingsPolicyProvider,
    StaticPolicyProvider,
)

pytestmark = [
    allure.epic("Pledge Queue"),
    allure.feature("Configuration"),
]


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".pledge_queue.db")
    assert settings.processing.batch_size == 10
    assert settings.processing.max_attempts == 5
    assert settings.processing.stale_processing_minutes == 30
    assert settings.backoff.base_seconds == 60
    assert settings.backoff.max_seconds == 1_800
    assert settings.outbox.max_attempts == 8
    assert settings.duplicate_check.amount_tolerance == Decimal("0.01")
    assert settings.locks.backend == "sql"
    assert settings.posting.posting_enabled is True
    assert settings.posting.demo_mode is False


def test_from_env_reads_overrides(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("PLEDGE_QUEUE_BATCH_SIZE", "25")
    monkeypatch.setenv("PLEDGE_QUEUE_MAX_ATTEMPTS", "3")
    monkeypatch.setenv("PLEDGE_QUEUE_DUPLICATE_AMOUNT_TOLERANCE", "1.50")
    monkeypatch.setenv("PLEDGE_QUEUE_POSTING_ENABLED", "off")
    monkeypatch.setenv("PLEDGE_QUEUE_LOCK_BACKEND", " Memory ")
    monkeypatch.setenv("PLEDGE_QUEUE_WORKER_ID", "worker-a")

    settings = Settings.from_env(db_path=tmp_path / "explicit.db")

    assert settings.db_path == tmp_path / "explicit.db"
    assert settings.processing.batch_size == 25
    assert settings.processing.max_attempts == 3
    assert settings.duplicate_check.amount_tolerance == Decimal("1.50")
    assert settings.posting.posting_enabled is False
    assert settings.locks.backend == "memory"
    assert settings.worker.worker_id == "worker-a"


def test_invalid_boolean_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("PLEDGE_QUEUE_DEMO_MODE", "maybe")

    with pytest.raises(ValueError, match="PLEDGE_QUEUE_DEMO_MODE"):
        Settings.from_env()


def test_invalid_decimal_is_rejected(monkeypatch) -> None:
    monkeypatch.setenv("PLEDGE_QUEUE_DUPLICATE_AMOUNT_TOLERANCE", "one cent")

    with pytest.raises(ValueError, match="Invalid decimal"):
        Settings.from_env()


def test_processing_settings_are_clamped() -> None:
    normalized = ProcessingSettings(
        poll_interval_seconds=0,
        batch_size=10_000,
        stale_processing_minutes=0,
        max_attempts=-1,
        busy_delay_seconds=-2.0,
    ).normalized()

    assert normalized.poll_interval_seconds == 1
    assert normalized.batch_size == MAX_BATCH_SIZE
    assert normalized.stale_processing_minutes == 1
    assert normalized.max_attempts == 1
    assert normalized.busy_delay_seconds == 0.0


def test_outbox_settings_are_clamped() -> None:
    normalized = OutboxSettings(poll_interval_seconds=1, batch_size=100).normalized()

    assert normalized.poll_interval_seconds == 10
    assert normalized.batch_size == 25


def test_validate_rejects_max_backoff_below_base() -> None:
    settings = Settings(backoff=BackoffSettings(base_seconds=60, max_seconds=30))

    with pytest.raises(ValueError, match="BACKOFF_MAX_SECONDS"):
        settings.validate()


def test_validate_rejects_unknown_lock_backend() -> None:
    settings = Settings(locks=LockSettings(backend="redis"))

    with pytest.raises(ValueError, match="Unsupported PLEDGE_QUEUE_LOCK_BACKEND"):
        settings.validate()


def test_validate_rejects_relative_base_url() -> None:
    settings = Settings(sky=SkyApiSettings(base_url="api.sky.blackbaud.com"))

    with pytest.raises(ValueError, match="Invalid SKY base URL"):
        settings.validate()


def test_validate_for_worker_requires_credentials() -> None:
    with pytest.raises(ValueError, match="ACCESS_TOKEN"):
        Settings().validate_for_worker()

    with pytest.raises(ValueError, match="SUBSCRIPTION_KEY"):
        Settings(sky=SkyApiSettings(access_token="token")).validate_for_worker()

    Settings(sky=SkyApiSettings(access_token="token", subscription_key="key")).validate_for_worker()


def test_settings_policy_prefers_demo_mode_reason(monkeypatch) -> None:
    monkeypatch.setenv("PLEDGE_QUEUE_DEMO_MODE", "true")
    monkeypatch.setenv("PLEDGE_QUEUE_POSTING_ENABLED", "false")

    policy = SettingsPolicyProvider(Settings.from_env().posting)

    assert policy.is_submission_allowed() == (False, DEMO_MODE_REASON)


def test_settings_policy_reports_posting_disabled(monkeypatch) -> None:
    monkeypatch.setenv("PLEDGE_QUEUE_POSTING_ENABLED", "0")

    policy = SettingsPolicyProvider(Settings.from_env().posting)

    assert policy.is_submission_allowed() == (False, POSTING_DISABLED_REASON)


def test_static_policy_hides_reason_when_allowed() -> None:
    assert StaticPolicyProvider(allowed=True, reason="ignored").is_submission_allowed() == (
        True,
        None,
    )
    assert StaticPolicyProvider(allowed=False, reason="frozen").is_submission_allowed() == (
        False,
        "frozen",
    )
