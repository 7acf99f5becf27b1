"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Callable
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from pledge_queue.engine.models import WorkItemCreate
from pledge_queue.sky.models import TRANSACTION_TYPE_PLEDGE_CREATE, CreatePledgeRequest


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop PLEDGE_QUEUE_* variables from the developer shell."""
    for name in list(os.environ):
        if name.startswith("PLEDGE_QUEUE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def pledge_request() -> Callable[..., CreatePledgeRequest]:
    def _build(**overrides) -> CreatePledgeRequest:
        values = {
            "constituent_id": "280",
            "amount": Decimal("150.00"),
            "pledge_date": date(2026, 10, 1),
            "fund_id": "12",
            "number_of_installments": 3,
        }
        values.update(overrides)
        return CreatePledgeRequest(**values)

    return _build


@pytest.fixture()
def work_item() -> Callable[..., WorkItemCreate]:
    def _build(workflow_id: str, request: CreatePledgeRequest | None = None) -> WorkItemCreate:
        request = request or CreatePledgeRequest(
            constituent_id="280",
            amount=Decimal("150.00"),
            pledge_date=date(2026, 10, 1),
            fund_id="12",
        )
        return WorkItemCreate(
            workflow_id=workflow_id,
            transaction_type=TRANSACTION_TYPE_PLEDGE_CREATE,
            request_json=request.to_json(),
            constituent_id=request.constituent_id,
            amount_cents=request.amount_cents,
            pledge_date=request.pledge_date,
            fund_id=request.fund_id,
        )

    return _build


@pytest.fixture()
def sky_env(monkeypatch, tmp_path: Path) -> Path:
    """Environment for a worker that can build its SKY client."""
    db_path = tmp_path / "pledge-queue.db"
    monkeypatch.setenv("PLEDGE_QUEUE_DB_PATH", str(db_path))
    monkeypatch.setenv("PLEDGE_QUEUE_SKY_ACCESS_TOKEN", "token")
    monkeypatch.setenv("PLEDGE_QUEUE_SKY_SUBSCRIPTION_KEY", "subscription")
    monkeypatch.setenv("PLEDGE_QUEUE_WORKER_ID", "worker-test")
    return db_path
