from __future__ import annotations

import json
from pathlib import Path

import allure
import httpx
from click.testing import CliRunner

from pledge_queue.engine import controllers
from pledge_queue.main import pledge_queue
from pledge_queue.sky.client import SkyGiftClient

pytestmark = [
    allure.epic("Pledge Queue"),
    allure.feature("CLI"),
]


def _request_file(tmp_path: Path, **overrides) -> Path:
    payload = {
        "constituent_id": "280",
        "amount": "150.00",
        "pledge_date": "2026-10-01",
        "fund_id": "12",
        "number_of_installments": 3,
    }
    payload.update(overrides)
    path = tmp_path / "request.json"
    path.write_text(json.dumps(payload), "utf-8")
    return path


def _invoke(*args: str):
    return CliRunner().invoke(pledge_queue, list(args))


def _sky_handler(request: httpx.Request) -> httpx.Response:
    if request.method == "POST" and request.url.path.endswith("/installments"):
        return httpx.Response(200, json={})
    if request.method == "POST":
        return httpx.Response(200, json={"id": "g-501"})
    if request.url.path.endswith("/installments"):
        return httpx.Response(200, json={"value": [{"sequence": 1}]})
    return httpx.Response(200, json={"value": []})


class _MockedSkyClient:
    @staticmethod
    def from_settings(settings, *, credentials, stop_event=None) -> SkyGiftClient:
        return SkyGiftClient(
            credentials=credentials,
            base_url=settings.base_url,
            transport=httpx.MockTransport(_sky_handler),
            stop_event=stop_event,
        )


def test_queue_enqueue_status_items_and_inspect(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    request_file = str(_request_file(tmp_path))

    enqueued = _invoke(
        "queue",
        "enqueue",
        "--db-path",
        db_path,
        "--workflow-id",
        "wf-1",
        "--request-file",
        request_file,
    )
    status = _invoke("queue", "status", "--db-path", db_path)
    items = _invoke("queue", "items", "--db-path", db_path, "--status", "pending")
    inspected = _invoke("queue", "inspect", "--db-path", db_path, "--item-id", "1")
    missing = _invoke("queue", "inspect", "--db-path", db_path, "--item-id", "99")

    assert enqueued.exit_code == 0, enqueued.output
    assert "Item enqueued: item_id=1 workflow_id=wf-1 type=PledgeCreate status=pending" in (
        enqueued.output
    )
    assert "Items: 1" in status.output
    assert "pending=1 processing=0 succeeded=0 failed=0" in status.output
    assert "amount=150.00" in items.output
    assert "note=Queued" in items.output
    assert "Status: pending" in inspected.output
    assert "Events: 1" in inspected.output
    assert "Item not found: 99" in missing.output


def test_queue_enqueue_rejects_invalid_request(tmp_path: Path) -> None:
    result = _invoke(
        "queue",
        "enqueue",
        "--db-path",
        str(tmp_path / "cli.db"),
        "--workflow-id",
        "wf-1",
        "--request-file",
        str(_request_file(tmp_path, fund_id="")),
    )

    assert result.exit_code == 1
    assert "FundId is required" in result.output


def test_queue_retry_requires_failed_item(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")
    _invoke(
        "queue",
        "enqueue",
        "--db-path",
        db_path,
        "--workflow-id",
        "wf-1",
        "--request-file",
        str(_request_file(tmp_path)),
    )

    result = _invoke("queue", "retry", "--db-path", db_path, "--item-id", "1")

    assert result.exit_code == 1
    assert "Only failed items can be retried manually" in result.output


def test_queue_worker_refuses_to_start_when_posting_disabled(
    tmp_path: Path,
    sky_env: Path,
    monkeypatch,
) -> None:
    monkeypatch.setenv("PLEDGE_QUEUE_POSTING_ENABLED", "false")

    result = _invoke("queue", "worker", "--db-path", str(tmp_path / "cli.db"))

    assert result.exit_code == 1
    assert "Posting disabled" in result.output


def test_queue_worker_requires_credentials(tmp_path: Path) -> None:
    result = _invoke("queue", "worker", "--db-path", str(tmp_path / "cli.db"))

    assert result.exit_code == 1
    assert "PLEDGE_QUEUE_SKY_ACCESS_TOKEN is required" in result.output


def test_queue_worker_submits_pending_item(
    tmp_path: Path,
    sky_env: Path,
    monkeypatch,
) -> None:
    monkeypatch.setattr(controllers, "SkyGiftClient", _MockedSkyClient)
    _invoke(
        "queue",
        "enqueue",
        "--workflow-id",
        "wf-1",
        "--request-file",
        str(_request_file(tmp_path)),
    )

    result = _invoke("queue", "worker", "--once")
    inspected = _invoke("queue", "inspect", "--item-id", "1")

    assert result.exit_code == 0, result.output
    assert "Worker loop started." in result.output
    assert (
        "Queue worker summary: claimed=1 succeeded=1 failed=0 retry_scheduled=0 "
        "suppressed=0 skipped=0"
    ) in result.output
    assert "Status: succeeded" in inspected.output
    assert "Gift id: g-501" in inspected.output
    assert "Worker: worker-test" in inspected.output
    assert sky_env.exists()


def test_outbox_enqueue_inspect_and_clear(tmp_path: Path, sky_env: Path) -> None:
    enqueued = _invoke(
        "outbox",
        "enqueue",
        "--workflow-id",
        "wf-9",
        "--request-file",
        str(_request_file(tmp_path)),
        "--error",
        "HTTP 503: down",
    )
    before = _invoke("outbox", "inspect", "--workflow-id", "wf-9")
    cleared = _invoke("outbox", "clear", "--workflow-id", "wf-9")
    missing = _invoke("outbox", "inspect", "--workflow-id", "nope")

    assert enqueued.exit_code == 0, enqueued.output
    assert "Workflow queued for outbox retry: wf-9" in enqueued.output
    assert "Status: api_failed" in before.output
    assert "Error: HTTP 503: down" in before.output
    assert "Outbox retries: 0" in before.output
    assert cleared.exit_code == 1
    assert "not suppressed" in cleared.output
    assert "Workflow not found: nope" in missing.output


def test_outbox_worker_respects_disabled_flag(sky_env: Path, monkeypatch) -> None:
    monkeypatch.setenv("PLEDGE_QUEUE_OUTBOX_ENABLED", "false")

    result = _invoke("outbox", "worker", "--once")

    assert result.exit_code == 0
    assert "Outbox retry is disabled" in result.output


def test_match_admin_commands(tmp_path: Path) -> None:
    db_path = str(tmp_path / "cli.db")

    donor = _invoke("match", "set-donor", "--db-path", db_path, "--constituent-id", " 999 ")
    created = _invoke(
        "match",
        "create",
        "--db-path",
        db_path,
        "--name",
        "Spring",
        "--budget",
        "250.50",
    )
    invalid = _invoke("match", "create", "--db-path", db_path, "--name", "X", "--budget", "abc")
    deactivated = _invoke("match", "deactivate", "--db-path", db_path, "--challenge-id", "1")
    listed = _invoke("match", "list", "--db-path", db_path)
    unknown = _invoke("match", "deactivate", "--db-path", db_path, "--challenge-id", "404")

    assert "Anonymous match donor set: 999" in donor.output
    assert "Challenge created: 1 name=Spring budget=250.50" in created.output
    assert invalid.exit_code == 1
    assert "Invalid budget amount" in invalid.output
    assert "Challenge deactivated: 1" in deactivated.output
    assert "Anonymous match donor: 999" in listed.output
    assert "Challenges: 1" in listed.output
    assert "active=False" in listed.output
    assert "remaining=250.50" in listed.output
    assert unknown.exit_code == 1


def test_version_option() -> None:
    result = _invoke("--version")

    assert result.exit_code == 0
    assert "pledge-queue" in result.output
