from __future__ import annotations

import threading
import time

import allure
import pytest

from pledge_queue.engine.host import PreflightError, ProcessorHost, default_preflight
from pledge_queue.engine.models import ProcessingSummary
from pledge_queue.policy import StaticPolicyProvider
from pledge_queue.sky.auth import StaticCredentialProvider

pytestmark = [
    allure.epic("Pledge Queue"),
    allure.feature("Worker Host"),
]


class _FakeProcessor:
    def __init__(self, *summaries: ProcessingSummary | Exception) -> None:
        self.summaries = list(summaries)
        self.stop_event = threading.Event()
        self.cycles = 0

    def run_cycle(self) -> ProcessingSummary:
        self.cycles += 1
        outcome = self.summaries.pop(0) if self.summaries else ProcessingSummary()
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _host(processor: _FakeProcessor, **kwargs) -> ProcessorHost:
    kwargs.setdefault("policy", StaticPolicyProvider())
    return ProcessorHost(
        processor=processor,
        poll_interval_seconds=1,
        busy_delay_seconds=0,
        **kwargs,
    )


def test_serve_stops_after_max_cycles_and_accumulates_totals() -> None:
    processor = _FakeProcessor(
        ProcessingSummary(claimed=2, succeeded=1, failed=1, retry_scheduled=1),
        ProcessingSummary(claimed=1, succeeded=1),
        ProcessingSummary(claimed=1, failed=1, suppressed=1),
    )
    lines: list[str] = []
    states: list[bool] = []
    host = _host(processor, on_log_line=lines.append, on_state_changed=states.append)

    totals = host.serve(max_cycles=3)

    assert processor.cycles == 3
    assert (totals.claimed, totals.succeeded, totals.failed) == (4, 2, 2)
    assert (totals.retry_scheduled, totals.suppressed) == (1, 1)
    assert states == [True, False]
    assert lines[0] == "Worker loop started."
    assert lines[-1] == "Worker loop stopped."
    assert "Processed 2 item(s): succeeded=1 retry_scheduled=1 suppressed=0 skipped=0" in lines


def test_run_once_skips_tick_when_posting_disabled() -> None:
    processor = _FakeProcessor(ProcessingSummary(claimed=1, succeeded=1))
    lines: list[str] = []
    host = _host(
        processor,
        policy=StaticPolicyProvider(allowed=False, reason="Demo mode"),
        on_log_line=lines.append,
    )

    summary = host.run_once()

    assert summary.claimed == 0
    assert processor.cycles == 0
    assert lines == ["Suppressed: Demo mode"]


def test_serve_refuses_to_start_when_preflight_fails() -> None:
    policy = StaticPolicyProvider(allowed=False, reason="Posting off")
    lines: list[str] = []
    states: list[bool] = []
    processor = _FakeProcessor()
    host = _host(
        processor,
        policy=policy,
        preflight=default_preflight(policy, None),
        on_log_line=lines.append,
        on_state_changed=states.append,
    )

    with pytest.raises(PreflightError, match="Posting disabled: Posting off"):
        host.serve(max_cycles=1)

    assert processor.cycles == 0
    assert states == []
    assert lines == ["Preflight failed: Posting disabled: Posting off"]


def test_preflight_requires_a_credential() -> None:
    preflight = default_preflight(
        StaticPolicyProvider(),
        StaticCredentialProvider(access_token="token", subscription_key=" "),
    )

    with pytest.raises(PreflightError, match="subscription key is not configured"):
        preflight()


def test_loop_error_is_logged_and_loop_continues() -> None:
    processor = _FakeProcessor(RuntimeError("database is locked"), ProcessingSummary())
    lines: list[str] = []
    host = _host(processor, on_log_line=lines.append)

    host.serve(max_cycles=2)

    assert processor.cycles == 2
    assert "Loop error: database is locked" in lines


def test_start_and_stop_background_thread() -> None:
    processor = _FakeProcessor()
    states: list[bool] = []
    host = _host(processor, on_state_changed=states.append, thread_name="pledge-queue-test")

    host.start()
    deadline = time.monotonic() + 5
    while processor.cycles == 0 and time.monotonic() < deadline:
        time.sleep(0.01)
    assert host.is_running
    assert "pledge-queue-test" in [thread.name for thread in threading.enumerate()]

    host.stop(timeout=5)

    assert not host.is_running
    assert processor.cycles >= 1
    assert states == [True, False]
    assert processor.stop_event.is_set()


def test_stop_without_start_is_a_no_op() -> None:
    host = _host(_FakeProcessor())

    host.stop()

    assert not host.is_running
