"""Worker host: polling cadence, start/stop lifecycle and state notifications."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from pledge_queue.engine.models import ProcessingSummary
from pledge_queue.engine.processor import ItemProcessor
from pledge_queue.policy import PolicyProvider
from pledge_queue.sky.auth import CredentialProvider, CredentialUnavailableError

logger = logging.getLogger(__name__)

DEFAULT_STOP_TIMEOUT_SECONDS = 30.0


class PreflightError(RuntimeError):
    """The host refused to start: posting disabled or credentials unavailable."""


def default_preflight(
    policy: PolicyProvider,
    credentials: CredentialProvider | None,
) -> Callable[[], None]:
    """Preflight that checks the posting policy and obtains one credential."""

    def _preflight() -> None:
        allowed, reason = policy.is_submission_allowed()
        if not allowed:
            raise PreflightError(f"Posting disabled: {reason or 'no reason given'}")
        if credentials is None:
            return
        try:
            credentials.get_credential()
        except CredentialUnavailableError as error:
            raise PreflightError(f"SKY credential unavailable: {error}") from error

    return _preflight


class ProcessorHost:
    """Runs ``ItemProcessor.run_cycle`` on a loop until stopped.

    A non-empty batch is followed by a short ``busy_delay_seconds`` pause so a
    backlog drains quickly; an empty one by the full poll interval. Every sleep
    waits on ``stop_event``, which is also shared with the processor and the SKY
    client so ``stop()`` interrupts Retry-After waits too.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        processor: ItemProcessor,
        poll_interval_seconds: float,
        policy: PolicyProvider,
        busy_delay_seconds: float = 1.0,
        initial_delay_seconds: float = 0.0,
        preflight: Callable[[], None] | None = None,
        on_state_changed: Callable[[bool], None] | None = None,
        on_log_line: Callable[[str], None] | None = None,
        stop_event: threading.Event | None = None,
        thread_name: str = "pledge-queue-worker",
    ) -> None:
        self.processor = processor
        self.poll_interval_seconds = max(1.0, poll_interval_seconds)
        self.policy = policy
        self.busy_delay_seconds = max(0.0, busy_delay_seconds)
        self.initial_delay_seconds = max(0.0, initial_delay_seconds)
        self.preflight = preflight
        self._on_state_changed = on_state_changed or (lambda _running: None)
        self._on_log_line = on_log_line or (lambda _line: None)
        self._stop = stop_event or processor.stop_event
        self._thread_name = thread_name
        self._thread: threading.Thread | None = None
        self._running = False
        self._mutex = threading.Lock()
        self.totals = ProcessingSummary()

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Run preflight, then start the loop on a daemon thread."""

        with self._mutex:
            if self._running:
                return
            self._run_preflight()
            self._stop.clear()
            self._set_running(True)
            self._thread = threading.Thread(
                target=self._loop,
                daemon=True,
                name=self._thread_name,
            )
            self._thread.start()

    def stop(self, timeout: float = DEFAULT_STOP_TIMEOUT_SECONDS) -> None:
        """Request cooperative stop and wait for the current item to finish."""

        with self._mutex:
            thread = self._thread
            if thread is None:
                return
            self._stop.set()
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning("Worker thread did not stop within %.1fs", timeout)
            self._thread = None
            self._set_running(False)

    def serve(self, *, max_cycles: int | None = None) -> ProcessingSummary:
        """Run the loop in the calling thread until a signal or ``max_cycles``."""

        self._run_preflight()
        self._stop.clear()
        self._set_running(True)
        try:
            with self._signal_handlers():
                self._loop(max_cycles=max_cycles)
        finally:
            self._set_running(False)
        return self.totals

    def run_once(self) -> ProcessingSummary:
        """One tick: re-check the policy, then claim and drain a batch."""

        allowed, reason = self.policy.is_submission_allowed()
        if not allowed:
            self._log(f"Suppressed: {reason or 'posting disabled'}")
            return ProcessingSummary()
        summary = self.processor.run_cycle()
        self.totals.add(summary)
        if summary.claimed:
            self._log(
                f"Processed {summary.claimed} item(s): succeeded={summary.succeeded} "
                f"retry_scheduled={summary.retry_scheduled} suppressed={summary.suppressed} "
                f"skipped={summary.skipped}",
            )
        return summary

    def _loop(self, max_cycles: int | None = None) -> None:
        self._log("Worker loop started.")
        cycles = 0
        if self.initial_delay_seconds and self._stop.wait(timeout=self.initial_delay_seconds):
            self._log("Worker loop stopped.")
            return
        while not self._stop.is_set():
            try:
                summary = self.run_once()
                delay = self.busy_delay_seconds if summary.claimed else self.poll_interval_seconds
            except Exception as error:
                logger.exception("Worker loop error")
                self._log(f"Loop error: {error}")
                delay = self.poll_interval_seconds
            cycles += 1
            if max_cycles is not None and cycles >= max_cycles:
                break
            self._stop.wait(timeout=delay)
        self._log("Worker loop stopped.")

    def _run_preflight(self) -> None:
        if self.preflight is None:
            return
        try:
            self.preflight()
        except PreflightError as error:
            self._log(f"Preflight failed: {error}")
            raise

    def _set_running(self, running: bool) -> None:
        if self._running == running:
            return
        self._running = running
        self._on_state_changed(running)

    def _log(self, line: str) -> None:
        logger.info("%s", line)
        self._on_log_line(line)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Received %s; stopping after the current item", name)
            self._stop.set()

        installed = True
        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            installed = False
        try:
            yield
        finally:
            if installed:
                signal.signal(signal.SIGINT, original_sigint)
                signal.signal(signal.SIGTERM, original_sigterm)
