"""Polling scheduler that drives tasks through the lease protocol."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta

from agent_engine.executor.base import StepContext, StepExecutor
from agent_engine.queue.lease import LeaseLostError, LeaseProtocol
from agent_engine.queue.models import TaskStatus, TaskView
from agent_engine.queue.store import TaskStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CycleSummary:
    """Aggregate scheduler counters for CLI reporting."""

    cycles: int = 0
    fetched: int = 0
    claimed: int = 0
    lost_races: int = 0
    completed: int = 0
    failed: int = 0
    lease_lost: int = 0
    cycle_errors: int = 0

    def add(self, other: CycleSummary) -> None:
        self.cycles += other.cycles
        self.fetched += other.fetched
        self.claimed += other.claimed
        self.lost_races += other.lost_races
        self.completed += other.completed
        self.failed += other.failed
        self.lease_lost += other.lease_lost
        self.cycle_errors += other.cycle_errors


class PollScheduler:
    """Fetch admissible tasks, claim them one by one and run the executor.

    One scheduler runs per process. It keeps no state about tasks between
    cycles: every cycle re-reads candidates from the store, and the claim's
    conditional update is the only coordination with other instances.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        lease: LeaseProtocol,
        executor: StepExecutor,
        poll_interval_seconds: float = 10.0,
        batch_size: int = 10,
    ) -> None:
        self.store = store
        self.lease = lease
        self.executor = executor
        self.poll_interval_seconds = poll_interval_seconds
        self.batch_size = batch_size
        self._stop = threading.Event()

    @property
    def stale_after(self) -> timedelta:
        return self.lease.stale_after

    def request_stop(self) -> None:
        self._stop.set()

    def run_once(self) -> CycleSummary:
        """Run one poll cycle; never raises."""

        summary = CycleSummary(cycles=1)
        try:
            candidates = self.store.fetch_candidates(
                where=self.lease.admit(),
                limit=self.batch_size,
            )
        except Exception:
            logger.exception("Failed to fetch candidate tasks; skipping cycle")
            summary.cycle_errors = 1
            return summary

        summary.fetched = len(candidates)
        for task in candidates:
            if self._stop.is_set():
                break
            self._process(task, summary)
        return summary

    def run_forever(
        self,
        *,
        stop: threading.Event | None = None,
        max_cycles: int | None = None,
    ) -> CycleSummary:
        """Poll until the stop token is set (or `max_cycles` cycles have run)."""

        if stop is not None:
            self._stop = stop
        aggregate = CycleSummary()
        logger.info(
            "Worker %s starting: poll interval %.1fs, stale threshold %ds, batch %d",
            self.lease.worker_id,
            self.poll_interval_seconds,
            int(self.stale_after.total_seconds()),
            self.batch_size,
        )
        with self._signal_handlers():
            while not self._stop.is_set():
                aggregate.add(self.run_once())
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                self._stop.wait(timeout=self.poll_interval_seconds)
        logger.info("Worker %s stopped after %d cycles", self.lease.worker_id, aggregate.cycles)
        return aggregate

    def _process(self, task: TaskView, summary: CycleSummary) -> None:
        try:
            claimed = self.lease.claim(task)
        except Exception:
            logger.exception("Claim of task %s failed", task.id)
            return
        if not claimed:
            logger.debug("Task %s already claimed by another instance; skipping", task.id)
            summary.lost_races += 1
            return

        summary.claimed += 1
        if task.status == TaskStatus.ACTIVE:
            logger.warning("Recovered stale task %s (previous worker %s)", task.id, task.worker_id)
        logger.info("Processing task %s (type=%s)", task.id, task.type)

        try:
            context = StepContext(task=task, lease=self.lease, store=self.store)
            output = self.executor.run(task, context)
            if not self.lease.complete(task.id, output):
                raise LeaseLostError(task.id, "done")
        except LeaseLostError as exc:
            logger.warning("%s; leaving task to its current holder", exc)
            summary.lease_lost += 1
            return
        except Exception as exc:  # noqa: BLE001
            logger.error("Task %s failed: %s", task.id, exc)
            self._record_failure(task, exc, summary)
            return

        summary.completed += 1
        logger.info("Task %s completed", task.id)

    def _record_failure(self, task: TaskView, error: Exception, summary: CycleSummary) -> None:
        try:
            recorded = self.lease.fail(task.id, error)
        except Exception:
            logger.exception("Failed to mark task %s as failed", task.id)
            return
        if recorded:
            summary.failed += 1
        else:
            summary.lease_lost += 1
            logger.warning("Task %s was no longer active; failure not recorded", task.id)

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
            logger.info("Received %s; stopping after the current task", name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
