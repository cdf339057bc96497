"""Lease protocol: claim, checkpoint, complete and fail as conditional updates.

A task is leased to whichever instance last moved it to `active`; the lease
stays valid while `updated_at` is younger than the stale threshold. Fresh
tasks and abandoned ones are admitted by the same predicate, so the fetch
that finds work and the update that claims it can never disagree. Later
writes also require the recorded `worker_id`, so a holder that was
reclaimed after going stale cannot touch the task again.
"""

from __future__ import annotations

import logging
import traceback
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import ColumnElement, and_, or_
from sqlmodel import col

from agent_engine.queue.models import LogEntryWrite, LogLevel, TaskStatus, TaskView
from agent_engine.queue.store import TaskStore
from agent_engine.storage.common import to_db_datetime, utc_now
from agent_engine.storage.sqlmodel_models import AgentTask

logger = logging.getLogger(__name__)

CLAIMED_STEP = "claimed"
DONE_STEP = "done"


class LeaseLostError(RuntimeError):
    """Raised when a task is no longer active while its holder still works on it."""

    def __init__(self, task_id: str, step: str) -> None:
        super().__init__(f"Lease lost for task {task_id} at step {step!r}")
        self.task_id = task_id
        self.step = step


def admit_predicate(*, now: datetime, stale_after: timedelta) -> ColumnElement[bool]:
    """Rows that may be claimed: pending, or active with an expired heartbeat."""

    stale_before = to_db_datetime(now - stale_after)
    return or_(
        col(AgentTask.status) == TaskStatus.PENDING.value,
        and_(
            col(AgentTask.status) == TaskStatus.ACTIVE.value,
            col(AgentTask.updated_at) < stale_before,
        ),
    )


def _held_predicate(worker_id: str) -> ColumnElement[bool]:
    """Rows whose lease still belongs to `worker_id`."""

    return and_(
        col(AgentTask.status) == TaskStatus.ACTIVE.value,
        col(AgentTask.worker_id) == worker_id,
    )


class LeaseProtocol:
    """Task state transitions for one worker instance."""

    def __init__(
        self,
        *,
        store: TaskStore,
        worker_id: str,
        stale_after: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.worker_id = worker_id
        self.stale_after = stale_after
        self.clock = clock

    def admit(self, now: datetime | None = None) -> ColumnElement[bool]:
        return admit_predicate(now=now or self.clock(), stale_after=self.stale_after)

    def claim(self, task: TaskView) -> bool:
        """Try to become the sole lease holder; False means another instance won."""

        now = self.clock()
        recovered = task.status == TaskStatus.ACTIVE
        affected = self.store.conditional_update(
            task_id=task.id,
            expected=self.admit(now),
            values={
                "status": TaskStatus.ACTIVE,
                "current_step": CLAIMED_STEP,
                "worker_id": self.worker_id,
                "updated_at": now,
            },
            log=LogEntryWrite(
                task_id=task.id,
                event="claimed",
                level=LogLevel.WARN if recovered else LogLevel.INFO,
                data={
                    "worker_id": self.worker_id,
                    "recovered": recovered,
                    "previous_worker_id": task.worker_id,
                },
            ),
        )
        return affected == 1

    def checkpoint(
        self,
        task_id: str,
        step: str,
        partial_output: dict[str, Any] | None = None,
    ) -> bool:
        """Record progress and refresh the heartbeat before the next side effect."""

        values: dict[str, Any] = {"current_step": step, "updated_at": self.clock()}
        if partial_output:
            current = self.store.get_task(task_id=task_id)
            merged = dict(current.output or {}) if current is not None else {}
            merged.update(partial_output)
            values["output"] = merged
        affected = self.store.conditional_update(
            task_id=task_id,
            expected=_held_predicate(self.worker_id),
            values=values,
            log=LogEntryWrite(task_id=task_id, event="checkpoint", data={"step": step}),
        )
        return affected == 1

    def complete(self, task_id: str, output: dict[str, Any]) -> bool:
        affected = self.store.conditional_update(
            task_id=task_id,
            expected=_held_predicate(self.worker_id),
            values={
                "status": TaskStatus.COMPLETED,
                "current_step": DONE_STEP,
                "output": output,
                "updated_at": self.clock(),
            },
            log=LogEntryWrite(
                task_id=task_id,
                event="completed",
                data={"worker_id": self.worker_id},
            ),
        )
        return affected == 1

    def fail(self, task_id: str, error: BaseException | str) -> bool:
        """Move the task to `failed`, recording the error message and trace."""

        message, trace = _describe_error(error)
        affected = self.store.conditional_update(
            task_id=task_id,
            expected=_held_predicate(self.worker_id),
            values={
                "status": TaskStatus.FAILED,
                "output": {"error": message, "trace": trace},
                "updated_at": self.clock(),
            },
            log=LogEntryWrite(
                task_id=task_id,
                event="failed",
                level=LogLevel.ERROR,
                message=message,
                data={"worker_id": self.worker_id},
            ),
        )
        return affected == 1


def _describe_error(error: BaseException | str) -> tuple[str, str]:
    if isinstance(error, str):
        return error, ""
    message = str(error) or type(error).__name__
    trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
    return message, trace
