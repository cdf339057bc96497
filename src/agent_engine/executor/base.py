"""Executor interface invoked between lease checkpoints."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from agent_engine.queue.lease import LeaseLostError, LeaseProtocol
from agent_engine.queue.models import LogEntryWrite, LogLevel, TaskView
from agent_engine.queue.store import TaskStore


@dataclass(slots=True)
class StepContext:
    """Callbacks available to an executor while it holds a task's lease."""

    task: TaskView
    lease: LeaseProtocol
    store: TaskStore

    def checkpoint(self, step: str, partial_output: dict[str, Any] | None = None) -> None:
        """Persist progress; raises LeaseLostError once the task is no longer ours."""

        if not self.lease.checkpoint(self.task.id, step, partial_output):
            raise LeaseLostError(self.task.id, step)

    def log(
        self,
        event: str,
        data: dict[str, Any] | None = None,
        *,
        level: LogLevel = LogLevel.INFO,
        message: str | None = None,
    ) -> None:
        self.store.write_log(
            LogEntryWrite(
                task_id=self.task.id,
                event=event,
                level=level,
                message=message,
                data=data or {},
            ),
        )


class StepExecutor(Protocol):
    """Protocol implemented by per-task processing logic."""

    def run(self, task: TaskView, context: StepContext) -> dict[str, Any]:
        """Process one claimed task and return its output payload."""
