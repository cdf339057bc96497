"""Route claimed tasks to an executor by task type."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from agent_engine.executor.base import StepContext, StepExecutor
from agent_engine.queue.models import TaskView


class UnknownTaskTypeError(ValueError):
    pass


class TaskTypeRouter:
    """StepExecutor that delegates to the executor registered for `task.type`."""

    def __init__(
        self,
        executors: Mapping[str, StepExecutor],
        *,
        default: StepExecutor | None = None,
    ) -> None:
        self.executors = dict(executors)
        self.default = default

    def resolve(self, task_type: str) -> StepExecutor:
        executor = self.executors.get(task_type, self.default)
        if executor is None:
            supported = ", ".join(sorted(self.executors)) or "-"
            raise UnknownTaskTypeError(
                f"No executor registered for task type {task_type!r} (supported: {supported}).",
            )
        return executor

    def run(self, task: TaskView, context: StepContext) -> dict[str, Any]:
        return self.resolve(task.type).run(task, context)
