"""Local deterministic executor for development runs and tests."""

from __future__ import annotations

from typing import Any

from agent_engine.executor.base import StepContext
from agent_engine.queue.models import TaskView


class EchoStepExecutor:
    """Return the task input unchanged, after one checkpoint."""

    def run(self, task: TaskView, context: StepContext) -> dict[str, Any]:
        context.checkpoint("echo")
        return {"echo": task.input or {}, "type": task.type}
