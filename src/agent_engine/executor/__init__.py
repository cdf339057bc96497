"""Step executors invoked by the poll scheduler."""

from agent_engine.executor.base import StepContext, StepExecutor
from agent_engine.executor.commit import CommitStepExecutor, GitHubCommitter
from agent_engine.executor.echo import EchoStepExecutor
from agent_engine.executor.reasoning import GeminiClient, ReasoningError, ReasoningStepExecutor
from agent_engine.executor.routing import TaskTypeRouter, UnknownTaskTypeError

__all__ = [
    "CommitStepExecutor",
    "EchoStepExecutor",
    "GeminiClient",
    "GitHubCommitter",
    "ReasoningError",
    "ReasoningStepExecutor",
    "StepContext",
    "StepExecutor",
    "TaskTypeRouter",
    "UnknownTaskTypeError",
]
