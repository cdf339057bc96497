"""Controllers for engine CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import timedelta

from sqlalchemy.exc import ArgumentError

from agent_engine.config import Settings
from agent_engine.executor import (
    CommitStepExecutor,
    EchoStepExecutor,
    GeminiClient,
    GitHubCommitter,
    ReasoningStepExecutor,
    TaskTypeRouter,
)
from agent_engine.queue.health import ProbeResult, check_reasoning, check_store
from agent_engine.queue.lease import LeaseProtocol
from agent_engine.queue.models import TaskCreate, TaskStatus
from agent_engine.queue.scheduler import PollScheduler
from agent_engine.queue.store import TaskStore


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    database_url: str | None
    once: bool
    max_cycles: int | None = None


@dataclass(slots=True)
class EnqueueCommand:
    """CLI input for task creation."""

    database_url: str | None
    task_type: str
    input_json: str | None
    task_id: str | None = None


@dataclass(slots=True)
class ListTasksCommand:
    database_url: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    database_url: str | None
    task_id: str


@dataclass(slots=True)
class HealthCommand:
    database_url: str | None
    reasoning: bool = False


@dataclass(slots=True)
class HealthResult:
    """Health report to render in CLI."""

    lines: list[str]
    success: bool


class EngineCliController:
    """Coordinates worker, queue and inspection CLI operations."""

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.database_url)
        settings.validate_for_worker()
        with ExitStack() as stack:
            store = stack.enter_context(_store(settings))
            client = GeminiClient(
                api_key=settings.reasoning.api_key,
                model=settings.reasoning.model,
                base_url=settings.reasoning.base_url,
                timeout_seconds=settings.reasoning.timeout_seconds,
            )
            stack.callback(client.close)
            committer = None
            if settings.github.is_configured:
                committer = GitHubCommitter(
                    token=settings.github.token,
                    owner=settings.github.repo_owner,
                    repo=settings.github.repo_name,
                    branch=settings.github.branch,
                    api_url=settings.github.api_url,
                )
                stack.callback(committer.close)

            scheduler = PollScheduler(
                store=store,
                lease=LeaseProtocol(
                    store=store,
                    worker_id=settings.worker.worker_id,
                    stale_after=timedelta(milliseconds=settings.worker.stale_threshold_ms),
                ),
                executor=build_executor(
                    client=client,
                    committer=committer,
                    project_name=settings.reasoning.project_name,
                ),
                poll_interval_seconds=settings.worker.poll_interval_seconds,
                batch_size=settings.worker.batch_size,
            )
            summary = (
                scheduler.run_once()
                if command.once
                else scheduler.run_forever(max_cycles=command.max_cycles)
            )

        return [
            "Worker summary: "
            f"cycles={summary.cycles} fetched={summary.fetched} claimed={summary.claimed} "
            f"completed={summary.completed} failed={summary.failed} "
            f"lost_races={summary.lost_races} lease_lost={summary.lease_lost} "
            f"cycle_errors={summary.cycle_errors}",
        ]

    def enqueue(self, command: EnqueueCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.database_url)
        settings.validate_for_store()
        task_input = _parse_input(command.input_json)
        with _store(settings) as store:
            task = store.enqueue_task(
                TaskCreate(type=command.task_type, task_id=command.task_id, input=task_input),
            )
        return [f"Task enqueued: task_id={task.id} type={task.type} status={task.status.value}"]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.database_url)
        settings.validate_for_store()
        status_filter = _parse_status(command.status)
        with _store(settings) as store:
            tasks = store.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.id} type={task.type} status={task.status.value} "
                f"step={task.current_step or '-'} worker={task.worker_id or '-'} "
                f"created_at={task.created_at.isoformat()} "
                f"updated_at={task.updated_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(database_url=command.database_url)
        settings.validate_for_store()
        with _store(settings) as store:
            details = store.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.id}",
            f"Type: {task.type}",
            f"Status: {task.status.value}",
            f"Step: {task.current_step or '-'}",
            f"Worker: {task.worker_id or '-'}",
            f"Input: {json.dumps(task.input or {}, ensure_ascii=False, sort_keys=True)}",
            f"Output: {json.dumps(task.output or {}, ensure_ascii=False, sort_keys=True)}",
            f"Logs: {len(details.logs)}",
        ]
        for entry in details.logs:
            lines.append(
                f"  {entry.created_at.isoformat()} {entry.level.value} {entry.event} "
                f"{json.dumps(entry.data, ensure_ascii=False, sort_keys=True)}",
            )
        return lines

    def health(self, command: HealthCommand) -> HealthResult:
        settings = Settings.from_env(database_url=command.database_url)
        settings.validate_for_store()
        probes = [
            check_store(
                settings.store.database_url,
                busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
            ),
        ]

        if command.reasoning:
            if not settings.reasoning.api_key:
                return HealthResult(
                    lines=[*_probe_lines(probes), "reasoning: not configured"],
                    success=False,
                )
            with GeminiClient(
                api_key=settings.reasoning.api_key,
                model=settings.reasoning.model,
                base_url=settings.reasoning.base_url,
                timeout_seconds=settings.reasoning.timeout_seconds,
            ) as client:
                probes.append(check_reasoning(client))

        return HealthResult(
            lines=_probe_lines(probes),
            success=all(probe.ok for probe in probes),
        )


def build_executor(
    *,
    client: GeminiClient,
    committer: GitHubCommitter | None,
    project_name: str,
) -> TaskTypeRouter:
    """Executor used by the worker: known types by name, everything else via reasoning."""

    return TaskTypeRouter(
        {
            "commit_file": CommitStepExecutor(committer=committer),
            "echo": EchoStepExecutor(),
        },
        default=ReasoningStepExecutor(client=client, project_name=project_name),
    )


def _probe_lines(probes: list[ProbeResult]) -> list[str]:
    return [f"{probe.name}: {probe.detail}" for probe in probes]


def _parse_input(raw: str | None) -> dict[str, object] | None:
    if raw is None or not raw.strip():
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Task input must be valid JSON: {error}") from error
    if not isinstance(parsed, dict):
        raise ValueError("Task input must be a JSON object.")
    return parsed


def _parse_status(raw: str | None) -> TaskStatus | None:
    if raw is None:
        return None
    try:
        return TaskStatus(raw.lower())
    except ValueError as error:
        raise ValueError(f"Unsupported task status: {raw!r}") from error


@contextmanager
def _store(settings: Settings) -> Iterator[TaskStore]:
    try:
        store = TaskStore(
            settings.store.database_url,
            busy_timeout_ms=settings.store.sqlite_busy_timeout_ms,
        )
    except (ArgumentError, ImportError) as error:
        raise ValueError(
            f"Cannot open task store {settings.store.database_url!r}: {error}",
        ) from error
    try:
        store.init_schema()
        yield store
    finally:
        store.close()
