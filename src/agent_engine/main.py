"""CLI entrypoint for agent-engine."""

import logging
from collections.abc import Callable
from typing import TypeVar

import rich_click as click
from dotenv import load_dotenv

from agent_engine import __version__
from agent_engine.queue.controllers import (
    EngineCliController,
    EnqueueCommand,
    HealthCommand,
    InspectTaskCommand,
    ListTasksCommand,
    WorkerCommand,
)

CommandT = TypeVar("CommandT")
ResultT = TypeVar("ResultT")

click.rich_click.USE_MARKDOWN = True
ENGINE_CONTROLLER = EngineCliController()

_DATABASE_URL_HELP = "Task store URL, e.g. sqlite:///tasks.db. Overrides AGENT_ENGINE_DATABASE_URL."


@click.group()
@click.version_option(version=__version__, prog_name="agent-engine")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Console log level.",
)
def agent_engine(log_level: str) -> None:
    """Crash-tolerant task queue worker."""

    load_dotenv(override=False)
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@agent_engine.command("worker")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option("--once", is_flag=True, default=False, help="Run a single poll cycle and exit.")
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many poll cycles (default: run until SIGINT/SIGTERM).",
)
def worker(database_url: str | None, once: bool, max_cycles: int | None) -> None:
    """Poll the task store, claim tasks and process them."""

    _emit_lines(
        _run(
            ENGINE_CONTROLLER.run_worker,
            WorkerCommand(database_url=database_url, once=once, max_cycles=max_cycles),
        ),
    )


@agent_engine.command("enqueue")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option("--type", "task_type", required=True, help="Task type, e.g. echo or commit_file.")
@click.option("--input", "input_json", default=None, help="Task input as a JSON object.")
@click.option("--task-id", default=None, help="Explicit task id (default: random uuid).")
def enqueue(
    database_url: str | None,
    task_type: str,
    input_json: str | None,
    task_id: str | None,
) -> None:
    """Create a pending task."""

    _emit_lines(
        _run(
            ENGINE_CONTROLLER.enqueue,
            EnqueueCommand(
                database_url=database_url,
                task_type=task_type,
                input_json=input_json,
                task_id=task_id,
            ),
        ),
    )


@agent_engine.command("tasks")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option(
    "--status",
    type=click.Choice(["pending", "active", "completed", "failed"], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks(database_url: str | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _emit_lines(
        _run(
            ENGINE_CONTROLLER.list_tasks,
            ListTasksCommand(database_url=database_url, status=status, limit=limit),
        ),
    )


@agent_engine.command("inspect")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option("--task-id", required=True, help="Task id.")
def inspect(database_url: str | None, task_id: str) -> None:
    """Inspect one task with its audit log."""

    _emit_lines(
        _run(
            ENGINE_CONTROLLER.inspect_task,
            InspectTaskCommand(database_url=database_url, task_id=task_id),
        ),
    )


@agent_engine.command("health")
@click.option("--database-url", default=None, help=_DATABASE_URL_HELP)
@click.option(
    "--reasoning/--no-reasoning",
    default=False,
    show_default=True,
    help="Also probe the reasoning service.",
)
def health(database_url: str | None, reasoning: bool) -> None:
    """Check that the task store is reachable."""

    result = _run(
        ENGINE_CONTROLLER.health,
        HealthCommand(database_url=database_url, reasoning=reasoning),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Health check failed.")


def _run(handler: Callable[[CommandT], ResultT], command: CommandT) -> ResultT:
    try:
        return handler(command)
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_engine()
