"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import true

from agent_engine.queue.lease import LeaseProtocol
from agent_engine.queue.models import TaskStatus
from agent_engine.queue.store import TaskStore


def sqlite_url(path: Path) -> str:
    return f"sqlite:///{path}"


@pytest.fixture()
def database_url(tmp_path: Path) -> str:
    return sqlite_url(tmp_path / "tasks.db")


@pytest.fixture()
def store(database_url: str) -> Iterator[TaskStore]:
    task_store = TaskStore(database_url)
    task_store.init_schema()
    yield task_store
    task_store.close()


@pytest.fixture()
def make_lease(store: TaskStore) -> Callable[..., LeaseProtocol]:
    def _make(
        worker_id: str = "worker-a",
        *,
        stale_after: timedelta = timedelta(seconds=60),
        clock: Callable[[], datetime] | None = None,
        task_store: TaskStore | None = None,
    ) -> LeaseProtocol:
        kwargs: dict[str, Any] = {}
        if clock is not None:
            kwargs["clock"] = clock
        return LeaseProtocol(
            store=task_store or store,
            worker_id=worker_id,
            stale_after=stale_after,
            **kwargs,
        )

    return _make


@pytest.fixture()
def force_state(store: TaskStore) -> Callable[..., None]:
    """Simulate a crashed holder by rewriting status and heartbeat directly."""

    def _force(
        task_id: str,
        *,
        status: TaskStatus,
        updated_at: datetime,
        worker_id: str | None = None,
    ) -> None:
        affected = store.conditional_update(
            task_id=task_id,
            expected=true(),
            values={"status": status, "updated_at": updated_at, "worker_id": worker_id},
        )
        assert affected == 1

    return _force

