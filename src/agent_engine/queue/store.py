"""Persistent task store backed by SQLModel."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from sqlalchemy import ColumnElement
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from agent_engine.queue.models import (
    LogEntryView,
    LogEntryWrite,
    LogLevel,
    TaskCreate,
    TaskDetails,
    TaskStatus,
    TaskView,
)
from agent_engine.storage.alembic_runner import upgrade_head
from agent_engine.storage.common import (
    build_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from agent_engine.storage.sqlmodel_models import AgentTask, TaskLog

logger = logging.getLogger(__name__)

FIFO_ORDER = (col(AgentTask.created_at).asc(), col(AgentTask.id).asc())


class TaskStore:
    """Row access facade over the `tasks` and `logs` tables.

    Every write that changes task state goes through `conditional_update`,
    which evaluates the expected predicate inside the UPDATE statement itself,
    so the database decides which of several concurrent writers wins.
    """

    def __init__(self, database_url: str, *, busy_timeout_ms: int = 5000) -> None:
        self.database_url = database_url
        self.engine = build_engine(database_url=database_url, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.database_url)

    def enqueue_task(self, payload: TaskCreate) -> TaskView:
        """Create a pending task."""

        now = to_db_datetime(utc_now())
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = AgentTask(
                id=task_id,
                type=payload.type,
                status=TaskStatus.PENDING.value,
                current_step=None,
                input=payload.input,
                output=None,
                worker_id=None,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            session.add(
                _to_log_row(
                    LogEntryWrite(task_id=task_id, event="created", data={"type": payload.type}),
                ),
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def fetch_candidates(
        self,
        *,
        where: ColumnElement[bool],
        order_by: Sequence[Any] = FIFO_ORDER,
        limit: int = 10,
    ) -> list[TaskView]:
        """Select tasks matching a predicate, oldest first by default."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentTask).where(where).order_by(*order_by).limit(limit),
            ).all()
        return [_to_task_view(row) for row in rows]

    def conditional_update(
        self,
        *,
        task_id: str,
        expected: ColumnElement[bool],
        values: Mapping[str, Any],
        log: LogEntryWrite | None = None,
    ) -> int:
        """Apply `values` to the task only if it still matches `expected`.

        Returns the number of rows changed (0 or 1). The optional audit entry
        is committed in the same transaction and only when a row changed.
        """

        payload = {key: _to_db_value(value) for key, value in values.items()}
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(AgentTask)
                .where(col(AgentTask.id) == task_id, expected)
                .values(**payload)
                .execution_options(synchronize_session=False),
            )
            affected = result.rowcount
            if affected != 1:
                session.rollback()
                return affected
            if log is not None:
                session.add(_to_log_row(log))
            session.commit()
            return affected

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(select(AgentTask).where(AgentTask.id == task_id)).one_or_none()
        if row is None:
            return None
        return _to_task_view(row)

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = select(AgentTask).order_by(col(AgentTask.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(AgentTask.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with its audit log."""

        with Session(self.engine) as session:
            task = session.exec(select(AgentTask).where(AgentTask.id == task_id)).one_or_none()
            if task is None:
                return None
            log_rows = session.exec(
                select(TaskLog)
                .where(TaskLog.task_id == task_id)
                .order_by(col(TaskLog.created_at).asc(), col(TaskLog.id).asc()),
            ).all()
            view = _to_task_view(task)

        logs = [
            LogEntryView(
                log_id=row.id or 0,
                task_id=row.task_id,
                level=LogLevel(row.level),
                event=row.event,
                message=row.message,
                created_at=to_utc_aware_datetime(row.created_at),
                data=row.data if isinstance(row.data, dict) else {},
            )
            for row in log_rows
        ]
        return TaskDetails(task=view, logs=logs)

    def write_log(self, entry: LogEntryWrite) -> bool:
        """Append one audit entry; failures are reported, never raised."""

        try:
            with Session(self.engine) as session:
                session.add(_to_log_row(entry))
                session.commit()
        except SQLAlchemyError:
            logger.exception(
                "Failed to write log entry %s for task %s",
                entry.event,
                entry.task_id,
            )
            return False
        return True

    def ping(self) -> None:
        """Perform one read against the tasks table; raises when unreachable."""

        with Session(self.engine) as session:
            session.exec(select(AgentTask.id).limit(1)).first()


def _to_db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return to_db_datetime(value)
    return value


def _to_log_row(entry: LogEntryWrite) -> TaskLog:
    return TaskLog(
        task_id=entry.task_id,
        level=entry.level.value,
        event=entry.event,
        message=entry.message,
        data=entry.data or None,
        created_at=to_db_datetime(utc_now()),
    )


def _to_task_view(row: AgentTask) -> TaskView:
    return TaskView(
        id=row.id,
        type=row.type,
        status=TaskStatus(row.status),
        current_step=row.current_step,
        input=row.input,
        output=row.output,
        worker_id=row.worker_id,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
