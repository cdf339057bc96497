"""SQLModel ORM tables for the task queue."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class AgentTask(SQLModel, table=True):
    __tablename__ = "tasks"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_tasks_queue", "status", "created_at"),)

    id: str = Field(primary_key=True)
    type: str = Field(index=True)
    status: str = Field(index=True)
    current_step: str | None = None
    input: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON(none_as_null=True), nullable=True),
    )
    output: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON(none_as_null=True), nullable=True),
    )
    worker_id: str | None = Field(default=None, index=True)
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TaskLog(SQLModel, table=True):
    __tablename__ = "logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_logs_task_time", "task_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    task_id: str = Field(
        sa_column=Column(
            ForeignKey("tasks.id", ondelete="CASCADE"),
            nullable=False,
        ),
    )
    level: str = Field(index=True)
    event: str = Field(index=True)
    message: str | None = Field(default=None, sa_column=Column(Text))
    data: dict[str, Any] | None = Field(
        default=None,
        sa_column=Column(JSON(none_as_null=True), nullable=True),
    )
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
