"""Domain models for the task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    type: str
    task_id: str | None = None
    input: dict[str, Any] | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and scheduler logic."""

    id: str
    type: str
    status: TaskStatus
    current_step: str | None
    input: dict[str, Any] | None
    output: dict[str, Any] | None
    worker_id: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class LogEntryWrite:
    """Audit entry to append to the logs table."""

    task_id: str
    event: str
    level: LogLevel = LogLevel.INFO
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class LogEntryView:
    """Audit entry as stored."""

    log_id: int
    task_id: str
    level: LogLevel
    event: str
    message: str | None
    created_at: datetime
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task with its audit trail."""

    task: TaskView
    logs: list[LogEntryView]
