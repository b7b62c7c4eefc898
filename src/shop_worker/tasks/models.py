"""Domain models for the shop task queue."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

MAX_ERROR_CHARS = 1000
STUCK_TASK_ERROR = "Task was stuck in running state after server restart"
EXPIRED_TASK_ERROR = "Task expired before it was processed"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.QUEUED, TaskStatus.RUNNING})


class TaskType(str, Enum):
    """Kinds of work the processor knows how to dispatch."""

    AI_GENERATION = "aiGeneration"
    TRANSLATION = "translation"
    SYNC = "sync"


class ActiveTaskConflictError(RuntimeError):
    """Another task is already active for the same shop/resource/field target."""

    def __init__(self, existing_task_id: str) -> None:
        super().__init__(f"An active task already exists for this target: {existing_task_id}")
        self.existing_task_id = existing_task_id


class TaskNotFoundError(LookupError):
    """Raised when a task id does not resolve to a stored task."""


class TaskCancelledError(RuntimeError):
    """Raised by handlers that noticed a cooperative cancellation."""


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a task."""

    shop: str
    task_type: TaskType | str
    status: TaskStatus = TaskStatus.QUEUED
    task_id: str | None = None
    resource_type: str | None = None
    resource_id: str | None = None
    resource_title: str | None = None
    field_type: str | None = None
    target_locale: str | None = None
    provider: str | None = None
    prompt: str | None = None
    estimated_tokens: int | None = None
    expires_at: datetime | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and worker logic."""

    task_id: str
    shop: str
    task_type: TaskType | str
    status: TaskStatus
    resource_type: str | None
    resource_id: str | None
    resource_title: str | None
    field_type: str | None
    target_locale: str | None
    provider: str | None
    prompt: str | None
    result: str | None
    progress: int
    progress_message: str | None
    error: str | None
    retry_count: int
    estimated_tokens: int | None
    worker_id: str | None
    expires_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event entry for audit trail."""

    event_id: int
    task_id: str
    event_type: str
    status_from: TaskStatus | None
    status_to: TaskStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TaskDetails:
    """Task details with event stream."""

    task: TaskView
    events: list[TaskEventView]


@dataclass(slots=True)
class RecoveryResult:
    """Counters reported by one startup recovery pass."""

    recovered: int = 0
    failed: int = 0


def truncate_error(message: str, limit: int = MAX_ERROR_CHARS) -> str:
    """Bound stored error text so verbose failures cannot grow rows without limit."""

    text = message.strip()
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."


def summarize_exception(error: BaseException) -> str:
    """Short, user-facing error text without traceback noise."""

    message = str(error).strip()
    if not message:
        message = error.__class__.__name__
    return truncate_error(message)
