"""Queue processor that drives claimed tasks to a terminal state."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

from shop_worker.tasks.models import (
    TaskCancelledError,
    TaskStatus,
    TaskView,
    summarize_exception,
)
from shop_worker.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ProcessorRunSummary:
    """Aggregate processor counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    cancelled: int = 0
    idle_polls: int = 0

    def add(self, other: ProcessorRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.cancelled += other.cancelled
        self.idle_polls += other.idle_polls


class TaskOutcome(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskContext:
    """Handle given to a task handler for progress, heartbeats and cancellation checks.

    Progress writes are coalesced: a value is persisted only when it moved by
    at least ``min_step`` points or ``min_interval_seconds`` passed since the
    last write. 100 and forced writes always go through.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        task: TaskView,
        min_step: int = 5,
        min_interval_seconds: float = 2.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.repository = repository
        self.task = task
        self.min_step = min_step
        self.min_interval_seconds = min_interval_seconds
        self.clock = clock
        self._last_progress = task.progress
        self._last_write_at = clock()
        self._last_stop_check_at: float | None = None
        self._cancelled = False

    @property
    def task_id(self) -> str:
        return self.task.task_id

    def report_progress(
        self,
        percent: int,
        message: str | None = None,
        *,
        force: bool = False,
    ) -> bool:
        """Persist progress if it is worth a write. Returns True when written."""

        percent = max(0, min(100, int(percent)))
        if percent < self._last_progress:
            return False
        now = self.clock()
        due = (
            force
            or percent == 100  # noqa: PLR2004
            or percent - self._last_progress >= self.min_step
            or now - self._last_write_at >= self.min_interval_seconds
        )
        if not due:
            return False
        written = self.repository.update_progress(self.task_id, percent, message)
        if written:
            self._last_progress = percent
            self._last_write_at = now
        return written

    def heartbeat(self) -> None:
        """Refresh ``updated_at`` so a long step is not mistaken for a stuck task."""

        if self.repository.touch_task(self.task_id):
            self._last_write_at = self.clock()

    def record_retry(self, reason: str) -> int | None:
        """Persist one more retry of the current task; returns the stored count."""

        retry_count = self.repository.increment_retry_count(self.task_id, reason)
        if retry_count is not None:
            self._last_write_at = self.clock()
        return retry_count

    def is_cancelled(self) -> bool:
        if self._cancelled:
            return True
        current = self.repository.get_task(self.task_id)
        self._cancelled = current is None or current.status == TaskStatus.CANCELLED
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled():
            raise TaskCancelledError(f"Task {self.task_id} was cancelled")

    def should_stop(self) -> bool:
        """Cheap poll for long waits: heartbeat and cancellation check at most once per interval."""

        now = self.clock()
        if (
            self._last_stop_check_at is not None
            and now - self._last_stop_check_at < self.min_interval_seconds
        ):
            return self._cancelled
        self._last_stop_check_at = now
        self.heartbeat()
        return self.is_cancelled()


class TaskHandler(Protocol):
    def __call__(self, task: TaskView, context: TaskContext) -> str | None:
        """Execute the task; the returned text is stored as the task result."""


class QueueProcessor:
    """Claims queued tasks one at a time and executes them via type-specific handlers."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: TaskRepository,
        handlers: Mapping[str, TaskHandler],
        worker_id: str,
        poll_interval_seconds: float = 2.0,
        progress_min_step: int = 5,
        progress_min_interval_seconds: float = 2.0,
    ) -> None:
        self.repository = repository
        self.handlers = dict(handlers)
        self.worker_id = worker_id
        self.poll_interval_seconds = poll_interval_seconds
        self.progress_min_step = progress_min_step
        self.progress_min_interval_seconds = progress_min_interval_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._current_task_id: str | None = None

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def run_once(self) -> ProcessorRunSummary:
        """Process at most one task from the queue."""

        summary = ProcessorRunSummary()
        if self._stop_requested:
            summary.idle_polls = 1
            return summary

        task = self.repository.claim_next_queued_task(worker_id=self.worker_id)
        if task is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        self._current_task_id = task.task_id
        try:
            outcome = self._execute(task)
        finally:
            self._current_task_id = None

        if outcome is TaskOutcome.COMPLETED:
            summary.completed = 1
        elif outcome is TaskOutcome.FAILED:
            summary.failed = 1
        else:
            summary.cancelled = 1
        return summary

    def run_loop(
        self,
        *,
        max_tasks: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> ProcessorRunSummary:
        """Run until the queue is idle, ``max_tasks`` were processed or a stop was requested.

        Args:
            max_tasks: Stop after processing this many tasks (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting
                (None = keep polling until stopped).
        """

        aggregate = ProcessorRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    return aggregate
                if max_tasks is not None and aggregate.processed >= max_tasks:
                    return aggregate

                summary = self.run_once()
                aggregate.add(summary)

                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        return aggregate
                    self._sleep_with_stop(self.poll_interval_seconds)
                    continue

                consecutive_idle = 0

    def request_stop(self, *, signal_name: str = "manual") -> None:
        """Stop claiming new tasks; the task in flight runs to completion."""

        if not self._stop_requested:
            logger.info("Stop requested (%s); finishing in-flight work", signal_name)
        self._stop_requested = True
        self._stop_signal_name = signal_name
        if self._current_task_id is None:
            return
        try:
            self.repository.add_task_event(
                task_id=self._current_task_id,
                event_type="shutdown_requested",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.RUNNING,
                details={"signal": signal_name},
            )
        except (RuntimeError, ValueError):  # pragma: no cover - best effort
            logger.warning("Could not record shutdown request for task %s", self._current_task_id)

    def _execute(self, task: TaskView) -> TaskOutcome:
        handler = self.handlers.get(task.task_type)
        if handler is None:
            message = f"No handler registered for task type {task.task_type!r}"
            logger.warning("Task %s failed: %s", task.task_id, message)
            self.repository.fail_task(task.task_id, message)
            return TaskOutcome.FAILED

        context = TaskContext(
            repository=self.repository,
            task=task,
            min_step=self.progress_min_step,
            min_interval_seconds=self.progress_min_interval_seconds,
        )
        logger.info("Task %s (%s) started for %s", task.task_id, task.task_type, task.shop)
        try:
            context.raise_if_cancelled()
            result = handler(task, context)
        except TaskCancelledError:
            logger.info("Task %s cancelled", task.task_id)
            return self._settle_cancelled(task)
        except Exception as error:  # noqa: BLE001
            logger.exception("Task %s failed", task.task_id)
            if self.repository.fail_task(task.task_id, summarize_exception(error)):
                return TaskOutcome.FAILED
            return self._settled_outcome(task.task_id, default=TaskOutcome.FAILED)

        if self.repository.complete_task(task.task_id, result=result):
            logger.info("Task %s completed", task.task_id)
            return TaskOutcome.COMPLETED
        return self._settled_outcome(task.task_id, default=TaskOutcome.COMPLETED)

    def _settle_cancelled(self, task: TaskView) -> TaskOutcome:
        current = self.repository.get_task(task.task_id)
        if current is not None and current.status == TaskStatus.RUNNING:
            self.repository.cancel_task(task.task_id)
        return TaskOutcome.CANCELLED

    def _settled_outcome(self, task_id: str, *, default: TaskOutcome) -> TaskOutcome:
        """Outcome of a task whose final write lost the race to another writer."""

        current = self.repository.get_task(task_id)
        if current is None:
            return default
        if current.status == TaskStatus.CANCELLED:
            return TaskOutcome.CANCELLED
        if current.status == TaskStatus.FAILED:
            return TaskOutcome.FAILED
        return default

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
