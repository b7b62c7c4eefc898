"""Persistent task store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, or_
from sqlalchemy import update as sa_update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from shop_worker.storage.alembic_runner import upgrade_head
from shop_worker.storage.common import (
    build_sqlite_engine,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from shop_worker.storage.sqlmodel_models import ShopTask, ShopTaskEvent
from shop_worker.tasks.models import (
    ACTIVE_STATUSES,
    EXPIRED_TASK_ERROR,
    STUCK_TASK_ERROR,
    ActiveTaskConflictError,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskNotFoundError,
    TaskStatus,
    TaskType,
    TaskView,
    truncate_error,
)

DEFAULT_TASK_TTL = timedelta(days=3)


class TaskRepository:
    """Task persistence facade.

    Every status change is a guarded ``UPDATE ... WHERE status = <expected>``
    so a stale writer can never move a task backwards through the lifecycle.
    Methods that lose such a race return ``False`` instead of raising.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        task_ttl: timedelta = DEFAULT_TASK_TTL,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.task_ttl = task_ttl
        self.engine = build_sqlite_engine(
            db_path=db_path,
            busy_timeout_ms=sqlite_busy_timeout_ms,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def create_task(
        self,
        payload: TaskCreate,
        *,
        coalesce: bool = False,
        now: datetime | None = None,
    ) -> TaskView:
        """Create a pending or queued task.

        At most one active task may target the same
        ``(shop, resource_type, resource_id, field_type)``; the partial unique
        index ``uq_shop_tasks_active_target`` enforces it. A duplicate raises
        ``ActiveTaskConflictError`` or, with ``coalesce=True``, returns the task
        already in flight. An expired pending or queued task holding the target
        is failed first so it cannot block new work.
        """

        if payload.status not in {TaskStatus.PENDING, TaskStatus.QUEUED}:
            raise ValueError(f"Tasks must be created pending or queued, got {payload.status}")

        now = now or utc_now()
        task_id = payload.task_id or str(uuid4())
        task_type = (
            payload.task_type.value
            if isinstance(payload.task_type, TaskType)
            else payload.task_type
        )
        expires_at = payload.expires_at or now + self.task_ttl
        while True:
            with Session(self.engine) as session:
                self._add_new_task(
                    session=session,
                    payload=payload,
                    task_id=task_id,
                    task_type=task_type,
                    expires_at=expires_at,
                    now=now,
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    if payload.resource_id is None:
                        raise
                    blocking = self._find_active_for_target(
                        session=session,
                        shop=payload.shop,
                        resource_type=payload.resource_type,
                        resource_id=payload.resource_id,
                        field_type=payload.field_type,
                        now=now,
                        include_expired=True,
                    )
                    if blocking is None:
                        raise
                    if _is_expired_waiting(blocking, now):
                        self._expire_waiting_task(session=session, row=blocking, now=now)
                        continue
                    if coalesce:
                        return _to_task_view(blocking)
                    raise ActiveTaskConflictError(blocking.task_id) from None

                created = session.get(ShopTask, task_id, populate_existing=True)
                if created is None:
                    raise TaskNotFoundError(f"Task not found: {task_id}")
                return _to_task_view(created)

    def _add_new_task(  # noqa: PLR0913
        self,
        *,
        session: Session,
        payload: TaskCreate,
        task_id: str,
        task_type: str,
        expires_at: datetime,
        now: datetime,
    ) -> None:
        session.add(
            ShopTask(
                task_id=task_id,
                shop=payload.shop,
                task_type=task_type,
                status=payload.status.value,
                resource_type=payload.resource_type,
                resource_id=payload.resource_id,
                resource_title=payload.resource_title,
                field_type=payload.field_type,
                target_locale=payload.target_locale,
                provider=payload.provider,
                prompt=payload.prompt,
                progress=0,
                retry_count=0,
                estimated_tokens=payload.estimated_tokens,
                expires_at=to_db_datetime(expires_at),
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            ),
        )
        self._add_event(
            session=session,
            task_id=task_id,
            event_type="created",
            status_from=None,
            status_to=payload.status,
            details={"task_type": task_type, "shop": payload.shop},
            now=now,
        )

    def _expire_waiting_task(self, *, session: Session, row: ShopTask, now: datetime) -> None:
        """Fail an expired pending/queued task that still holds its target."""

        db_now = to_db_datetime(now)
        previous = TaskStatus(row.status)
        result = session.exec(
            sa_update(ShopTask)
            .where(
                col(ShopTask.task_id) == row.task_id,
                col(ShopTask.status) == previous.value,
            )
            .values(
                status=TaskStatus.FAILED.value,
                error=EXPIRED_TASK_ERROR,
                completed_at=db_now,
                updated_at=db_now,
            ),
        )
        if result.rowcount != 1:
            session.rollback()
            return
        self._add_event(
            session=session,
            task_id=row.task_id,
            event_type="expired",
            status_from=previous,
            status_to=TaskStatus.FAILED,
            details={},
            now=now,
        )
        session.commit()

    def get_task(self, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.get(ShopTask, task_id)
            return _to_task_view(row) if row is not None else None

    def get_task_details(self, task_id: str) -> TaskDetails | None:
        """Return task details with event stream."""

        with Session(self.engine) as session:
            task = session.get(ShopTask, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(ShopTaskEvent)
                .where(ShopTaskEvent.task_id == task_id)
                .order_by(col(ShopTaskEvent.created_at).asc(), col(ShopTaskEvent.id).asc()),
            ).all()
            task_view = _to_task_view(task)

        events: list[TaskEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                TaskEventView(
                    event_id=row.id or 0,
                    task_id=row.task_id,
                    event_type=row.event_type,
                    status_from=TaskStatus(row.status_from) if row.status_from else None,
                    status_to=TaskStatus(row.status_to) if row.status_to else None,
                    created_at=to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return TaskDetails(task=task_view, events=events)

    def list_tasks(
        self,
        *,
        shop: str | None = None,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by shop and status."""

        with Session(self.engine) as session:
            statement = select(ShopTask).order_by(col(ShopTask.created_at).desc()).limit(limit)
            if shop is not None:
                statement = statement.where(ShopTask.shop == shop)
            if status is not None:
                statement = statement.where(ShopTask.status == status.value)
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def find_by_status(
        self,
        status: TaskStatus,
        *,
        older_than: datetime | None = None,
        limit: int | None = None,
    ) -> list[TaskView]:
        """Tasks in ``status``, oldest first; ``older_than`` filters on ``updated_at``."""

        with Session(self.engine) as session:
            statement = (
                select(ShopTask)
                .where(ShopTask.status == status.value)
                .order_by(col(ShopTask.created_at).asc())
            )
            if older_than is not None:
                statement = statement.where(
                    col(ShopTask.updated_at) < to_db_datetime(older_than),
                )
            if limit is not None:
                statement = statement.limit(limit)
            rows = session.exec(statement).all()
            return [_to_task_view(row) for row in rows]

    def find_active_task_for_target(
        self,
        *,
        shop: str,
        resource_type: str | None,
        resource_id: str,
        field_type: str | None,
        now: datetime | None = None,
    ) -> TaskView | None:
        with Session(self.engine) as session:
            row = self._find_active_for_target(
                session=session,
                shop=shop,
                resource_type=resource_type,
                resource_id=resource_id,
                field_type=field_type,
                now=now or utc_now(),
            )
            return _to_task_view(row) if row is not None else None

    def claim_next_queued_task(
        self,
        *,
        worker_id: str,
        now: datetime | None = None,
    ) -> TaskView | None:
        """Atomically move the oldest unexpired queued task to running."""

        while True:
            claim_time = now or utc_now()
            db_now = to_db_datetime(claim_time)
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(ShopTask)
                    .where(
                        ShopTask.status == TaskStatus.QUEUED.value,
                        or_(
                            col(ShopTask.expires_at).is_(None),
                            col(ShopTask.expires_at) > db_now,
                        ),
                    )
                    .order_by(col(ShopTask.created_at).asc())
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(ShopTask)
                    .where(
                        col(ShopTask.task_id) == candidate.task_id,
                        col(ShopTask.status) == TaskStatus.QUEUED.value,
                    )
                    .values(
                        status=TaskStatus.RUNNING.value,
                        started_at=db_now,
                        worker_id=worker_id,
                        error=None,
                        updated_at=db_now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                self._add_event(
                    session=session,
                    task_id=candidate.task_id,
                    event_type="claimed",
                    status_from=TaskStatus.QUEUED,
                    status_to=TaskStatus.RUNNING,
                    details={"worker_id": worker_id},
                    now=claim_time,
                )
                session.commit()
                claimed = session.get(ShopTask, candidate.task_id, populate_existing=True)
                if claimed is None:
                    return None
                return _to_task_view(claimed)

    def touch_task(self, task_id: str, *, now: datetime | None = None) -> bool:
        """Refresh ``updated_at`` of a running task so it is not considered stuck."""

        db_now = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ShopTask)
                .where(
                    col(ShopTask.task_id) == task_id,
                    col(ShopTask.status) == TaskStatus.RUNNING.value,
                )
                .values(updated_at=db_now),
            )
            session.commit()
            return result.rowcount == 1

    def increment_retry_count(
        self,
        task_id: str,
        reason: str,
        *,
        now: datetime | None = None,
    ) -> int | None:
        """Count one provider retry of a running task; returns the new count."""

        now = now or utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ShopTask)
                .where(
                    col(ShopTask.task_id) == task_id,
                    col(ShopTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    retry_count=col(ShopTask.retry_count) + 1,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None
            retry_count = session.exec(
                select(ShopTask.retry_count).where(ShopTask.task_id == task_id),
            ).one()
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="retry",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.RUNNING,
                details={"retry_count": retry_count, "reason": truncate_error(reason, 200)},
                now=now,
            )
            session.commit()
            return retry_count

    def update_progress(
        self,
        task_id: str,
        progress: int,
        message: str | None = None,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Persist progress of a running task; lower values than stored are ignored."""

        progress = max(0, min(100, int(progress)))
        db_now = to_db_datetime(now or utc_now())
        values: dict[str, object] = {"progress": progress, "updated_at": db_now}
        if message is not None:
            values["progress_message"] = message
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ShopTask)
                .where(
                    col(ShopTask.task_id) == task_id,
                    col(ShopTask.status) == TaskStatus.RUNNING.value,
                    col(ShopTask.progress) <= progress,
                )
                .values(**values),
            )
            session.commit()
            return result.rowcount == 1

    def complete_task(
        self,
        task_id: str,
        *,
        result: str | None = None,
        now: datetime | None = None,
    ) -> bool:
        """Mark a running task as completed."""

        now = now or utc_now()
        db_now = to_db_datetime(now)
        with Session(self.engine) as session:
            update_result = session.exec(
                sa_update(ShopTask)
                .where(
                    col(ShopTask.task_id) == task_id,
                    col(ShopTask.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.COMPLETED.value,
                    progress=100,
                    result=result,
                    error=None,
                    completed_at=db_now,
                    updated_at=db_now,
                ),
            )
            if update_result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.COMPLETED,
                details={},
                now=now,
            )
            session.commit()
            return True

    def fail_task(
        self,
        task_id: str,
        error_message: str,
        *,
        now: datetime | None = None,
    ) -> bool:
        """Mark an active task as failed with a truncated error message."""

        now = now or utc_now()
        error = truncate_error(error_message)
        with Session(self.engine) as session:
            row = session.get(ShopTask, task_id)
            if row is None:
                return False
            previous = TaskStatus(row.status)
            if previous not in ACTIVE_STATUSES:
                return False
            result = session.exec(
                sa_update(ShopTask)
                .where(
                    col(ShopTask.task_id) == task_id,
                    col(ShopTask.status) == previous.value,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    error=error,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="failed",
                status_from=previous,
                status_to=TaskStatus.FAILED,
                details={"error": error},
                now=now,
            )
            session.commit()
            return True

    def cancel_task(self, task_id: str, *, now: datetime | None = None) -> TaskView:
        """Cancel a pending/queued/running task.

        Running tasks stop cooperatively: the handler observes the status at its
        next checkpoint.
        """

        now = now or utc_now()
        with Session(self.engine) as session:
            row = session.get(ShopTask, task_id)
            if row is None:
                raise TaskNotFoundError(f"Task not found: {task_id}")
            previous = TaskStatus(row.status)
            if previous not in ACTIVE_STATUSES:
                raise RuntimeError(f"Task cannot be cancelled from status={row.status}")

            result = session.exec(
                sa_update(ShopTask)
                .where(
                    col(ShopTask.task_id) == task_id,
                    col(ShopTask.status) == previous.value,
                )
                .values(
                    status=TaskStatus.CANCELLED.value,
                    completed_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Task state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="cancelled",
                status_from=previous,
                status_to=TaskStatus.CANCELLED,
                details={},
                now=now,
            )
            session.commit()
            refreshed = session.get(ShopTask, task_id, populate_existing=True)
            if refreshed is None:
                raise TaskNotFoundError(f"Task not found: {task_id}")
            return _to_task_view(refreshed)

    def release_pending_task(self, task_id: str, *, now: datetime | None = None) -> bool:
        """Hand a pending task to the worker by moving it to queued."""

        now = now or utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(ShopTask)
                .where(
                    col(ShopTask.task_id) == task_id,
                    col(ShopTask.status) == TaskStatus.PENDING.value,
                )
                .values(status=TaskStatus.QUEUED.value, updated_at=to_db_datetime(now)),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="released",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.QUEUED,
                details={},
                now=now,
            )
            session.commit()
            return True

    def fail_stuck_running_tasks(
        self,
        *,
        updated_before: datetime,
        error_message: str = STUCK_TASK_ERROR,
        now: datetime | None = None,
    ) -> int:
        """Fail running tasks whose ``updated_at`` is strictly older than the threshold."""

        now = now or utc_now()
        threshold = to_db_datetime(updated_before)
        error = truncate_error(error_message)
        failed = 0
        with Session(self.engine) as session:
            candidates = session.exec(
                select(ShopTask.task_id).where(
                    ShopTask.status == TaskStatus.RUNNING.value,
                    col(ShopTask.updated_at) < threshold,
                ),
            ).all()
            for task_id in candidates:
                result = session.exec(
                    sa_update(ShopTask)
                    .where(
                        col(ShopTask.task_id) == task_id,
                        col(ShopTask.status) == TaskStatus.RUNNING.value,
                        col(ShopTask.updated_at) < threshold,
                    )
                    .values(
                        status=TaskStatus.FAILED.value,
                        error=error,
                        completed_at=to_db_datetime(now),
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                failed += 1
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="stuck_failed",
                    status_from=TaskStatus.RUNNING,
                    status_to=TaskStatus.FAILED,
                    details={"updated_before": to_utc_aware_datetime(threshold).isoformat()},
                    now=now,
                )
            session.commit()
        return failed

    def requeue_pending_tasks(self, *, now: datetime | None = None) -> int:
        """Move unexpired pending tasks to queued and clear their error."""

        now = now or utc_now()
        db_now = to_db_datetime(now)
        requeued = 0
        with Session(self.engine) as session:
            candidates = session.exec(
                select(ShopTask.task_id)
                .where(
                    ShopTask.status == TaskStatus.PENDING.value,
                    col(ShopTask.expires_at) > db_now,
                )
                .order_by(col(ShopTask.created_at).asc()),
            ).all()
            for task_id in candidates:
                result = session.exec(
                    sa_update(ShopTask)
                    .where(
                        col(ShopTask.task_id) == task_id,
                        col(ShopTask.status) == TaskStatus.PENDING.value,
                    )
                    .values(status=TaskStatus.QUEUED.value, error=None, updated_at=db_now),
                )
                if result.rowcount != 1:
                    continue
                requeued += 1
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="recovered",
                    status_from=TaskStatus.PENDING,
                    status_to=TaskStatus.QUEUED,
                    details={},
                    now=now,
                )
            session.commit()
        return requeued

    def delete_expired_tasks(self, *, now: datetime | None = None) -> int:
        """Retention sweep: delete non-running tasks whose ``expires_at`` has passed."""

        db_now = to_db_datetime(now or utc_now())
        with Session(self.engine) as session:
            result = session.exec(
                sa_delete(ShopTask).where(
                    col(ShopTask.expires_at) < db_now,
                    col(ShopTask.status) != TaskStatus.RUNNING.value,
                ),
            )
            session.commit()
            return result.rowcount

    def add_task_event(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
        now: datetime | None = None,
    ) -> None:
        """Append one audit event outside of a status transition."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details=details,
                now=now or utc_now(),
            )
            session.commit()

    def _find_active_for_target(  # noqa: PLR0913
        self,
        *,
        session: Session,
        shop: str,
        resource_type: str | None,
        resource_id: str,
        field_type: str | None,
        now: datetime,
        include_expired: bool = False,
    ) -> ShopTask | None:
        # Same key as uq_shop_tasks_active_target: NULL and "" are one value.
        statement = select(ShopTask).where(
            ShopTask.shop == shop,
            ShopTask.resource_id == resource_id,
            func.coalesce(col(ShopTask.resource_type), "") == (resource_type or ""),
            func.coalesce(col(ShopTask.field_type), "") == (field_type or ""),
            col(ShopTask.status).in_([status.value for status in ACTIVE_STATUSES]),
        )
        if not include_expired:
            statement = statement.where(
                or_(
                    col(ShopTask.status) == TaskStatus.RUNNING.value,
                    col(ShopTask.expires_at).is_(None),
                    col(ShopTask.expires_at) > to_db_datetime(now),
                ),
            )
        return session.exec(statement.limit(1)).one_or_none()

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
        now: datetime,
    ) -> None:
        session.add(
            ShopTaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=to_db_datetime(now),
            ),
        )


def _is_expired_waiting(row: ShopTask, now: datetime) -> bool:
    if row.status == TaskStatus.RUNNING.value or row.expires_at is None:
        return False
    return to_utc_aware_datetime(row.expires_at) <= to_utc_aware_datetime(now)


def _to_task_view(row: ShopTask) -> TaskView:
    return TaskView(
        task_id=row.task_id,
        shop=row.shop,
        task_type=row.task_type,
        status=TaskStatus(row.status),
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        resource_title=row.resource_title,
        field_type=row.field_type,
        target_locale=row.target_locale,
        provider=row.provider,
        prompt=row.prompt,
        result=row.result,
        progress=row.progress,
        progress_message=row.progress_message,
        error=row.error,
        retry_count=row.retry_count,
        estimated_tokens=row.estimated_tokens,
        worker_id=row.worker_id,
        expires_at=optional_utc(row.expires_at),
        started_at=optional_utc(row.started_at),
        completed_at=optional_utc(row.completed_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
