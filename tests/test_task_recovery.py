from __future__ import annotations

from datetime import datetime, timedelta

import allure

from shop_worker.storage.common import utc_now
from shop_worker.tasks.models import STUCK_TASK_ERROR, TaskCreate, TaskStatus, TaskType
from shop_worker.tasks.recovery import TaskRecoveryService
from shop_worker.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Startup Recovery"),
]


def _running_task(repository: TaskRepository, resource_id: str, *, updated_at: datetime) -> str:
    task = repository.create_task(
        TaskCreate(
            shop="demo.myshopify.com",
            task_type=TaskType.AI_GENERATION,
            resource_id=resource_id,
            provider="echo",
            prompt="Describe",
        ),
        now=updated_at,
    )
    claimed = repository.claim_next_queued_task(worker_id="old-worker", now=updated_at)
    assert claimed is not None and claimed.task_id == task.task_id
    return task.task_id


def _status(repository: TaskRepository, task_id: str) -> TaskStatus:
    task = repository.get_task(task_id)
    assert task is not None
    return task.status


def test_running_tasks_fail_only_when_strictly_older_than_timeout(
    repository: TaskRepository,
) -> None:
    now = utc_now()
    recent = _running_task(repository, "recent", updated_at=now - timedelta(minutes=9))
    boundary = _running_task(repository, "boundary", updated_at=now - timedelta(minutes=10))
    stale = _running_task(repository, "stale", updated_at=now - timedelta(minutes=11))

    result = TaskRecoveryService(
        repository=repository,
        stuck_timeout=timedelta(minutes=10),
        clock=lambda: now,
    ).recover_pending_tasks()

    assert result.failed == 1
    assert result.recovered == 0
    assert _status(repository, recent) is TaskStatus.RUNNING
    assert _status(repository, boundary) is TaskStatus.RUNNING
    assert _status(repository, stale) is TaskStatus.FAILED
    failed = repository.get_task_details(stale)
    assert failed is not None
    assert failed.task.error == STUCK_TASK_ERROR
    assert failed.events[-1].event_type == "stuck_failed"


def test_unexpired_pending_tasks_are_requeued(repository: TaskRepository) -> None:
    now = utc_now()
    live = repository.create_task(
        TaskCreate(
            shop="demo.myshopify.com",
            task_type=TaskType.SYNC,
            status=TaskStatus.PENDING,
        ),
        now=now - timedelta(hours=1),
    )
    expired = repository.create_task(
        TaskCreate(
            shop="demo.myshopify.com",
            task_type=TaskType.SYNC,
            status=TaskStatus.PENDING,
            expires_at=now - timedelta(minutes=1),
        ),
        now=now - timedelta(days=4),
    )

    result = TaskRecoveryService(repository=repository, clock=lambda: now).recover_pending_tasks()

    assert result.recovered == 1
    assert _status(repository, live.task_id) is TaskStatus.QUEUED
    assert _status(repository, expired.task_id) is TaskStatus.PENDING
    details = repository.get_task_details(live.task_id)
    assert details is not None
    assert details.events[-1].event_type == "recovered"


def test_second_recovery_pass_changes_nothing(repository: TaskRepository) -> None:
    now = utc_now()
    stale = _running_task(repository, "stale", updated_at=now - timedelta(hours=1))
    pending = repository.create_task(
        TaskCreate(
            shop="demo.myshopify.com",
            task_type=TaskType.TRANSLATION,
            status=TaskStatus.PENDING,
            resource_id="pending",
        ),
        now=now,
    )
    service = TaskRecoveryService(repository=repository, clock=lambda: now)

    first = service.recover_pending_tasks()
    snapshot = {task.task_id: (task.status, task.updated_at) for task in repository.list_tasks()}
    second = service.recover_pending_tasks()

    assert (first.recovered, first.failed) == (1, 1)
    assert (second.recovered, second.failed) == (0, 0)
    after = {task.task_id: (task.status, task.updated_at) for task in repository.list_tasks()}
    assert after == snapshot
    assert snapshot[stale][0] is TaskStatus.FAILED
    assert snapshot[pending.task_id][0] is TaskStatus.QUEUED
