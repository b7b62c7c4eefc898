from __future__ import annotations

import queue
import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from shop_worker.storage.common import utc_now
from shop_worker.tasks.models import (
    EXPIRED_TASK_ERROR,
    MAX_ERROR_CHARS,
    ActiveTaskConflictError,
    TaskCreate,
    TaskNotFoundError,
    TaskStatus,
    TaskType,
)
from shop_worker.tasks.repository import TaskRepository

pytestmark = [
    allure.epic("Task Queue"),
    allure.feature("Task Store"),
]


def _translation(**overrides) -> TaskCreate:
    values = {
        "shop": "demo.myshopify.com",
        "task_type": TaskType.TRANSLATION,
        "resource_type": "PRODUCT",
        "resource_id": "gid://shopify/Product/1",
        "field_type": "title",
        "target_locale": "fr",
        "provider": "echo",
        "prompt": "Blue shirt",
    }
    values.update(overrides)
    return TaskCreate(**values)


def test_create_task_records_created_event_and_default_expiry(repository: TaskRepository) -> None:
    now = utc_now()

    task = repository.create_task(_translation(), now=now)

    assert task.status is TaskStatus.QUEUED
    assert task.task_type == "translation"
    assert task.progress == 0
    assert task.expires_at is not None
    assert abs((task.expires_at - now) - timedelta(days=3)) < timedelta(seconds=1)
    details = repository.get_task_details(task.task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["created"]
    assert details.events[0].status_to is TaskStatus.QUEUED
    assert details.events[0].details["shop"] == "demo.myshopify.com"


def test_create_task_rejects_non_initial_status(repository: TaskRepository) -> None:
    with pytest.raises(ValueError, match="pending or queued"):
        repository.create_task(_translation(status=TaskStatus.RUNNING))


def test_second_active_task_for_same_target_is_rejected(repository: TaskRepository) -> None:
    first = repository.create_task(_translation())

    with pytest.raises(ActiveTaskConflictError) as excinfo:
        repository.create_task(_translation())

    assert excinfo.value.existing_task_id == first.task_id
    assert len(repository.list_tasks()) == 1


def test_coalesce_returns_task_already_in_flight(repository: TaskRepository) -> None:
    first = repository.create_task(_translation(status=TaskStatus.PENDING))

    again = repository.create_task(_translation(), coalesce=True)

    assert again.task_id == first.task_id
    assert again.status is TaskStatus.PENDING
    assert len(repository.list_tasks()) == 1


def test_other_field_or_finished_task_does_not_block_target(repository: TaskRepository) -> None:
    first = repository.create_task(_translation())
    repository.create_task(_translation(field_type="body_html"))
    repository.cancel_task(first.task_id)

    replacement = repository.create_task(_translation())

    assert replacement.task_id != first.task_id
    assert len(repository.list_tasks()) == 3


def test_expired_queued_task_does_not_block_target(repository: TaskRepository) -> None:
    now = utc_now()
    repository.create_task(_translation(expires_at=now - timedelta(minutes=1)), now=now)

    fresh = repository.create_task(_translation(), now=now)

    assert fresh.status is TaskStatus.QUEUED


def test_claim_takes_oldest_unexpired_queued_task(repository: TaskRepository) -> None:
    now = utc_now()
    expired = repository.create_task(
        _translation(resource_id="expired", expires_at=now - timedelta(seconds=1)),
        now=now - timedelta(minutes=5),
    )
    older = repository.create_task(
        _translation(resource_id="older"),
        now=now - timedelta(minutes=2),
    )
    repository.create_task(_translation(resource_id="newer"), now=now - timedelta(minutes=1))
    repository.create_task(
        _translation(resource_id="pending", status=TaskStatus.PENDING),
        now=now - timedelta(minutes=3),
    )

    claimed = repository.claim_next_queued_task(worker_id="worker-a", now=now)

    assert claimed is not None
    assert claimed.task_id == older.task_id
    assert claimed.status is TaskStatus.RUNNING
    assert claimed.worker_id == "worker-a"
    assert claimed.started_at is not None
    expired_view = repository.get_task(expired.task_id)
    assert expired_view is not None
    assert expired_view.status is TaskStatus.QUEUED


def test_claim_returns_none_for_empty_queue(repository: TaskRepository) -> None:
    assert repository.claim_next_queued_task(worker_id="worker-a") is None


def test_progress_only_moves_forward_while_running(repository: TaskRepository) -> None:
    task = repository.create_task(_translation())
    assert repository.update_progress(task.task_id, 10) is False

    repository.claim_next_queued_task(worker_id="worker-a")
    assert repository.update_progress(task.task_id, 40, "Halfway") is True
    assert repository.update_progress(task.task_id, 20) is False
    assert repository.update_progress(task.task_id, 250) is True

    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.progress == 100
    assert stored.progress_message == "Halfway"


def test_complete_task_requires_running_status(repository: TaskRepository) -> None:
    task = repository.create_task(_translation())
    assert repository.complete_task(task.task_id, result="x") is False

    repository.claim_next_queued_task(worker_id="worker-a")
    assert repository.complete_task(task.task_id, result="Chemise bleue") is True
    assert repository.complete_task(task.task_id, result="again") is False

    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.COMPLETED
    assert stored.progress == 100
    assert stored.result == "Chemise bleue"
    assert stored.completed_at is not None


def test_fail_task_truncates_long_errors(repository: TaskRepository) -> None:
    task = repository.create_task(_translation())
    repository.claim_next_queued_task(worker_id="worker-a")

    assert repository.fail_task(task.task_id, "x" * 5000) is True
    assert repository.fail_task(task.task_id, "again") is False

    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.FAILED
    assert stored.error is not None
    assert len(stored.error) == MAX_ERROR_CHARS
    assert stored.error.endswith("...")


def test_cancel_task_errors(repository: TaskRepository) -> None:
    with pytest.raises(TaskNotFoundError):
        repository.cancel_task("missing")

    task = repository.create_task(_translation())
    cancelled = repository.cancel_task(task.task_id)
    assert cancelled.status is TaskStatus.CANCELLED

    with pytest.raises(RuntimeError, match="cannot be cancelled"):
        repository.cancel_task(task.task_id)


def test_release_pending_task_moves_it_to_queue(repository: TaskRepository) -> None:
    task = repository.create_task(_translation(status=TaskStatus.PENDING))

    assert repository.release_pending_task(task.task_id) is True
    assert repository.release_pending_task(task.task_id) is False

    stored = repository.get_task(task.task_id)
    assert stored is not None
    assert stored.status is TaskStatus.QUEUED


def test_delete_expired_tasks_keeps_running_and_unexpired(repository: TaskRepository) -> None:
    now = utc_now()
    past = now - timedelta(hours=1)
    repository.create_task(_translation(resource_id="done", expires_at=past), now=past)
    running = repository.create_task(
        _translation(resource_id="running", expires_at=now + timedelta(seconds=5)),
        now=past,
    )
    repository.claim_next_queued_task(worker_id="worker-a", now=past)
    live = repository.create_task(_translation(resource_id="live"), now=now)

    deleted = repository.delete_expired_tasks(now=now + timedelta(minutes=1))

    assert deleted == 1
    remaining = {task.task_id for task in repository.list_tasks()}
    assert remaining == {running.task_id, live.task_id}


def test_find_by_status_filters_on_last_update(repository: TaskRepository) -> None:
    now = utc_now()
    stale = repository.create_task(_translation(resource_id="stale"), now=now - timedelta(hours=2))
    repository.create_task(_translation(resource_id="fresh"), now=now)

    found = repository.find_by_status(TaskStatus.QUEUED, older_than=now - timedelta(hours=1))

    assert [task.task_id for task in found] == [stale.task_id]


def test_list_tasks_filters_by_shop_and_status(repository: TaskRepository) -> None:
    repository.create_task(_translation(resource_id="a"))
    repository.create_task(_translation(resource_id="b", shop="other.myshopify.com"))
    repository.create_task(_translation(resource_id="c", status=TaskStatus.PENDING))

    demo_queued = repository.list_tasks(shop="demo.myshopify.com", status=TaskStatus.QUEUED)
    assert [task.resource_id for task in demo_queued] == ["a"]
    assert len(repository.list_tasks(shop="other.myshopify.com")) == 1


def _create_from_thread(
    db_path: Path,
    payload: TaskCreate,
    coalesce: bool,
    barrier: threading.Barrier,
    results: queue.Queue[str],
) -> None:
    repository = TaskRepository(db_path)
    try:
        barrier.wait(timeout=5)
        try:
            task = repository.create_task(payload, coalesce=coalesce)
        except ActiveTaskConflictError as error:
            results.put(f"conflict:{error.existing_task_id}")
        else:
            results.put(f"created:{task.task_id}")
    finally:
        repository.close()


@pytest.mark.parametrize("coalesce", [False, True])
def test_concurrent_creates_leave_one_active_task_per_target(
    repository: TaskRepository,
    coalesce: bool,
) -> None:
    barrier = threading.Barrier(2)
    results: queue.Queue[str] = queue.Queue()
    threads = [
        threading.Thread(
            target=_create_from_thread,
            args=(repository.db_path, _translation(), coalesce, barrier, results),
            daemon=True,
        )
        for _ in range(2)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)
        assert thread.is_alive() is False

    outcomes = [results.get_nowait(), results.get_nowait()]
    stored = repository.list_tasks()
    assert len(stored) == 1
    task_ids = {outcome.split(":", 1)[1] for outcome in outcomes}
    assert task_ids == {stored[0].task_id}
    if coalesce:
        assert all(outcome.startswith("created:") for outcome in outcomes)
    else:
        assert sorted(outcome.split(":", 1)[0] for outcome in outcomes) == [
            "conflict",
            "created",
        ]


def test_expired_task_holding_target_is_failed_on_create(repository: TaskRepository) -> None:
    now = utc_now()
    stale = repository.create_task(
        _translation(expires_at=now - timedelta(minutes=1)),
        now=now - timedelta(days=1),
    )

    repository.create_task(_translation(), now=now)

    details = repository.get_task_details(stale.task_id)
    assert details is not None
    assert details.task.status is TaskStatus.FAILED
    assert details.task.error == EXPIRED_TASK_ERROR
    assert details.task.completed_at is not None
    assert details.events[-1].event_type == "expired"


def test_null_and_empty_target_fields_count_as_same_target(repository: TaskRepository) -> None:
    first = repository.create_task(_translation(resource_type=None, field_type=None))

    with pytest.raises(ActiveTaskConflictError) as excinfo:
        repository.create_task(_translation(resource_type="", field_type=""))

    assert excinfo.value.existing_task_id == first.task_id


def test_terminal_failures_and_cancellation_set_completed_at(repository: TaskRepository) -> None:
    now = utc_now()
    failed = repository.create_task(_translation(resource_id="failed"))
    cancelled = repository.create_task(_translation(resource_id="cancelled"))
    stuck = repository.create_task(_translation(resource_id="stuck"), now=now - timedelta(hours=1))
    repository.claim_next_queued_task(worker_id="worker-a", now=now - timedelta(hours=1))

    repository.fail_task(failed.task_id, "boom", now=now)
    repository.cancel_task(cancelled.task_id, now=now)
    assert repository.fail_stuck_running_tasks(updated_before=now - timedelta(minutes=10)) == 1

    for task_id in (failed.task_id, cancelled.task_id, stuck.task_id):
        stored = repository.get_task(task_id)
        assert stored is not None
        assert stored.status.is_terminal
        assert stored.completed_at is not None


def test_increment_retry_count_only_for_running_task(repository: TaskRepository) -> None:
    task = repository.create_task(_translation())
    assert repository.increment_retry_count(task.task_id, "HTTP 429") is None

    repository.claim_next_queued_task(worker_id="worker-a")
    assert repository.increment_retry_count(task.task_id, "HTTP 429") == 1
    assert repository.increment_retry_count(task.task_id, "quota exceeded") == 2

    details = repository.get_task_details(task.task_id)
    assert details is not None
    assert details.task.retry_count == 2
    retries = [event for event in details.events if event.event_type == "retry"]
    assert [event.details["retry_count"] for event in retries] == [1, 2]
    assert retries[0].details["reason"] == "HTTP 429"
