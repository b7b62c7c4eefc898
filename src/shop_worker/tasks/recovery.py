"""Startup recovery for tasks interrupted by a process restart."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from shop_worker.storage.common import utc_now
from shop_worker.tasks.models import STUCK_TASK_ERROR, RecoveryResult
from shop_worker.tasks.repository import TaskRepository

logger = logging.getLogger(__name__)

DEFAULT_STUCK_TIMEOUT = timedelta(minutes=10)


class TaskRecoveryService:
    """Fails abandoned running tasks and hands unexpired pending tasks back to the queue.

    Meant to run once before the queue processor starts. A second run right
    after the first changes nothing.
    """

    def __init__(
        self,
        *,
        repository: TaskRepository,
        stuck_timeout: timedelta = DEFAULT_STUCK_TIMEOUT,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.stuck_timeout = stuck_timeout
        self.clock = clock

    def recover_pending_tasks(self) -> RecoveryResult:
        now = self.clock()
        failed = self.repository.fail_stuck_running_tasks(
            updated_before=now - self.stuck_timeout,
            error_message=STUCK_TASK_ERROR,
            now=now,
        )
        recovered = self.repository.requeue_pending_tasks(now=now)
        if failed or recovered:
            logger.info("Task recovery: recovered=%d failed=%d", recovered, failed)
        else:
            logger.debug("Task recovery: nothing to do")
        return RecoveryResult(recovered=recovered, failed=failed)
