"""Controllers for task queue CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from shop_worker.ai.providers import EchoProvider, ProviderRegistry
from shop_worker.config import Settings
from shop_worker.gateway.client import HttpGraphqlExecutor
from shop_worker.ratelimit import ProviderRateLimit, SqlRateLimitStore
from shop_worker.storage.alembic_runner import upgrade_head
from shop_worker.sync.orchestrator import SyncOrchestrator
from shop_worker.sync.sink import SqlContentSink
from shop_worker.tasks.models import (
    ActiveTaskConflictError,
    TaskCreate,
    TaskNotFoundError,
    TaskStatus,
    TaskType,
)
from shop_worker.tasks.recovery import TaskRecoveryService
from shop_worker.tasks.repository import TaskRepository
from shop_worker.tasks.runtime import build_gateway, build_runtime


@dataclass(slots=True)
class EnqueueTaskCommand:
    """CLI input for task creation."""

    db_path: Path | None
    shop: str
    task_type: str
    resource_type: str | None = None
    resource_id: str | None = None
    resource_title: str | None = None
    field_type: str | None = None
    target_locale: str | None = None
    provider: str | None = None
    prompt: str | None = None
    pending: bool = False
    coalesce: bool = False


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int | None = 1
    echo_providers: tuple[str, ...] = ()


@dataclass(slots=True)
class RecoverCommand:
    db_path: Path | None


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    db_path: Path | None
    shop: str | None
    status: str | None
    limit: int


@dataclass(slots=True)
class InspectTaskCommand:
    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class MutateTaskCommand:
    """CLI input for cancel/release operations."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class CleanupCommand:
    db_path: Path | None


@dataclass(slots=True)
class SyncCommand:
    db_path: Path | None
    shop: str | None
    phases: tuple[str, ...] = ()


@dataclass(slots=True)
class RateLimitCommand:
    """CLI input for per-shop provider budget operations."""

    db_path: Path | None
    shop: str | None
    provider: str | None = None
    limit: str | None = None


class TaskCliController:
    """Coordinates queue, worker, recovery and inspection CLI operations."""

    def enqueue(self, command: EnqueueTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = TaskStatus.PENDING if command.pending else TaskStatus.QUEUED
        with _repository(settings) as repository:
            try:
                task = repository.create_task(
                    TaskCreate(
                        shop=command.shop,
                        task_type=TaskType(command.task_type),
                        status=status,
                        resource_type=command.resource_type,
                        resource_id=command.resource_id,
                        resource_title=command.resource_title,
                        field_type=command.field_type,
                        target_locale=command.target_locale,
                        provider=command.provider,
                        prompt=command.prompt,
                    ),
                    coalesce=command.coalesce,
                )
            except ActiveTaskConflictError as error:
                return [f"Task rejected: {error}"]

        return [
            "Task enqueued: "
            f"task_id={task.task_id} type={task.task_type} status={task.status.value}",
        ]

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        providers = ProviderRegistry.from_api_keys(settings.ai.api_keys)
        for name in command.echo_providers:
            providers.register(EchoProvider(name))
        with _repository(settings) as repository:
            runtime = build_runtime(settings, repository=repository, providers=providers)
            try:
                if command.once:
                    recovery = runtime.recovery.recover_pending_tasks()
                    summary = runtime.processor.run_once()
                else:
                    result = runtime.start(
                        max_tasks=command.max_tasks,
                        max_idle_polls=command.max_idle_polls,
                    )
                    recovery, summary = result.recovery, result.summary
            finally:
                runtime.close()
                providers.close()

        lines = []
        if recovery is not None:
            lines.append(f"Recovery: recovered={recovery.recovered} failed={recovery.failed}")
        lines.append(
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} cancelled={summary.cancelled} "
            f"idle_polls={summary.idle_polls}",
        )
        return lines

    def recover(self, command: RecoverCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            result = TaskRecoveryService(
                repository=repository,
                stuck_timeout=timedelta(seconds=settings.worker.stuck_task_timeout_seconds),
            ).recover_pending_tasks()
        return [f"Recovery: recovered={result.recovered} failed={result.failed}"]

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = TaskStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(
                shop=command.shop,
                status=status_filter,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            target = task.resource_id or "-"
            if task.field_type:
                target = f"{target}#{task.field_type}"
            lines.append(
                f"  {task.task_id} shop={task.shop} type={task.task_type} "
                f"status={task.status.value} progress={task.progress} target={target}",
            )
        return lines

    def inspect_task(self, command: InspectTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        lines = [
            f"Task: {task.task_id}",
            f"Shop: {task.shop}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}",
            f"Progress: {task.progress}% {task.progress_message or ''}".rstrip(),
            f"Resource: {task.resource_type or '-'} {task.resource_id or '-'}",
            f"Error: {task.error or '-'}",
            f"Expires: {task.expires_at.isoformat() if task.expires_at else '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}",
            )
        return lines

    def cancel_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            try:
                repository.cancel_task(command.task_id)
            except TaskNotFoundError:
                return [f"Task not found: {command.task_id}"]
        return [f"Task cancelled: {command.task_id}"]

    def release_task(self, command: MutateTaskCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            released = repository.release_pending_task(command.task_id)
        if not released:
            return [f"Task is not pending: {command.task_id}"]
        return [f"Task released: {command.task_id}"]

    def cleanup(self, command: CleanupCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            deleted = repository.delete_expired_tasks()
        return [f"Expired tasks deleted: {deleted}"]

    def sync_stream(self, command: SyncCommand) -> Iterator[str]:
        """Run one sync in the foreground and yield server-sent event frames."""

        settings = Settings.from_env(db_path=command.db_path)
        shop = command.shop or settings.gateway.shop_domain
        upgrade_head(settings.db_path)
        gateway = build_gateway(settings, shop_domain=shop)
        sink = SqlContentSink(settings.db_path)
        try:
            orchestrator = SyncOrchestrator(
                shop=shop,
                client=gateway,
                sink=sink,
                phases=command.phases or settings.sync.phases,
                page_size=settings.sync.page_size,
            )
            for event in orchestrator.run():
                yield event.to_sse()
        finally:
            gateway.clear_queue()
            if isinstance(gateway.executor, HttpGraphqlExecutor):
                gateway.executor.close()
            sink.close()

    def set_rate_limit(self, command: RateLimitCommand) -> list[str]:
        if not command.shop or not command.provider or not command.limit:
            raise ValueError("shop, provider and limit are required")
        limit = ProviderRateLimit.parse(command.limit)
        with _rate_limit_store(Settings.from_env(db_path=command.db_path)) as store:
            store.set_limit(command.shop, command.provider, limit)
        return [
            f"Rate limit set: shop={command.shop} provider={command.provider} "
            f"requests/min={limit.max_requests_per_minute} "
            f"tokens/min={limit.max_tokens_per_minute}",
        ]

    def list_rate_limits(self, command: RateLimitCommand) -> list[str]:
        with _rate_limit_store(Settings.from_env(db_path=command.db_path)) as store:
            limits = store.list_limits(shop=command.shop)
        lines = [f"Rate limits: {len(limits)}"]
        for item in limits:
            lines.append(
                f"  shop={item.shop} provider={item.provider} "
                f"requests/min={item.limit.max_requests_per_minute} "
                f"tokens/min={item.limit.max_tokens_per_minute}",
            )
        return lines

    def clear_rate_limit(self, command: RateLimitCommand) -> list[str]:
        if not command.shop or not command.provider:
            raise ValueError("shop and provider are required")
        with _rate_limit_store(Settings.from_env(db_path=command.db_path)) as store:
            deleted = store.delete_limit(command.shop, command.provider)
        if not deleted:
            return [f"No rate limit for shop={command.shop} provider={command.provider}"]
        return [f"Rate limit cleared: shop={command.shop} provider={command.provider}"]


@contextmanager
def _rate_limit_store(settings: Settings) -> Iterator[SqlRateLimitStore]:
    upgrade_head(settings.db_path)
    store = SqlRateLimitStore(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.worker.sqlite_busy_timeout_ms,
    )
    try:
        yield store
    finally:
        store.close()


@contextmanager
def _repository(settings: Settings) -> Iterator[TaskRepository]:
    repository = TaskRepository(
        db_path=settings.db_path,
        task_ttl=timedelta(days=settings.worker.task_ttl_days),
        sqlite_busy_timeout_ms=settings.worker.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
