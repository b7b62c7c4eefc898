"""CLI entrypoint for shop-worker."""

from collections.abc import Iterable
from pathlib import Path

import rich_click as click

from shop_worker import __version__
from shop_worker.ai.providers import SUPPORTED_PROVIDERS
from shop_worker.ratelimit import ProviderRateLimit
from shop_worker.sync.orchestrator import SYNC_PHASES
from shop_worker.tasks.controllers import (
    CleanupCommand,
    EnqueueTaskCommand,
    InspectTaskCommand,
    ListTasksCommand,
    MutateTaskCommand,
    RateLimitCommand,
    RecoverCommand,
    SyncCommand,
    TaskCliController,
    WorkerRunCommand,
)
from shop_worker.tasks.models import TaskStatus, TaskType

click.rich_click.USE_MARKDOWN = True
TASK_CONTROLLER = TaskCliController()


@click.group()
@click.version_option(version=__version__, prog_name="shop-worker")
def shop_worker() -> None:
    """Shop content task worker CLI."""


@shop_worker.group()
def worker() -> None:
    """Queue worker commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one claim-execute cycle or loop.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed tasks in loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many consecutive empty polls (default: poll until stopped).",
)
@click.option(
    "--echo-provider",
    "echo_providers",
    multiple=True,
    help="Serve this provider name with the local echo provider. Can be repeated.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int | None,
    echo_providers: tuple[str, ...],
) -> None:
    """Recover interrupted tasks, then process the queue.

    SIGINT/SIGTERM stop claiming new tasks and let the current one finish.
    """

    _emit_lines(
        TASK_CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
                echo_providers=echo_providers,
            ),
        ),
    )


@shop_worker.command("recover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def recover(db_path: Path | None) -> None:
    """Fail stuck running tasks and requeue unexpired pending tasks."""

    _emit_lines(TASK_CONTROLLER.recover(RecoverCommand(db_path=db_path)))


@shop_worker.command("sync")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--shop", default=None, help="Shop domain (default: SHOP_WORKER_SHOP_DOMAIN).")
@click.option(
    "--phase",
    "phases",
    multiple=True,
    type=click.Choice(list(SYNC_PHASES), case_sensitive=False),
    help="Phase to run. Can be repeated; defaults to all phases.",
)
def sync(db_path: Path | None, shop: str | None, phases: tuple[str, ...]) -> None:
    """Run a catalog sync in the foreground, streaming `data: {...}` progress frames."""

    for frame in TASK_CONTROLLER.sync_stream(
        SyncCommand(
            db_path=db_path,
            shop=shop,
            phases=tuple(phase.lower() for phase in phases),
        ),
    ):
        click.echo(frame, nl=False)


@shop_worker.group()
def tasks() -> None:
    """Task queue commands."""


@tasks.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--shop", required=True, help="Owning shop domain.")
@click.option(
    "--type",
    "task_type",
    type=click.Choice([task_type.value for task_type in TaskType]),
    required=True,
    help="Task type.",
)
@click.option("--resource-type", default=None, help="Target resource type, e.g. PRODUCT.")
@click.option("--resource-id", default=None, help="Target resource id.")
@click.option("--resource-title", default=None, help="Human-readable resource title.")
@click.option("--field", "field_type", default=None, help="Target field, e.g. title.")
@click.option("--locale", "target_locale", default=None, help="Target locale for translations.")
@click.option(
    "--provider",
    type=click.Choice(list(SUPPORTED_PROVIDERS) + ["echo"], case_sensitive=False),
    default=None,
    help="AI provider.",
)
@click.option("--prompt", default=None, help="Prompt or source text.")
@click.option("--pending", is_flag=True, help="Create as pending instead of queued.")
@click.option(
    "--coalesce",
    is_flag=True,
    help="Return the active task for the same target instead of rejecting.",
)
def tasks_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    shop: str,
    task_type: str,
    resource_type: str | None,
    resource_id: str | None,
    resource_title: str | None,
    field_type: str | None,
    target_locale: str | None,
    provider: str | None,
    prompt: str | None,
    pending: bool,
    coalesce: bool,
) -> None:
    """Create a task."""

    _emit_lines(
        TASK_CONTROLLER.enqueue(
            EnqueueTaskCommand(
                db_path=db_path,
                shop=shop,
                task_type=task_type,
                resource_type=resource_type,
                resource_id=resource_id,
                resource_title=resource_title,
                field_type=field_type,
                target_locale=target_locale,
                provider=provider.lower() if provider is not None else None,
                prompt=prompt,
                pending=pending,
                coalesce=coalesce,
            ),
        ),
    )


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--shop", default=None, help="Optional shop filter.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(db_path: Path | None, shop: str | None, status: str | None, limit: int) -> None:
    """List tasks, newest first."""

    _emit_lines(
        TASK_CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                shop=shop,
                status=status.lower() if status else None,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    _emit_lines(
        TASK_CONTROLLER.inspect_task(InspectTaskCommand(db_path=db_path, task_id=task_id)),
    )


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a pending, queued or running task."""

    _emit_lines(TASK_CONTROLLER.cancel_task(MutateTaskCommand(db_path=db_path, task_id=task_id)))


@tasks.command("release")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_release(db_path: Path | None, task_id: str) -> None:
    """Hand a pending task to the worker."""

    _emit_lines(TASK_CONTROLLER.release_task(MutateTaskCommand(db_path=db_path, task_id=task_id)))


@tasks.command("cleanup")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def tasks_cleanup(db_path: Path | None) -> None:
    """Delete tasks whose expiry has passed."""

    _emit_lines(TASK_CONTROLLER.cleanup(CleanupCommand(db_path=db_path)))


@shop_worker.group()
def limits() -> None:
    """Per-shop AI provider rate limits."""


def _validate_limit(ctx: click.Context, param: click.Parameter, value: str) -> str:
    try:
        ProviderRateLimit.parse(value)
    except ValueError as error:
        raise click.BadParameter(str(error)) from error
    return value


@limits.command("set")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--shop", required=True, help="Shop domain.")
@click.option("--provider", required=True, help="AI provider name.")
@click.option(
    "--limit",
    required=True,
    callback=_validate_limit,
    help="Budget as `<requests>/<tokens>` per minute, e.g. `60/100000`.",
)
def limits_set(db_path: Path | None, shop: str, provider: str, limit: str) -> None:
    """Override a provider budget for one shop."""

    _emit_lines(
        TASK_CONTROLLER.set_rate_limit(
            RateLimitCommand(
                db_path=db_path,
                shop=shop,
                provider=provider.lower(),
                limit=limit,
            ),
        ),
    )


@limits.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--shop", default=None, help="Optional shop filter.")
def limits_list(db_path: Path | None, shop: str | None) -> None:
    """List per-shop overrides."""

    _emit_lines(TASK_CONTROLLER.list_rate_limits(RateLimitCommand(db_path=db_path, shop=shop)))


@limits.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--shop", required=True, help="Shop domain.")
@click.option("--provider", required=True, help="AI provider name.")
def limits_clear(db_path: Path | None, shop: str, provider: str) -> None:
    """Drop a per-shop override so the default budget applies again."""

    _emit_lines(
        TASK_CONTROLLER.clear_rate_limit(
            RateLimitCommand(db_path=db_path, shop=shop, provider=provider.lower()),
        ),
    )


def _emit_lines(lines: Iterable[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    shop_worker()
